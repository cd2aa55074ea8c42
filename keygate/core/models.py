"""
Key Lifecycle Models

State Machine:

    ACTIVE → CONSUMED   (verify_and_consume, terminal)
    ACTIVE → EXPIRED    (derived from expires_at, never stored)
    ACTIVE → revoked    (row deleted by its creator)

Consumption freezes a key's fate: consumed keys are never swept or revoked.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class KeyState(Enum):
    """Observable key states."""
    ACTIVE = "active"
    CONSUMED = "consumed"
    EXPIRED = "expired"


class KeyFilter(Enum):
    """Listing and counting filters."""
    ALL = "all"
    ACTIVE = "active"
    CONSUMED = "consumed"
    EXPIRED = "expired"

    @classmethod
    def parse(cls, value: str) -> "KeyFilter":
        """Accept filter names plus the legacy ``valid``/``used`` aliases."""
        aliases = {"valid": cls.ACTIVE, "used": cls.CONSUMED}
        name = (value or "all").strip().lower()
        if name in aliases:
            return aliases[name]
        return cls(name)


class ConsumeOutcome(Enum):
    CONSUMED = "consumed"
    ALREADY_CONSUMED = "already_consumed"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"


class RevokeOutcome(Enum):
    DELETED = "deleted"
    NOT_OWNED = "not_owned"
    NOT_FOUND = "not_found"
    ALREADY_CONSUMED = "already_consumed"


class VerifyReason(Enum):
    GRANTED = "granted"
    NOT_FOUND = "not found"
    ALREADY_USED = "already used"
    EXPIRED = "expired"

    @property
    def message(self) -> str:
        return _VERIFY_MESSAGES[self]


_VERIFY_MESSAGES = {
    VerifyReason.GRANTED: "Key valid. Access granted.",
    VerifyReason.NOT_FOUND: "Key not found",
    VerifyReason.ALREADY_USED: "Key has already been used",
    VerifyReason.EXPIRED: "Key expired",
}


class AuditAction(Enum):
    CREATE = "CREATE"
    VERIFY = "VERIFY"
    REVOKE = "REVOKE"


@dataclass
class Key:
    """A single-use, time-bounded access key."""
    identifier: str
    creator_id: str
    creator_name: str
    creator_handle: str
    created_at: datetime
    expires_at: datetime
    duration_label: str
    notes: Optional[str] = None
    consumed: bool = False
    redeemer_name: Optional[str] = None
    redeemer_external_id: Optional[str] = None
    consumed_at: Optional[datetime] = None

    def state_at(self, now: datetime) -> KeyState:
        if self.consumed:
            return KeyState.CONSUMED
        if self.expires_at > now:
            return KeyState.ACTIVE
        return KeyState.EXPIRED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identifier": self.identifier,
            "creator_id": self.creator_id,
            "creator_name": self.creator_name,
            "creator_handle": self.creator_handle,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "duration_label": self.duration_label,
            "notes": self.notes,
            "consumed": self.consumed,
            "redeemer_name": self.redeemer_name,
            "redeemer_external_id": self.redeemer_external_id,
            "consumed_at": self.consumed_at.isoformat() if self.consumed_at else None,
        }


@dataclass
class AuditLogEntry:
    """Immutable record of a lifecycle event."""
    action: AuditAction
    key_identifier: str
    actor_id: str
    actor_name: str
    timestamp: datetime
    redeemer_name: Optional[str] = None
    details: Optional[str] = None
    entry_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.entry_id,
            "action": self.action.value,
            "key_identifier": self.key_identifier,
            "actor_id": self.actor_id,
            "actor_name": self.actor_name,
            "redeemer_name": self.redeemer_name,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }


@dataclass
class ConsumeResult:
    outcome: ConsumeOutcome
    key: Optional[Key] = None


@dataclass
class RevokeResult:
    outcome: RevokeOutcome
    creator_name: Optional[str] = None


@dataclass
class VerifyResult:
    """Terminal result of a redemption attempt."""
    granted: bool
    reason: VerifyReason
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def message(self) -> str:
        return self.reason.message


@dataclass
class KeyStatusView:
    key: Key
    state: KeyState
    checked_at: datetime

    @property
    def is_valid(self) -> bool:
        return self.state == KeyState.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        data = self.key.to_dict()
        data["state"] = self.state.value
        data["checked_at"] = self.checked_at.isoformat()
        return data


@dataclass
class KeyStats:
    total: int
    used: int
    valid: int
    expired: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "used": self.used,
            "valid": self.valid,
            "expired": self.expired,
        }
