"""
Key Core Package

Key generation, the key state machine and expiry sweeping.
Persistence lives in keygate.storage.
"""

from .durations import DEFAULT_DURATIONS, DurationSpec, resolve_duration
from .exceptions import (
    DuplicateIdentifierError,
    KeyGateError,
    KeyValidationError,
    StorageError,
    StorageTimeoutError,
)
from .generator import generate_key_identifier
from .key_service import KeyService
from .models import (
    AuditAction,
    AuditLogEntry,
    Key,
    KeyFilter,
    KeyState,
    KeyStats,
    KeyStatusView,
    RevokeOutcome,
    VerifyReason,
    VerifyResult,
)
from .sweeper import ExpirySweeper

__all__ = [
    "DEFAULT_DURATIONS",
    "DurationSpec",
    "resolve_duration",
    "KeyGateError",
    "KeyValidationError",
    "DuplicateIdentifierError",
    "StorageError",
    "StorageTimeoutError",
    "generate_key_identifier",
    "KeyService",
    "ExpirySweeper",
    "AuditAction",
    "AuditLogEntry",
    "Key",
    "KeyFilter",
    "KeyState",
    "KeyStats",
    "KeyStatusView",
    "RevokeOutcome",
    "VerifyReason",
    "VerifyResult",
]
