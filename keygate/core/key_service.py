import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, List, Mapping, Optional

from .durations import DEFAULT_DURATIONS, DurationSpec, resolve_duration
from .exceptions import DuplicateIdentifierError, KeyValidationError
from .generator import MIN_ENTROPY_BYTES, generate_key_identifier
from .models import (
    AuditAction,
    AuditLogEntry,
    ConsumeOutcome,
    Key,
    KeyFilter,
    KeyStats,
    KeyStatusView,
    RevokeOutcome,
    VerifyReason,
    VerifyResult,
)

if TYPE_CHECKING:
    from keygate.storage.audit_log import AuditLog
    from keygate.storage.key_store import KeyStore

logger = logging.getLogger(__name__)


_CONSUME_REASONS = {
    ConsumeOutcome.NOT_FOUND: VerifyReason.NOT_FOUND,
    ConsumeOutcome.ALREADY_CONSUMED: VerifyReason.ALREADY_USED,
    ConsumeOutcome.EXPIRED: VerifyReason.EXPIRED,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require(value: Optional[str], field: str) -> str:
    if value is None or not str(value).strip():
        raise KeyValidationError(f"{field} is required")
    return str(value).strip()


class KeyService:
    """
    Issues, redeems and revokes single-use keys.

    The only component that enforces the key state machine. Every
    transition is delegated to a single conditional store operation;
    the service never checks state and then writes in a second step.
    """

    def __init__(
        self,
        store: "KeyStore",
        audit_log: "AuditLog",
        durations: Mapping[str, DurationSpec] = DEFAULT_DURATIONS,
        clock: Callable[[], datetime] = _utcnow,
        generator: Callable[[int], str] = generate_key_identifier,
        entropy_bytes: int = MIN_ENTROPY_BYTES,
        max_issue_attempts: int = 3,
        service_actor_id: str = "keygate",
        service_actor_name: str = "KeyGate Verifier",
        list_max_limit: int = 1000,
    ):
        self._store = store
        self._audit = audit_log
        self._durations = durations
        self._clock = clock
        self._generator = generator
        self._entropy_bytes = entropy_bytes
        self._max_issue_attempts = max(1, max_issue_attempts)
        self._service_actor_id = service_actor_id
        self._service_actor_name = service_actor_name
        self._list_max_limit = list_max_limit

    async def issue(
        self,
        creator_id: str,
        creator_name: str,
        creator_handle: str,
        duration_class: str,
        notes: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Key:
        """
        Issue a new key for a creator.

        Args:
            creator_id: Stable identifier of the issuing principal
            creator_name: Display name of the issuing principal
            creator_handle: Handle of the issuing principal
            duration_class: Name or alias from the duration table
            notes: Optional free text stored with the key

        Returns:
            The persisted Key

        Raises:
            KeyValidationError: If input is missing or the duration is unknown
            DuplicateIdentifierError: If every generation attempt collided
            StorageError: If the store is unavailable
        """
        creator_id = _require(creator_id, "creator_id")
        creator_name = _require(creator_name, "creator_name")
        creator_handle = _require(creator_handle, "creator_handle")
        duration = resolve_duration(duration_class, self._durations)
        notes = notes.strip() if notes and notes.strip() else None

        for attempt in range(1, self._max_issue_attempts + 1):
            now = self._clock()
            key = Key(
                identifier=self._generator(self._entropy_bytes),
                creator_id=creator_id,
                creator_name=creator_name,
                creator_handle=creator_handle,
                created_at=now,
                expires_at=now + duration.offset,
                duration_label=duration.label,
                notes=notes,
            )
            try:
                await self._store.insert(key, timeout=timeout)
                break
            except DuplicateIdentifierError:
                logger.warning(
                    "Identifier collision on issue (attempt %d/%d)",
                    attempt, self._max_issue_attempts,
                )
                if attempt == self._max_issue_attempts:
                    raise

        await self._audit.append(
            AuditAction.CREATE,
            key.identifier,
            actor_id=creator_id,
            actor_name=creator_name,
            details=f"Key issued: {duration.label}. Notes: {notes or 'None'}",
        )

        logger.info(
            "Issued key %s for %s (%s), duration=%s",
            key.identifier, creator_handle, creator_id, duration.label,
        )
        return key

    async def verify_and_consume(
        self,
        identifier: str,
        redeemer_name: str,
        redeemer_external_id: str,
        timeout: Optional[float] = None,
    ) -> VerifyResult:
        """
        Redeem a key exactly once.

        Every call resolves to a single terminal reason. A retry after a
        timed-out call that actually succeeded observes ALREADY_USED.
        """
        identifier = _require(identifier, "identifier")
        redeemer_name = _require(redeemer_name, "redeemer_name")
        redeemer_external_id = _require(redeemer_external_id, "redeemer_external_id")

        result = await self._store.consume_if_eligible(
            identifier,
            redeemer_name,
            redeemer_external_id,
            now=self._clock(),
            timeout=timeout,
        )

        if result.outcome != ConsumeOutcome.CONSUMED:
            reason = _CONSUME_REASONS[result.outcome]
            logger.info("Verification of key %s refused: %s", identifier, reason.value)
            return VerifyResult(granted=False, reason=reason)

        key = result.key
        await self._audit.append(
            AuditAction.VERIFY,
            key.identifier,
            actor_id=self._service_actor_id,
            actor_name=self._service_actor_name,
            redeemer_name=redeemer_name,
            details=f"Redeemed by {redeemer_name} (ID: {redeemer_external_id})",
        )

        logger.info("Key %s redeemed by %s (%s)", key.identifier, redeemer_name, redeemer_external_id)

        return VerifyResult(
            granted=True,
            reason=VerifyReason.GRANTED,
            metadata={
                "created_by": key.creator_name,
                "duration": key.duration_label,
                "created_at": key.created_at.isoformat(),
            },
        )

    async def revoke(
        self,
        identifier: str,
        requester_id: str,
        timeout: Optional[float] = None,
    ) -> RevokeOutcome:
        """Delete an unconsumed key on behalf of its creator."""
        identifier = _require(identifier, "identifier")
        requester_id = _require(requester_id, "requester_id")

        result = await self._store.delete_if_owned_and_unconsumed(
            identifier, requester_id, timeout=timeout,
        )
        outcome = result.outcome

        if outcome != RevokeOutcome.DELETED:
            logger.warning(
                "Revocation of key %s by %s rejected: %s",
                identifier, requester_id, outcome.value,
            )
            return outcome

        await self._audit.append(
            AuditAction.REVOKE,
            identifier,
            actor_id=requester_id,
            actor_name=result.creator_name,
            details="Key revoked",
        )
        logger.info("Key %s revoked by %s", identifier, requester_id)
        return outcome

    async def check_status(self, identifier: str, timeout: Optional[float] = None) -> Optional[KeyStatusView]:
        identifier = _require(identifier, "identifier")

        key = await self._store.find_by_identifier(identifier, timeout=timeout)
        if key is None:
            return None

        now = self._clock()
        return KeyStatusView(key=key, state=key.state_at(now), checked_at=now)

    async def list_mine(self, requester_id: str, timeout: Optional[float] = None) -> List[Key]:
        """The requester's own active keys, most recent first."""
        requester_id = _require(requester_id, "requester_id")
        return await self._store.list_by_filter(
            KeyFilter.ACTIVE,
            now=self._clock(),
            limit=self._list_max_limit,
            creator_id=requester_id,
            timeout=timeout,
        )

    async def list_all(
        self,
        key_filter: KeyFilter = KeyFilter.ALL,
        limit: int = 200,
        timeout: Optional[float] = None,
    ) -> List[Key]:
        limit = max(1, min(limit, self._list_max_limit))
        return await self._store.list_by_filter(
            key_filter, now=self._clock(), limit=limit, timeout=timeout,
        )

    async def stats(self, timeout: Optional[float] = None) -> KeyStats:
        now = self._clock()
        return KeyStats(
            total=await self._store.count_by_filter(KeyFilter.ALL, now, timeout=timeout),
            used=await self._store.count_by_filter(KeyFilter.CONSUMED, now, timeout=timeout),
            valid=await self._store.count_by_filter(KeyFilter.ACTIVE, now, timeout=timeout),
            expired=await self._store.count_by_filter(KeyFilter.EXPIRED, now, timeout=timeout),
        )

    async def audit_entries(
        self,
        key_identifier: Optional[str] = None,
        limit: int = 100,
        timeout: Optional[float] = None,
    ) -> List[AuditLogEntry]:
        limit = max(1, min(limit, self._list_max_limit))
        return await self._audit.entries(key_identifier=key_identifier, limit=limit, timeout=timeout)
