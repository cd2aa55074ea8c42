import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

import aiosqlite

from keygate.core.exceptions import StorageError, StorageTimeoutError
from keygate.core.models import AuditAction, AuditLogEntry
from .database import from_db_timestamp, to_db_timestamp

logger = logging.getLogger(__name__)


class AuditLog:
    """
    Append-only record of key lifecycle events.

    Writes never fail the business operation they accompany: a failed
    append is logged and reported through the return value only.
    UPDATE and DELETE on the table are rejected by database triggers.
    """

    def __init__(
        self,
        db: aiosqlite.Connection,
        default_timeout: float = 10.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._db = db
        self._default_timeout = default_timeout
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def append(
        self,
        action: AuditAction,
        key_identifier: str,
        actor_id: str,
        actor_name: str,
        redeemer_name: Optional[str] = None,
        details: Optional[str] = None,
    ) -> bool:
        async def _insert() -> None:
            async with self._db.execute(
                "INSERT INTO audit_log "
                "(action, key_identifier, actor_id, actor_name, redeemer_name, timestamp, details) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    action.value,
                    key_identifier,
                    actor_id,
                    actor_name,
                    redeemer_name,
                    to_db_timestamp(self._clock()),
                    details,
                ),
            ):
                pass

        try:
            await asyncio.wait_for(_insert(), timeout=self._default_timeout)
            return True
        except Exception as e:
            logger.error(
                "Failed to write %s audit entry for key %s: %s",
                action.value, key_identifier, e,
            )
            return False

    async def entries(
        self,
        key_identifier: Optional[str] = None,
        limit: int = 100,
        timeout: Optional[float] = None,
    ) -> List[AuditLogEntry]:
        """Most recent entries first, optionally for a single key."""
        sql = (
            "SELECT id, action, key_identifier, actor_id, actor_name, redeemer_name, "
            "timestamp, details FROM audit_log"
        )
        params: tuple = ()
        if key_identifier is not None:
            sql += " WHERE key_identifier = ?"
            params = (key_identifier,)
        sql += " ORDER BY id DESC LIMIT ?"

        async def _fetch():
            async with self._db.execute(sql, params + (limit,)) as cursor:
                return await cursor.fetchall()

        deadline = self._default_timeout if timeout is None else timeout
        try:
            rows = await asyncio.wait_for(_fetch(), timeout=deadline)
        except asyncio.TimeoutError:
            raise StorageTimeoutError(f"audit query timed out after {deadline}s") from None
        except (aiosqlite.Error, ValueError) as e:
            logger.error("Audit query failed: %s", e)
            raise StorageError(f"audit query failed: {e}") from e

        return [
            AuditLogEntry(
                entry_id=row["id"],
                action=AuditAction(row["action"]),
                key_identifier=row["key_identifier"],
                actor_id=row["actor_id"],
                actor_name=row["actor_name"],
                redeemer_name=row["redeemer_name"],
                timestamp=from_db_timestamp(row["timestamp"]),
                details=row["details"],
            )
            for row in rows
        ]
