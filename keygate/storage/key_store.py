"""
Key Store

Durable persistence of keys. All state-changing operations are single
conditional statements, so correctness under concurrent callers (threads,
coroutines or separate service instances) comes from the database rather
than from in-process locks.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, List, Optional, Tuple, TypeVar

import aiosqlite

from keygate.core.exceptions import DuplicateIdentifierError, StorageError, StorageTimeoutError
from keygate.core.models import ConsumeOutcome, ConsumeResult, Key, KeyFilter, RevokeOutcome, RevokeResult
from .database import from_db_timestamp, to_db_timestamp

logger = logging.getLogger(__name__)

T = TypeVar("T")

_KEY_COLUMNS = (
    "identifier, creator_id, creator_name, creator_handle, created_at, expires_at, "
    "duration_label, notes, consumed, redeemer_name, redeemer_external_id, consumed_at"
)


def _row_to_key(row: aiosqlite.Row) -> Key:
    return Key(
        identifier=row["identifier"],
        creator_id=row["creator_id"],
        creator_name=row["creator_name"],
        creator_handle=row["creator_handle"],
        created_at=from_db_timestamp(row["created_at"]),
        expires_at=from_db_timestamp(row["expires_at"]),
        duration_label=row["duration_label"],
        notes=row["notes"],
        consumed=bool(row["consumed"]),
        redeemer_name=row["redeemer_name"],
        redeemer_external_id=row["redeemer_external_id"],
        consumed_at=from_db_timestamp(row["consumed_at"]),
    )


def _filter_clause(key_filter: KeyFilter, now: datetime) -> Tuple[str, Tuple[Any, ...]]:
    if key_filter == KeyFilter.ACTIVE:
        return "consumed = 0 AND expires_at > ?", (to_db_timestamp(now),)
    if key_filter == KeyFilter.CONSUMED:
        return "consumed = 1", ()
    if key_filter == KeyFilter.EXPIRED:
        return "consumed = 0 AND expires_at <= ?", (to_db_timestamp(now),)
    return "", ()


class KeyStore:

    def __init__(self, db: aiosqlite.Connection, default_timeout: float = 10.0):
        self._db = db
        self._default_timeout = default_timeout

    async def insert(self, key: Key, timeout: Optional[float] = None) -> None:
        """
        Persist a newly issued key.

        Raises:
            DuplicateIdentifierError: If the identifier was ever issued before
        """
        async def _insert() -> None:
            await self._db.execute(
                f"INSERT INTO keys ({_KEY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    key.identifier,
                    key.creator_id,
                    key.creator_name,
                    key.creator_handle,
                    to_db_timestamp(key.created_at),
                    to_db_timestamp(key.expires_at),
                    key.duration_label,
                    key.notes,
                    int(key.consumed),
                    key.redeemer_name,
                    key.redeemer_external_id,
                    to_db_timestamp(key.consumed_at) if key.consumed_at else None,
                ),
            )

        try:
            await self._guard("insert", _insert(), timeout)
        except aiosqlite.IntegrityError as e:
            if "UNIQUE" in str(e):
                raise DuplicateIdentifierError(
                    f"Identifier {key.identifier} has already been issued"
                ) from e
            raise StorageError(f"insert failed: {e}") from e

    async def find_by_identifier(self, identifier: str, timeout: Optional[float] = None) -> Optional[Key]:
        async def _find() -> Optional[Key]:
            async with self._db.execute(
                f"SELECT {_KEY_COLUMNS} FROM keys WHERE identifier = ?",
                (identifier,),
            ) as cursor:
                row = await cursor.fetchone()
            return _row_to_key(row) if row else None

        return await self._guard("find_by_identifier", _find(), timeout)

    async def consume_if_eligible(
        self,
        identifier: str,
        redeemer_name: str,
        redeemer_external_id: str,
        now: datetime,
        timeout: Optional[float] = None,
    ) -> ConsumeResult:
        """
        Atomically consume a key if it exists, is unconsumed and unexpired.

        The eligibility check and the mutation are one UPDATE statement, so
        at most one caller can ever observe CONSUMED for a given identifier.
        """
        async def _consume() -> ConsumeResult:
            stamp = to_db_timestamp(now)
            async with self._db.execute(
                "UPDATE keys SET consumed = 1, redeemer_name = ?, redeemer_external_id = ?, "
                "consumed_at = ? "
                "WHERE identifier = ? AND consumed = 0 AND expires_at > ? "
                f"RETURNING {_KEY_COLUMNS}",
                (redeemer_name, redeemer_external_id, stamp, identifier, stamp),
            ) as cursor:
                row = await cursor.fetchone()

            if row is not None:
                return ConsumeResult(ConsumeOutcome.CONSUMED, _row_to_key(row))

            # Read-only classification. State only moves forward, so a row
            # that failed the update is either gone, consumed or expired.
            async with self._db.execute(
                "SELECT consumed FROM keys WHERE identifier = ?",
                (identifier,),
            ) as cursor:
                row = await cursor.fetchone()

            if row is None:
                return ConsumeResult(ConsumeOutcome.NOT_FOUND)
            if row["consumed"]:
                return ConsumeResult(ConsumeOutcome.ALREADY_CONSUMED)
            return ConsumeResult(ConsumeOutcome.EXPIRED)

        return await self._guard("consume_if_eligible", _consume(), timeout)

    async def delete_if_owned_and_unconsumed(
        self,
        identifier: str,
        requester_id: str,
        timeout: Optional[float] = None,
    ) -> RevokeResult:
        async def _delete() -> RevokeResult:
            async with self._db.execute(
                "DELETE FROM keys WHERE identifier = ? AND creator_id = ? AND consumed = 0 "
                "RETURNING identifier, creator_name",
                (identifier, requester_id),
            ) as cursor:
                row = await cursor.fetchone()

            if row is not None:
                return RevokeResult(RevokeOutcome.DELETED, row["creator_name"])

            async with self._db.execute(
                "SELECT creator_id FROM keys WHERE identifier = ?",
                (identifier,),
            ) as cursor:
                row = await cursor.fetchone()

            if row is None:
                return RevokeResult(RevokeOutcome.NOT_FOUND)
            if row["creator_id"] != requester_id:
                return RevokeResult(RevokeOutcome.NOT_OWNED)
            return RevokeResult(RevokeOutcome.ALREADY_CONSUMED)

        return await self._guard("delete_if_owned_and_unconsumed", _delete(), timeout)

    async def list_by_filter(
        self,
        key_filter: KeyFilter,
        now: datetime,
        limit: int,
        creator_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> List[Key]:
        """List keys matching a filter, newest first."""
        clause, params = _filter_clause(key_filter, now)
        conditions = [clause] if clause else []
        if creator_id is not None:
            conditions.append("creator_id = ?")
            params = params + (creator_id,)

        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        sql = (
            f"SELECT {_KEY_COLUMNS} FROM keys{where} "
            "ORDER BY created_at DESC, rowid DESC LIMIT ?"
        )

        async def _list() -> List[Key]:
            async with self._db.execute(sql, params + (limit,)) as cursor:
                rows = await cursor.fetchall()
            return [_row_to_key(row) for row in rows]

        return await self._guard("list_by_filter", _list(), timeout)

    async def count_by_filter(
        self,
        key_filter: KeyFilter,
        now: datetime,
        timeout: Optional[float] = None,
    ) -> int:
        clause, params = _filter_clause(key_filter, now)
        where = f" WHERE {clause}" if clause else ""

        async def _count() -> int:
            async with self._db.execute(f"SELECT COUNT(*) FROM keys{where}", params) as cursor:
                row = await cursor.fetchone()
            return int(row[0])

        return await self._guard("count_by_filter", _count(), timeout)

    async def purge_expired_unconsumed(self, now: datetime, timeout: Optional[float] = None) -> List[str]:
        """Delete every unconsumed key whose expiry has passed."""
        async def _purge() -> List[str]:
            async with self._db.execute(
                "DELETE FROM keys WHERE consumed = 0 AND expires_at <= ? RETURNING identifier",
                (to_db_timestamp(now),),
            ) as cursor:
                rows = await cursor.fetchall()
            return [row["identifier"] for row in rows]

        return await self._guard("purge_expired_unconsumed", _purge(), timeout)

    async def _guard(self, operation: str, coro: Awaitable[T], timeout: Optional[float]) -> T:
        """
        Run a store call under a deadline and map database faults.

        A timeout means the outcome is unknown; it is never reported as a
        key state.
        """
        deadline = self._default_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(coro, timeout=deadline)
        except asyncio.TimeoutError:
            logger.warning("Key store %s timed out after %.2fs", operation, deadline)
            raise StorageTimeoutError(f"{operation} timed out after {deadline}s") from None
        except aiosqlite.IntegrityError:
            raise
        except aiosqlite.Error as e:
            logger.error("Key store %s failed: %s", operation, e)
            raise StorageError(f"{operation} failed: {e}") from e
        except ValueError as e:
            # aiosqlite raises ValueError once the connection is closed
            logger.error("Key store %s failed: %s", operation, e)
            raise StorageError(f"{operation} failed: {e}") from e
