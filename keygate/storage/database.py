import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

import aiosqlite

from keygate.config import settings

logger = logging.getLogger(__name__)

_db_connection: Optional[aiosqlite.Connection] = None


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS keys (
        identifier TEXT PRIMARY KEY,
        creator_id TEXT NOT NULL,
        creator_name TEXT NOT NULL,
        creator_handle TEXT NOT NULL,
        created_at TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        duration_label TEXT NOT NULL,
        notes TEXT,
        consumed INTEGER NOT NULL DEFAULT 0,
        redeemer_name TEXT,
        redeemer_external_id TEXT,
        consumed_at TEXT,
        CHECK (
            (consumed = 0 AND consumed_at IS NULL)
            OR (consumed = 1 AND consumed_at IS NOT NULL)
        )
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_keys_creator ON keys (creator_id)",
    "CREATE INDEX IF NOT EXISTS idx_keys_expires ON keys (expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_keys_created ON keys (created_at)",
    # Outlives the keys table rows so an identifier is never issued twice
    """
    CREATE TABLE IF NOT EXISTS issued_identifiers (
        identifier TEXT PRIMARY KEY,
        issued_at TEXT NOT NULL
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS keys_register_identifier
    BEFORE INSERT ON keys
    BEGIN
        INSERT INTO issued_identifiers (identifier, issued_at)
        VALUES (NEW.identifier, NEW.created_at);
    END
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        action TEXT NOT NULL CHECK (action IN ('CREATE', 'VERIFY', 'REVOKE')),
        key_identifier TEXT NOT NULL,
        actor_id TEXT NOT NULL,
        actor_name TEXT NOT NULL,
        redeemer_name TEXT,
        timestamp TEXT NOT NULL,
        details TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_key ON audit_log (key_identifier)",
    """
    CREATE TRIGGER IF NOT EXISTS audit_log_no_update
    BEFORE UPDATE ON audit_log
    BEGIN
        SELECT RAISE(ABORT, 'audit_log is append-only');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS audit_log_no_delete
    BEFORE DELETE ON audit_log
    BEGIN
        SELECT RAISE(ABORT, 'audit_log is append-only');
    END
    """,
)


def to_db_timestamp(value: datetime) -> str:
    """
    Serialize a datetime as fixed-width ISO-8601 UTC.

    Fixed width keeps SQL text comparison consistent with time order.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


async def connect(
    path: Union[Path, str],
    busy_timeout: float = 5.0,
) -> aiosqlite.Connection:
    """
    Open a connection in autocommit mode.

    Every statement is its own transaction, so conditional UPDATE/DELETE
    statements are atomic against other connections to the same file.
    """
    db = await aiosqlite.connect(str(path), timeout=busy_timeout, isolation_level=None)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode=WAL")
    return db


async def init_schema(db: aiosqlite.Connection) -> None:
    for statement in SCHEMA:
        await db.execute(statement)
    logger.info("Database schema initialized")


async def get_db() -> aiosqlite.Connection:
    global _db_connection
    if _db_connection is None:
        _db_connection = await connect(settings.db_path, settings.db_busy_timeout_seconds)
    return _db_connection


async def init_database() -> aiosqlite.Connection:
    db = await get_db()
    await init_schema(db)
    return db


async def close_db() -> None:
    global _db_connection
    if _db_connection is not None:
        await _db_connection.close()
        _db_connection = None
        logger.info("Database connection closed")
