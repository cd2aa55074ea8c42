from .audit_log import AuditLog
from .database import close_db, connect, get_db, init_database, init_schema
from .key_store import KeyStore

__all__ = [
    "AuditLog",
    "KeyStore",
    "connect",
    "init_schema",
    "init_database",
    "get_db",
    "close_db",
]
