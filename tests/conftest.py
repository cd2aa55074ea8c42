import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="keygate-test-"))
os.environ.setdefault("API_TOKEN", "test-api-token")
os.environ.setdefault("SWEEP_INTERVAL_SECONDS", "3600")

from keygate.core import ExpirySweeper, KeyService  # noqa: E402
from keygate.storage import AuditLog, KeyStore, connect, init_schema  # noqa: E402


class FakeClock:
    """Controllable UTC clock for expiry tests."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "keygate.db"


@pytest_asyncio.fixture
async def db(db_path):
    connection = await connect(db_path)
    await init_schema(connection)
    yield connection
    await connection.close()


@pytest.fixture
def key_store(db):
    return KeyStore(db, default_timeout=5.0)


@pytest.fixture
def audit_log(db, clock):
    return AuditLog(db, default_timeout=5.0, clock=clock)


@pytest.fixture
def key_service(key_store, audit_log, clock):
    return KeyService(key_store, audit_log, clock=clock)


@pytest.fixture
def sweeper(key_store, clock):
    return ExpirySweeper(key_store, interval_seconds=3600, clock=clock)


@pytest.fixture
def creator():
    return {
        "creator_id": "184467440737095516",
        "creator_name": "Alice",
        "creator_handle": "alice#0001",
    }
