"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Redis is always mocked.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RECONCILIATION_SCHEDULER_ENABLED", "false")

import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB, UUID

from deliveryledger.database import Base
import deliveryledger.models  # noqa: F401  registers every table on Base.metadata
from deliveryledger.models.message_log import MessageLog


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


# A column declared UUID gets NUMERIC affinity in SQLite, which turns
# all-digit hex ids into REALs. Store them as text instead.
@compiles(UUID, "sqlite")
def _compile_uuid_sqlite(type_, compiler, **kw):
    return "CHAR(32)"


@pytest.fixture
async def engine():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    """In-memory SQLite database for tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def mock_redis():
    """Mock for async Redis - locks and alert cooldowns never touch a real server."""
    with patch("deliveryledger.utils.cache.get_redis") as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.eval = AsyncMock(return_value=1)
        redis_mock.ping = AsyncMock(return_value=True)
        mock.return_value = redis_mock
        yield redis_mock


@pytest.fixture
def make_message_log(db):
    """Factory for committed MessageLog rows."""
    async def _make(**overrides) -> MessageLog:
        provider_message_id = overrides.pop("provider_message_id", f"wamid.{uuid.uuid4().hex[:12]}")
        log = MessageLog(
            tenant_id=overrides.pop("tenant_id", uuid.UUID("11111111-1111-1111-1111-111111111111")),
            idempotency_key=overrides.pop("idempotency_key", f"idem-{uuid.uuid4().hex}"),
            provider_message_id=provider_message_id,
            phone_number=overrides.pop("phone_number", "+6281234567890"),
            provider_name=overrides.pop("provider_name", "meta"),
            status=overrides.pop("status", "sending"),
            created_at=overrides.pop("created_at", datetime.now(timezone.utc)),
            **overrides,
        )
        db.add(log)
        await db.commit()
        return log
    return _make
