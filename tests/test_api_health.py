"""
Health endpoint tests.
"""
from unittest.mock import AsyncMock, MagicMock

from deliveryledger.api.health import health_check, readiness_check


async def test_liveness():
    response = await health_check()
    assert response["status"] == "healthy"
    assert response["version"] == "0.1.0"


async def test_ready(db, mock_redis):
    response = await readiness_check(db=db)
    assert response["status"] == "ready"
    assert response["checks"] == {"database": True, "redis": True}


async def test_degraded_without_redis(db, mock_redis):
    mock_redis.ping.side_effect = ConnectionError("redis down")
    response = await readiness_check(db=db)
    assert response["status"] == "degraded"
    assert response["checks"]["redis"] is False


async def test_unavailable_without_database(mock_redis):
    broken = MagicMock()
    broken.execute = AsyncMock(side_effect=OSError("connection refused"))
    mock_redis.ping.side_effect = ConnectionError("redis down")

    response = await readiness_check(db=broken)

    assert response["status"] == "unavailable"
