"""
Redis distributed locks - single writer per message across API workers.
Uses Redis SET NX with TTL for automatic expiration. The database row lock
taken by the state machine still serializes writers if Redis is down.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

LOCK_TTL_SECONDS = 30
LOCK_WAIT_SECONDS = 5
LOCK_POLL_INTERVAL = 0.1  # 100ms

_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""


@asynccontextmanager
async def message_lock(
    message_log_id: str,
    ttl: int = LOCK_TTL_SECONDS,
    wait: float = LOCK_WAIT_SECONDS,
):
    """
    Acquire a distributed lock for one message's event stream.

    Usage:
        async with message_lock(str(log.id)):
            await apply_event(db, log.id, event)
    """
    lock_key = f"deliveryledger:lock:message:{message_log_id}"
    lock_value = uuid.uuid4().hex  # only release our own lock

    acquired = False
    try:
        acquired = await _acquire_lock(lock_key, lock_value, ttl, wait)
        if not acquired:
            raise LockTimeoutError(f"Could not acquire lock for message {message_log_id} within {wait}s")
        yield
    finally:
        if acquired:
            await _release_lock(lock_key, lock_value)


async def _acquire_lock(key: str, value: str, ttl: int, wait: float) -> bool:
    """Try to acquire a Redis lock with polling."""
    try:
        from deliveryledger.utils.cache import get_redis
        redis = await get_redis()

        if await redis.set(key, value, nx=True, ex=ttl):
            return True

        elapsed = 0.0
        while elapsed < wait:
            await asyncio.sleep(LOCK_POLL_INTERVAL)
            elapsed += LOCK_POLL_INTERVAL
            if await redis.set(key, value, nx=True, ex=ttl):
                return True

        logger.warning("Lock acquisition timed out for %s", key)
        return False
    except Exception as e:
        logger.warning("Redis lock error for %s: %s. Falling back to row lock only.", key, str(e))
        return True


async def _release_lock(key: str, value: str) -> None:
    """Release a Redis lock only if we still own it (compare-and-delete)."""
    try:
        from deliveryledger.utils.cache import get_redis
        redis = await get_redis()
        await redis.eval(_RELEASE_SCRIPT, 1, key, value)
    except Exception as e:
        logger.warning("Redis lock release error for %s: %s", key, str(e))


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout."""
    pass
