"""
Unit tests for the Redis job lease and logging setup.
"""
import logging
import pytest
from unittest.mock import AsyncMock, MagicMock

from app.core.logging_config import MaxLevelFilter, setup_logging, stop_logging
from app.core.redis_lock import RELEASE_SCRIPT, RedisDistributedLock


@pytest.fixture
def redis_client():
    client = MagicMock()
    client.set = AsyncMock(return_value=True)
    client.eval = AsyncMock(return_value=1)
    return client


class TestRedisDistributedLock:
    """Tests for RedisDistributedLock"""

    @pytest.mark.asyncio
    async def test_acquire_and_release(self, redis_client):
        lease = RedisDistributedLock(redis_client, "lease:job:expiry_sweep", ttl_seconds=150)

        assert await lease.acquire() is True
        key, token = redis_client.set.call_args.args
        assert key == "lease:job:expiry_sweep"
        assert redis_client.set.call_args.kwargs == {"nx": True, "px": 150_000}

        await lease.release()
        redis_client.eval.assert_awaited_once_with(RELEASE_SCRIPT, 1, "lease:job:expiry_sweep", token)
        assert lease.acquired is False

    @pytest.mark.asyncio
    async def test_busy_single_attempt(self, redis_client):
        redis_client.set.return_value = None
        lease = RedisDistributedLock(redis_client, "lease:job:expiry_sweep", wait_timeout=0)

        assert await lease.acquire() is False
        assert redis_client.set.await_count == 1

    @pytest.mark.asyncio
    async def test_release_without_acquire_is_noop(self, redis_client):
        lease = RedisDistributedLock(redis_client, "lease:job:expiry_sweep")
        await lease.release()
        redis_client.eval.assert_not_called()

    @pytest.mark.asyncio
    async def test_release_error_swallowed(self, redis_client):
        redis_client.eval.side_effect = ConnectionError("redis down")
        lease = RedisDistributedLock(redis_client, "lease:job:expiry_sweep")
        await lease.acquire()

        await lease.release()
        assert lease.token is None

    @pytest.mark.asyncio
    async def test_context_manager_busy(self, redis_client):
        redis_client.set.return_value = None
        with pytest.raises(RuntimeError):
            async with RedisDistributedLock(redis_client, "lease:job:expiry_sweep"):
                pass


class TestLoggingConfig:
    """Tests for setup_logging"""

    def test_max_level_filter(self):
        f = MaxLevelFilter(logging.WARNING)
        assert f.filter(logging.LogRecord("x", logging.WARNING, "", 0, "", None, None)) is True
        assert f.filter(logging.LogRecord("x", logging.ERROR, "", 0, "", None, None)) is False

    def test_setup_is_repeatable(self):
        try:
            setup_logging("DEBUG")
            listener = setup_logging("WARNING")
            assert logging.getLogger().level == logging.WARNING
            assert len(logging.getLogger().handlers) == 1
            assert listener is not None
        finally:
            stop_logging()
            logging.getLogger().handlers.clear()

    def test_unknown_level_falls_back(self):
        try:
            setup_logging("LOUD")
            assert logging.getLogger().level == logging.INFO
        finally:
            stop_logging()
            logging.getLogger().handlers.clear()
