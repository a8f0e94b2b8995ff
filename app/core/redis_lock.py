"""
Cross-instance job lease on Redis.

SET key token NX PX ttl to take the lease, compare-and-delete Lua script to
give it back. If the holder dies the TTL frees the key, so a crashed instance
can delay a job by at most one TTL.
"""
import asyncio
import logging
import os
import uuid
from typing import Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)

RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisDistributedLock:
    """
    Token-owned Redis lease.

    Example:
        lease = RedisDistributedLock(client, "lease:job:expiry_sweep", ttl_seconds=600)
        if await lease.acquire():
            try:
                ...
            finally:
                await lease.release()
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        key: str,
        ttl_seconds: int = 60,
        wait_timeout: float = 0,
    ):
        self.redis_client = redis_client
        self.key = key
        self.ttl_seconds = ttl_seconds
        self.wait_timeout = wait_timeout
        self.token: Optional[str] = None
        self.acquired = False
        self.instance_id = os.getenv("INSTANCE_ID", f"pid-{os.getpid()}")

    async def acquire(self) -> bool:
        """
        Try to take the lease, polling until wait_timeout.

        wait_timeout=0 means a single attempt. Redis errors propagate to the
        caller, which decides whether to run without the lease.
        """
        if self.acquired:
            logger.warning(f"REDIS_LOCK_ALREADY_HELD key={self.key}")
            return False

        token = str(uuid.uuid4())
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_timeout

        while True:
            ok = await self.redis_client.set(
                self.key, token, nx=True, px=int(self.ttl_seconds * 1000)
            )
            if ok:
                self.token = token
                self.acquired = True
                logger.debug(f"REDIS_LOCK_ACQUIRED key={self.key} instance={self.instance_id}")
                return True
            if loop.time() >= deadline:
                logger.info(f"REDIS_LOCK_BUSY key={self.key} instance={self.instance_id}")
                return False
            await asyncio.sleep(0.1)

    async def release(self) -> None:
        """Give the lease back if still ours. Safe to call twice."""
        if not self.acquired or not self.token:
            self.acquired = False
            return
        try:
            released = await self.redis_client.eval(RELEASE_SCRIPT, 1, self.key, self.token)
            if not released:
                logger.warning(f"REDIS_LOCK_LOST key={self.key} reason=expired_or_taken")
        except Exception as e:
            logger.error(f"REDIS_LOCK_RELEASE_ERROR key={self.key} error={type(e).__name__}: {str(e)[:100]}")
        finally:
            self.acquired = False
            self.token = None

    async def __aenter__(self):
        if not await self.acquire():
            raise RuntimeError(f"Failed to acquire Redis lock: {self.key}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.release()
        return False
