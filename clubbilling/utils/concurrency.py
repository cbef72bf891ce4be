import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional

import redis.asyncio as redis

from clubbilling.core.errors import ConflictError
from clubbilling.utils.redis_pool import get_redis

log = logging.getLogger(__name__)

LOCK_PREFIX = "clubbilling:lock"

RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class AdvisoryLock:
    """SET NX lock with a token so only the holder can release it."""

    def __init__(
        self,
        name: str,
        timeout: int = 30,
        retry_count: int = 3,
        retry_delay: float = 0.5,
        client_factory: Callable[[], Awaitable[redis.Redis]] = get_redis,
    ):
        self.name = f"{LOCK_PREFIX}:{name}"
        self.timeout = timeout
        self.retry_count = retry_count
        self.retry_delay = retry_delay
        self.token: Optional[str] = None
        self.redis: Optional[redis.Redis] = None
        self._client_factory = client_factory

    async def acquire(self) -> bool:
        self.token = str(uuid.uuid4())
        self.redis = await self._client_factory()

        for attempt in range(self.retry_count):
            acquired = await self.redis.set(self.name, self.token, nx=True, ex=self.timeout)
            if acquired:
                log.debug("Lock acquired: %s", self.name)
                return True
            if attempt < self.retry_count - 1:
                await asyncio.sleep(self.retry_delay * (attempt + 1))

        log.warning("Failed to acquire lock after %d attempts: %s", self.retry_count, self.name)
        return False

    async def release(self):
        if not self.redis or not self.token:
            return
        try:
            await self.redis.eval(RELEASE_SCRIPT, 1, self.name, self.token)
            log.debug("Lock released: %s", self.name)
        except Exception as e:
            log.error("Failed to release lock %s: %s", self.name, e)


@asynccontextmanager
async def advisory_lock(
    name: str,
    timeout: int = 30,
    retry_count: int = 3,
    retry_delay: float = 0.5,
    raise_on_fail: bool = True,
):
    lock = AdvisoryLock(name, timeout, retry_count, retry_delay)

    try:
        acquired = await lock.acquire()
        if not acquired:
            if raise_on_fail:
                raise ConflictError("Operation in progress. Please wait and retry.", lock=name)
            yield False
            return
        yield True
    finally:
        await lock.release()
