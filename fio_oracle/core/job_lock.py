# /fio_oracle/core/job_lock.py
# Named locks with a TTL so that a crashed job cannot block its pipeline forever.
import time
import uuid
from typing import Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import LockError

from fio_oracle.core.config import settings
from fio_oracle.core.logger import get_logger

log = get_logger(__name__)


def new_token() -> str:
    return uuid.uuid4().hex


class MemoryJobLock:
    """Single-process lock table, the default backend.

    ``acquire`` hands out an owner token. ``refresh`` and ``release`` only
    act when the token still owns the key, so a holder that outlived its
    TTL cannot free a lock somebody else took over.
    """

    def __init__(self, ttl: Optional[int] = None, clock=time.monotonic):
        self.ttl = settings.JOB_LOCK_TTL_SECONDS if ttl is None else ttl
        self._clock = clock
        self._holders: Dict[str, Tuple[str, float]] = {}

    def _owner(self, key: str) -> Optional[str]:
        holder = self._holders.get(key)
        if holder is None or holder[1] <= self._clock():
            return None
        return holder[0]

    async def acquire(self, key: str) -> Optional[str]:
        if self._owner(key) is not None:
            log.info("JOB_LOCK_BUSY", key=key)
            return None
        if key in self._holders:
            log.warning("JOB_LOCK_EXPIRED_TAKEOVER", key=key)
        token = new_token()
        self._holders[key] = (token, self._clock() + self.ttl)
        return token

    async def refresh(self, key: str, token: str) -> bool:
        if self._owner(key) != token:
            log.error("JOB_LOCK_LOST", key=key)
            return False
        self._holders[key] = (token, self._clock() + self.ttl)
        return True

    async def release(self, key: str, token: str) -> None:
        holder = self._holders.get(key)
        if holder is None or holder[0] != token:
            log.warning("JOB_LOCK_RELEASE_NOT_OWNER", key=key)
            return
        del self._holders[key]

    async def is_held(self, key: str) -> bool:
        return self._owner(key) is not None

    async def close(self):
        pass


class RedisJobLock:
    """redis-py locks, shared between processes pointing at one redis."""

    PREFIX = "fio_oracle:lock:"

    def __init__(self, client=None, ttl: Optional[int] = None):
        self.client = client or aioredis.Redis.from_url(settings.REDIS_URL)
        self.ttl = settings.JOB_LOCK_TTL_SECONDS if ttl is None else ttl
        self._locks: Dict[str, object] = {}

    async def acquire(self, key: str) -> Optional[str]:
        lock = self.client.lock(self.PREFIX + key, timeout=self.ttl, blocking=False)
        token = new_token()
        if not await lock.acquire(token=token):
            log.info("JOB_LOCK_BUSY", key=key)
            return None
        self._locks[token] = lock
        return token

    async def refresh(self, key: str, token: str) -> bool:
        lock = self._locks.get(token)
        if lock is None:
            return False
        try:
            await lock.reacquire()
        except LockError as e:
            log.error("JOB_LOCK_LOST", key=key, error=str(e))
            return False
        return True

    async def release(self, key: str, token: str) -> None:
        lock = self._locks.pop(token, None)
        if lock is None:
            return
        try:
            await lock.release()
        except LockError as e:
            log.warning("JOB_LOCK_RELEASE_NOT_OWNER", key=key, error=str(e))

    async def is_held(self, key: str) -> bool:
        return bool(await self.client.exists(self.PREFIX + key))

    async def close(self):
        close = getattr(self.client, "aclose", None) or self.client.close
        await close()


def create_job_lock(backend: Optional[str] = None):
    backend = (backend or settings.LOCK_BACKEND).lower()
    if backend == "redis":
        log.info("JOB_LOCK_BACKEND", backend="redis", url=settings.REDIS_URL)
        return RedisJobLock()
    if backend != "memory":
        raise ValueError(f"Unknown lock backend: {backend}")
    log.info("JOB_LOCK_BACKEND", backend="memory")
    return MemoryJobLock()
