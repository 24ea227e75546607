import pytest
from redis.exceptions import LockNotOwnedError

from fio_oracle.core.constants import Action, JobKind, job_lock_key
from fio_oracle.core.job_lock import MemoryJobLock, RedisJobLock, create_job_lock


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class DummyRedisLock:
    def __init__(self, client, name, timeout):
        self.client = client
        self.name = name
        self.timeout = timeout
        self.token = None

    async def acquire(self, token=None):
        if self.name in self.client.store:
            return False
        self.token = token
        self.client.store[self.name] = (token, self.timeout)
        return True

    async def reacquire(self):
        if self.client.store.get(self.name, (None,))[0] != self.token:
            raise LockNotOwnedError("Cannot reacquire a lock that's no longer owned")
        self.client.store[self.name] = (self.token, self.timeout)

    async def release(self):
        if self.client.store.get(self.name, (None,))[0] != self.token:
            raise LockNotOwnedError("Cannot release a lock that's no longer owned")
        del self.client.store[self.name]


class DummyRedis:
    def __init__(self):
        self.store = {}

    def lock(self, name, timeout=None, blocking=True):
        assert blocking is False
        return DummyRedisLock(self, name, timeout)

    def expire_now(self, name):
        self.store.pop(name, None)

    async def exists(self, key):
        return int(key in self.store)

    async def aclose(self):
        pass


def test_lock_key_format():
    assert job_lock_key(Action.WRAP, "ETH", "tokens") == "isWrapOnETHTokensJobExecuting"
    assert job_lock_key(Action.UNWRAP, "POL", "nfts", JobKind.FIO_TX) == "isUnwrapOnPOLNftsFioTxJobExecuting"


@pytest.mark.asyncio
async def test_memory_lock_is_mutually_exclusive():
    lock = MemoryJobLock(ttl=900, clock=FakeClock())
    token = await lock.acquire("k")
    assert token
    assert await lock.acquire("k") is None
    assert await lock.is_held("k")
    await lock.release("k", token)
    assert await lock.acquire("k")


@pytest.mark.asyncio
async def test_memory_lock_expires_after_ttl():
    clock = FakeClock()
    lock = MemoryJobLock(ttl=900, clock=clock)
    token = await lock.acquire("k")
    clock.now += 600
    assert await lock.refresh("k", token)
    clock.now += 600
    assert await lock.acquire("k") is None
    clock.now += 301
    assert await lock.acquire("k")


@pytest.mark.asyncio
async def test_stale_holder_cannot_free_a_taken_over_lock():
    clock = FakeClock()
    lock = MemoryJobLock(ttl=10, clock=clock)
    first = await lock.acquire("k")
    clock.now += 11
    second = await lock.acquire("k")
    assert second and second != first

    await lock.release("k", first)
    assert not await lock.refresh("k", first)

    assert await lock.is_held("k")
    assert await lock.acquire("k") is None
    await lock.release("k", second)
    assert not await lock.is_held("k")


@pytest.mark.asyncio
async def test_redis_lock_is_token_checked():
    client = DummyRedis()
    lock = RedisJobLock(client=client, ttl=900)
    name = RedisJobLock.PREFIX + "k"

    first = await lock.acquire("k")
    assert first
    assert client.store[name] == (first, 900)
    assert await lock.acquire("k") is None
    assert await lock.refresh("k", first)

    client.expire_now(name)
    second = await lock.acquire("k")
    await lock.release("k", first)
    assert not await lock.refresh("k", first)
    assert await lock.is_held("k")

    await lock.release("k", second)
    assert not await lock.is_held("k")


def test_unknown_backend_is_rejected():
    with pytest.raises(ValueError):
        create_job_lock("zookeeper")
