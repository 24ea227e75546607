import asyncio

import pytest

from fio_oracle.core.errors import ProviderError
from fio_oracle.core.request_queue import RequestQueue, is_rate_limit_error


def make_queue(**overrides):
    values = dict(delay=0, max_retries=3, base_retry_delay=0, post_retry_cooldown=0)
    values.update(overrides)
    return RequestQueue(**values)


def test_rate_limit_detection():
    assert is_rate_limit_error(ProviderError("Too Many Requests", status=429))
    assert is_rate_limit_error(ProviderError("limit", code=-32005))
    assert not is_rate_limit_error(ProviderError("execution reverted"))


@pytest.mark.asyncio
async def test_rate_limited_task_is_retried_until_it_succeeds():
    queue = make_queue()
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise ProviderError("Too Many Requests", status=429, rate_limited=True)
        return "ok"

    assert await queue.enqueue(flaky, {"method": "eth_blockNumber"}) == "ok"
    stats = queue.stats()
    assert stats["retried"] == 2
    assert stats["successful"] == 1
    assert stats["failed"] == 0


@pytest.mark.asyncio
async def test_rate_limit_gives_up_after_max_retries():
    queue = make_queue(max_retries=2)

    async def always_limited():
        raise ProviderError("Too Many Requests", status=429, rate_limited=True)

    with pytest.raises(ProviderError):
        await queue.enqueue(always_limited)
    assert queue.stats()["retried"] == 2
    assert queue.stats()["failed"] == 1


@pytest.mark.asyncio
async def test_tasks_run_one_at_a_time_in_order():
    queue = make_queue()
    running = 0
    order = []

    def task(i):
        async def run():
            nonlocal running
            running += 1
            assert running == 1
            await asyncio.sleep(0)
            order.append(i)
            running -= 1
            return i
        return run

    results = await asyncio.gather(*(queue.enqueue(task(i)) for i in range(5)))
    assert results == [0, 1, 2, 3, 4]
    assert order == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_non_rate_limit_errors_are_not_retried():
    queue = make_queue()
    calls = []

    async def broken():
        calls.append(1)
        raise ValueError("boom")

    with pytest.raises(ValueError):
        await queue.enqueue(broken)
    assert len(calls) == 1
