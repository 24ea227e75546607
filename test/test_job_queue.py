import pytest

from fio_oracle.core.errors import OracleNotRegistered
from fio_oracle.core.job_lock import MemoryJobLock
from fio_oracle.core.job_queue import JobQueue
from fio_oracle.core.log_files import append_lines, read_lines


@pytest.fixture
def queue_files(tmp_path):
    return tmp_path / "wrap-tokens-transactions-queue-POL.log", tmp_path / "wrap-tokens-transactions-error-queue-POL.log"


@pytest.mark.asyncio
async def test_drain_is_fifo_and_moves_failures_to_error_queue(queue_files):
    queue_path, error_path = queue_files
    await append_lines(queue_path, ['1 {"n":1}', '2 {"n":2}', '3 {"n":3}', '4 {"n":4}'])
    seen = []

    async def handler(line):
        seen.append(line.split(" ")[0])
        if line.startswith("2"):
            return False
        if line.startswith("3"):
            raise RuntimeError("rpc down")
        return True

    lock = MemoryJobLock()
    processed = await JobQueue(lock).drain("isWrapOnPOLTokensJobExecuting", queue_path, error_path, handler)

    assert processed == 4
    assert seen == ["1", "2", "3", "4"]
    assert await read_lines(queue_path) == []
    assert await read_lines(error_path) == ['2 {"n":2}', '3 {"n":3}']
    assert not await lock.is_held("isWrapOnPOLTokensJobExecuting")


@pytest.mark.asyncio
async def test_busy_lock_skips_the_run(queue_files):
    queue_path, error_path = queue_files
    await append_lines(queue_path, ["1 {}"])
    lock = MemoryJobLock()
    await lock.acquire("key")

    async def handler(line):
        raise AssertionError("must not run")

    assert await JobQueue(lock).drain("key", queue_path, error_path, handler) == 0
    assert await read_lines(queue_path) == ["1 {}"]


@pytest.mark.asyncio
async def test_unregistered_oracle_stops_drain_and_keeps_queue(queue_files):
    queue_path, error_path = queue_files
    await append_lines(queue_path, ["1 {}", "2 {}"])
    lock = MemoryJobLock()

    async def not_registered():
        raise OracleNotRegistered("0xabc is not a registered oracle")

    async def handler(line):
        raise AssertionError("must not run")

    assert await JobQueue(lock).drain("key", queue_path, error_path, handler, before_drain=not_registered) == 0
    assert await read_lines(queue_path) == ["1 {}", "2 {}"]
    assert await read_lines(error_path) == []
    assert not await lock.is_held("key")


@pytest.mark.asyncio
async def test_lock_is_released_when_the_queue_file_breaks(queue_files, monkeypatch):
    queue_path, error_path = queue_files
    await append_lines(queue_path, ["1 {}"])
    lock = MemoryJobLock()

    async def broken_pop(path):
        raise OSError("disk full")

    monkeypatch.setattr("fio_oracle.core.job_queue.pop_head_line", broken_pop)

    async def handler(line):
        return True

    with pytest.raises(OSError):
        await JobQueue(lock).drain("key", queue_path, error_path, handler)
    assert not await lock.is_held("key")


@pytest.mark.asyncio
async def test_drain_stops_when_the_lock_was_taken_over(queue_files):
    queue_path, error_path = queue_files
    await append_lines(queue_path, ["1 {}", "2 {}", "3 {}"])

    class ExpiringLock(MemoryJobLock):
        async def refresh(self, key, token):
            return False

    seen = []

    async def handler(line):
        seen.append(line)
        return True

    assert await JobQueue(ExpiringLock()).drain("key", queue_path, error_path, handler) == 1
    assert seen == ["1 {}"]
    assert await read_lines(queue_path) == ["2 {}", "3 {}"]
