# /fio_oracle/core/job_queue.py
import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from fio_oracle.core.errors import NonRetryableError
from fio_oracle.core.log_files import append_line, pop_head_line, prepare_log_file, read_head_line
from fio_oracle.core.logger import QUEUE_ITEMS_FAILED, QUEUE_ITEMS_PROCESSED, get_logger

log = get_logger(__name__)

Handler = Callable[[Any], Awaitable[bool]]


class JobQueue:
    """Drains line-oriented queue files in FIFO order under a job lock.

    The head line is only removed after its handler has finished, so a
    crash mid-item leaves it at the head for the next run. Items that fail
    are copied to the error queue before they are popped.
    """

    def __init__(self, job_lock, item_delay: float = 0.0):
        self.job_lock = job_lock
        self.item_delay = item_delay

    async def drain(
        self,
        lock_key: str,
        queue_path: Path,
        error_path: Path,
        handler: Handler,
        parse: Optional[Callable[[str], Any]] = None,
        before_drain: Optional[Callable[[], Awaitable[None]]] = None,
        item_delay: Optional[float] = None,
    ) -> int:
        """Processes the queue until it is empty. Returns the number of items handled."""
        token = await self.job_lock.acquire(lock_key)
        if not token:
            return 0
        label = Path(queue_path).name
        delay = self.item_delay if item_delay is None else item_delay
        processed = 0
        try:
            await prepare_log_file(queue_path)
            await prepare_log_file(error_path)
            if not await read_head_line(queue_path):
                return 0
            if before_drain is not None:
                try:
                    await before_drain()
                except NonRetryableError as e:
                    log.error("QUEUE_DRAIN_BLOCKED", queue=label, error=str(e))
                    return 0

            while True:
                line = await read_head_line(queue_path)
                if not line:
                    break
                ok = False
                try:
                    item = parse(line) if parse is not None else line
                    ok = bool(await handler(item))
                except Exception as e:
                    log.error("QUEUE_ITEM_FAILED", queue=label, line=line, error=str(e), exc_info=True)
                if not ok:
                    QUEUE_ITEMS_FAILED.labels(label).inc()
                    await append_line(error_path, line)
                    log.warning("QUEUE_ITEM_MOVED_TO_ERROR_QUEUE", queue=label, line=line)
                remaining = await pop_head_line(queue_path)
                QUEUE_ITEMS_PROCESSED.labels(label).inc()
                processed += 1
                if not await self.job_lock.refresh(lock_key, token):
                    log.error("QUEUE_DRAIN_LOCK_LOST", queue=label, processed=processed)
                    break
                if remaining and delay:
                    await asyncio.sleep(delay)
            log.info("QUEUE_DRAINED", queue=label, processed=processed)
            return processed
        finally:
            await self.job_lock.release(lock_key, token)
