# /fio_oracle/core/request_queue.py
import asyncio
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from fio_oracle.core.config import settings
from fio_oracle.core.errors import ProviderError
from fio_oracle.core.logger import get_logger, RATE_LIMIT_RETRIES

log = get_logger(__name__)

RATE_LIMIT_CODES = (100, -32005)


def is_rate_limit_error(error: BaseException) -> bool:
    if isinstance(error, ProviderError):
        return error.rate_limited or error.status == 429 or error.code in RATE_LIMIT_CODES
    status = getattr(error, "status", None) or getattr(error, "status_code", None)
    return status == 429 or getattr(error, "code", None) in RATE_LIMIT_CODES


class _Job:
    __slots__ = ("task", "context", "future", "attempt")

    def __init__(self, task, context, future):
        self.task = task
        self.context = context
        self.future = future
        self.attempt = 0


class RequestQueue:
    """Runs outbound calls one at a time with spacing and rate-limit backoff.

    A rate-limited job goes back to the FRONT of the queue after
    ``base_retry_delay * 2**attempt`` seconds; other jobs wait behind it.
    After any retried job a global cooldown is added before the next one.
    """

    def __init__(
        self,
        delay: float | None = None,
        max_retries: int | None = None,
        base_retry_delay: float | None = None,
        post_retry_cooldown: float | None = None,
    ):
        self.delay = settings.REQUEST_QUEUE_DELAY if delay is None else delay
        self.max_retries = settings.REQUEST_QUEUE_MAX_RETRIES if max_retries is None else max_retries
        self.base_retry_delay = (
            settings.REQUEST_QUEUE_BASE_RETRY_DELAY if base_retry_delay is None else base_retry_delay
        )
        self.post_retry_cooldown = (
            settings.REQUEST_QUEUE_POST_RETRY_COOLDOWN if post_retry_cooldown is None else post_retry_cooldown
        )
        self._jobs: Deque[_Job] = deque()
        self._worker: Optional[asyncio.Task] = None
        self._last_finished: float | None = None
        self._stats = {"total": 0, "successful": 0, "failed": 0, "retried": 0}

    async def enqueue(self, task: Callable[[], Awaitable[Any]], context: Optional[Dict[str, Any]] = None) -> Any:
        job = _Job(task, context or {}, asyncio.get_running_loop().create_future())
        self._jobs.append(job)
        self._stats["total"] += 1
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())
        return await job.future

    async def _wait_spacing(self):
        if self._last_finished is None:
            return
        remaining = self.delay - (time.monotonic() - self._last_finished)
        if remaining > 0:
            await asyncio.sleep(remaining)

    async def _run(self):
        while self._jobs:
            await self._wait_spacing()
            job = self._jobs.popleft()
            if job.future.done():
                continue
            try:
                result = await job.task()
            except Exception as e:
                if is_rate_limit_error(e) and job.attempt < self.max_retries:
                    await self._requeue(job)
                    continue
                self._stats["failed"] += 1
                if is_rate_limit_error(e):
                    log.error("REQUEST_RATE_LIMIT_RETRIES_EXHAUSTED", error=str(e), **job.context)
                job.future.set_exception(e)
            else:
                self._stats["successful"] += 1
                job.future.set_result(result)
            finally:
                self._last_finished = time.monotonic()
            if job.attempt and job.future.done():
                # Let provider side limits fully reset after a retried call.
                await asyncio.sleep(self.post_retry_cooldown)

    async def _requeue(self, job: _Job):
        wait = self.base_retry_delay * (2 ** job.attempt)
        job.attempt += 1
        self._stats["retried"] += 1
        RATE_LIMIT_RETRIES.inc()
        log.warning(
            "REQUEST_RATE_LIMITED_RETRYING",
            attempt=job.attempt, max_retries=self.max_retries, wait=wait, **job.context,
        )
        await asyncio.sleep(wait)
        self._jobs.appendleft(job)

    def stats(self) -> Dict[str, int]:
        return dict(self._stats, queued=len(self._jobs))

    def log_stats(self, **context):
        log.info("REQUEST_QUEUE_STATS", **self.stats(), **context)
