# /fio_oracle/core/decorators.py
# Reusable decorators for operational resilience.
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential, before_sleep_log
import asyncio
import aiohttp
import logging

from fio_oracle.core.logger import get_logger

log = get_logger(__name__)

# Retry a single-endpoint HTTP call on transport failures only. Server
# fallback and business errors are handled by the caller.
retriable_network_call = retry(
    retry=retry_if_exception_type((aiohttp.ClientError, asyncio.TimeoutError)),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=5),
    before_sleep=before_sleep_log(log, logging.WARNING),
    reraise=True,  # Re-raise the last exception after retries are exhausted
)
