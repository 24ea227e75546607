# /fio_oracle/core/logger.py
import logging
import structlog
from structlog.contextvars import bind_contextvars
import sentry_sdk
from prometheus_client import Counter
from fio_oracle.core.config import settings
import json
import hmac
import hashlib
import os

# --- Prometheus Metrics ---
TX_SUBMITTED = Counter("fio_oracle_transactions_submitted_total", "EVM transactions broadcast", ["chain", "action"])
TX_REPLACED = Counter("fio_oracle_transactions_replaced_total", "Stuck transactions replaced", ["chain"])
TX_FAILED = Counter("fio_oracle_transactions_failed_total", "Transactions that failed terminally", ["chain", "action"])
TX_ALREADY_COMPLETED = Counter("fio_oracle_already_completed_total", "Submissions resolved as already completed", ["chain", "action"])
QUEUE_ITEMS_PROCESSED = Counter("fio_oracle_queue_items_processed_total", "Queue items popped", ["queue"])
QUEUE_ITEMS_FAILED = Counter("fio_oracle_queue_items_failed_total", "Queue items moved to an error queue", ["queue"])
RPC_FALLBACKS = Counter("fio_oracle_rpc_fallbacks_total", "RPC calls that advanced to the next provider", ["chain"])
RATE_LIMIT_RETRIES = Counter("fio_oracle_rate_limit_retries_total", "Requests re-queued after a rate limit")
MISSING_ACTIONS = Counter("fio_oracle_missing_actions_total", "Missing actions found by the reconciler", ["action"])
ERRORS_LOGGED = Counter("fio_oracle_errors_logged_total", "Total number of errors logged", ["level"])

SIGNING_KEY = (
    settings.LOG_SIGNING_KEY.get_secret_value().encode()
    if settings.LOG_SIGNING_KEY
    else b"insecure"
)

# Tests point this somewhere else.
ERROR_LOG_FILE = os.path.join(settings.SESSION_DIR, f"logs-{settings.MODE}", "Error.log")

_ERROR_LEVELS = ("error", "critical", "exception")


def append_to_error_log(logger, method_name: str, event_dict: dict) -> dict:
    """Structlog processor that appends error events, HMAC signed, to the error log.

    Lines are ``<json>|<sha256 hmac>`` so an operator can prove an entry was
    written by this process. Non-error events pass through untouched.
    """
    level = event_dict.get("level", method_name)
    if level not in _ERROR_LEVELS:
        return event_dict

    ERRORS_LOGGED.labels(level).inc()
    payload = json.dumps(event_dict, sort_keys=True, default=str)
    sig = hmac.new(SIGNING_KEY, payload.encode(), hashlib.sha256).hexdigest()

    error_log = str(ERROR_LOG_FILE)
    os.makedirs(os.path.dirname(error_log), exist_ok=True)
    with open(error_log, "a", encoding="utf-8") as f:
        f.write(payload + "|" + sig + "\n")

    event_dict["signature"] = sig
    return event_dict


def configure_logging():
    if settings.SENTRY_DSN:
        sentry_sdk.init(dsn=settings.SENTRY_DSN.get_secret_value(), traces_sample_rate=1.0)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            append_to_error_log,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(settings.LOG_LEVEL)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str):
    return structlog.get_logger(name)


def bind_job(job: str, chain: str | None = None):
    """Tags every log line of the current task with its pipeline."""
    bind_contextvars(job=job, chain=chain)


configure_logging()
log = get_logger("FIO-Oracle.System")
