# /fio_oracle/core/errors.py
# Exception hierarchy and the single place where error text is classified.
from enum import Enum
from typing import Any, Iterable, List


class OracleError(Exception):
    pass


class ProviderError(OracleError):
    """A JSON-RPC call failed on one provider (or on all of them)."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status: int | None = None,
        code: int | None = None,
        data: Any = None,
        retryable: bool = False,
        rate_limited: bool = False,
        auth_failure: bool = False,
        range_exceeded: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.status = status
        self.code = code
        self.data = data
        self.retryable = retryable
        self.rate_limited = rate_limited
        self.auth_failure = auth_failure
        self.range_exceeded = range_exceeded

    def __str__(self):
        prefix = f"[{self.provider}] " if self.provider else ""
        return f"{prefix}{self.message}"


class GasPriceUnavailable(OracleError):
    pass


class TransactionFailed(OracleError):
    pass


class NonRetryableError(OracleError):
    pass


class OracleNotRegistered(NonRetryableError):
    pass


class ConsensusError(OracleError):
    pass


class FioServerUnavailable(OracleError):
    pass


class FioTransactionError(OracleError):
    def __init__(self, message: str, result: Any = None):
        super().__init__(message)
        self.result = result


class ErrorKind(Enum):
    ALREADY_COMPLETED = "already_completed"
    NONCE_CONFLICT = "nonce_conflict"
    UNDERPRICED = "underpriced"
    RATE_LIMITED = "rate_limited"
    NETWORK = "network"
    NON_RETRYABLE = "non_retryable"
    UNKNOWN = "unknown"


NONCE_TOO_LOW_ERROR = "nonce too low"
ALREADY_KNOWN_TRANSACTION = "already known"
LOW_GAS_PRICE = "was not mined"
REVERTED_BY_THE_EVM = "reverted by the evm"

NONCE_CONFLICT_MARKERS = (NONCE_TOO_LOW_ERROR, ALREADY_KNOWN_TRANSACTION)
UNDERPRICED_MARKERS = (
    LOW_GAS_PRICE,
    REVERTED_BY_THE_EVM,
    "replacement transaction underpriced",
    "transaction underpriced",
    "max fee per gas less than block base fee",
)
# Contract and ledger answers meaning another signer, or an earlier attempt
# of ours, already finished the job.
ALREADY_COMPLETED_MARKERS = (
    "already approved",
    "oracle has already approved",
    "already complete",
    "already wrapped",
    "already unwrapped",
    "already burned",
    "obtid already",
    "obt_id already",
    "duplicate transaction",
)
FIO_NON_RETRYABLE_ERRORS = (
    "Not a registered Oracle",
    "Invalid oracle",
    "Oracle not found",
    "Expired Transaction",
    "expired_tx_exception",
)
RANGE_ERROR_MARKERS = (
    "exceeded maximum block range",
    "maximum allowed number of requested blocks",
    "block range",
    "query returned more than",
)


def _collect(value: Any, out: List[str], seen: set, depth: int = 0):
    if value is None or depth > 6 or id(value) in seen:
        return
    if isinstance(value, str):
        out.append(value)
        return
    if isinstance(value, (int, float, bool)):
        return
    seen.add(id(value))
    if isinstance(value, BaseException):
        out.append(str(value))
        for arg in value.args:
            _collect(arg, out, seen, depth + 1)
        for attr in ("message", "reason", "data", "result", "errors"):
            _collect(getattr(value, attr, None), out, seen, depth + 1)
        _collect(value.__cause__, out, seen, depth + 1)
        _collect(value.__context__, out, seen, depth + 1)
    elif isinstance(value, dict):
        for item in value.values():
            _collect(item, out, seen, depth + 1)
    elif isinstance(value, (list, tuple, set)):
        for item in value:
            _collect(item, out, seen, depth + 1)


def error_texts(error: Any) -> List[str]:
    """Every human readable string reachable from an error, lowercased."""
    out: List[str] = []
    _collect(error, out, set())
    return [text.lower() for text in out]


def _matches(texts: Iterable[str], markers: Iterable[str]) -> bool:
    markers = [m.lower() for m in markers]
    return any(marker in text for text in texts for marker in markers)


def is_already_completed(error: Any) -> bool:
    return _matches(error_texts(error), ALREADY_COMPLETED_MARKERS)


def is_fio_non_retryable(error: Any) -> bool:
    return _matches(error_texts(error), FIO_NON_RETRYABLE_ERRORS)


def is_range_error(error: Any) -> bool:
    if isinstance(error, ProviderError) and error.range_exceeded:
        return True
    return _matches(error_texts(error), RANGE_ERROR_MARKERS)


def classify_error(error: Any) -> ErrorKind:
    """Maps any error, however deeply nested, onto an ErrorKind.

    Already-completed wins over everything else: a revert saying the job is
    done is the idempotency signal, not a failure.
    """
    texts = error_texts(error)
    if _matches(texts, ALREADY_COMPLETED_MARKERS):
        return ErrorKind.ALREADY_COMPLETED
    if isinstance(error, NonRetryableError) or _matches(texts, FIO_NON_RETRYABLE_ERRORS):
        return ErrorKind.NON_RETRYABLE
    if _matches(texts, NONCE_CONFLICT_MARKERS):
        return ErrorKind.NONCE_CONFLICT
    if _matches(texts, UNDERPRICED_MARKERS):
        return ErrorKind.UNDERPRICED
    if isinstance(error, ProviderError):
        if error.rate_limited:
            return ErrorKind.RATE_LIMITED
        if error.retryable:
            return ErrorKind.NETWORK
    return ErrorKind.UNKNOWN
