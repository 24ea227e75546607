from fio_oracle.core.errors import (
    ErrorKind,
    FioTransactionError,
    OracleNotRegistered,
    ProviderError,
    classify_error,
    is_already_completed,
    is_range_error,
)


def test_already_completed_found_in_nested_rpc_data():
    inner = ProviderError("execution reverted", data={"originalError": {"message": "Oracle has already approved this obtid"}})
    try:
        try:
            raise inner
        except ProviderError as e:
            raise RuntimeError("wrap failed") from e
    except RuntimeError as outer:
        assert is_already_completed(outer)
        assert classify_error(outer) == ErrorKind.ALREADY_COMPLETED


def test_already_completed_wins_over_nonce_conflict():
    error = ProviderError("nonce too low", data=["obtid already complete"])
    assert classify_error(error) == ErrorKind.ALREADY_COMPLETED


def test_transaction_error_kinds():
    assert classify_error(ProviderError("Nonce too low")) == ErrorKind.NONCE_CONFLICT
    assert classify_error(ProviderError("already known")) == ErrorKind.NONCE_CONFLICT
    assert classify_error(ProviderError("replacement transaction underpriced")) == ErrorKind.UNDERPRICED
    assert classify_error(ProviderError("Too Many Requests", rate_limited=True)) == ErrorKind.RATE_LIMITED
    assert classify_error(ProviderError("timeout", retryable=True)) == ErrorKind.NETWORK
    assert classify_error(ValueError("boom")) == ErrorKind.UNKNOWN


def test_fio_rejections_are_non_retryable():
    rejected = FioTransactionError("push failed", result={"error": {"what": "Expired Transaction"}})
    assert classify_error(rejected) == ErrorKind.NON_RETRYABLE
    assert classify_error(OracleNotRegistered("0xabc")) == ErrorKind.NON_RETRYABLE


def test_range_errors():
    assert is_range_error(ProviderError("query returned more than 10000 results"))
    assert not is_range_error(ProviderError("bad request", status=400))
    assert not is_range_error(ProviderError("execution reverted"))
