# /fio_oracle/core/constants.py
from decimal import Decimal


class Action:
    WRAP = "wrap"
    UNWRAP = "unwrap"
    BURN = "burn"


class AssetType:
    TOKENS = "tokens"
    NFTS = "nfts"


class JobKind:
    EVENT_DETECTION = "EventDetection"
    FIO_TX = "FioTx"


class ContractEvent:
    WRAPPED = "wrapped"
    UNWRAPPED = "unwrapped"
    CONSENSUS_ACTIVITY = "consensus_activity"


FIO_CHAIN_NAME = "FIO"
FIO_ORACLE_ACCOUNT = "fio.oracle"
FIO_ADDRESS_ACCOUNT = "fio.address"
FIO_ORACLE_LEDGER_TABLE = "oracleldgrs"
FIO_DOMAINS_TABLE = "domains"

FIO_CONTRACT_ACTIONS = {
    Action.WRAP: {AssetType.TOKENS: "wraptokens", AssetType.NFTS: "wrapdomain"},
    Action.UNWRAP: {AssetType.TOKENS: "unwraptokens", AssetType.NFTS: "unwrapdomain"},
    Action.BURN: "burnnft",
}

# Signer name used by the contracts in consensus_activity events.
CONSENSUS_ORACLE_SIGNER = "oracle"

# --- EVM transaction lifecycle ---
MAX_RETRY_TRANSACTION_ATTEMPTS = 3
TRANSACTION_NOT_FOUND = "not found"

GAS_PRICE_LEVELS = {
    "low": Decimal("1.0"),
    "average": Decimal("1.2"),
    "high": Decimal("1.4"),
}
GAS_PRICE_RETRY_MULTIPLIER = Decimal("1.2")
GAS_PRICE_REPLACEMENT_MULTIPLIER = Decimal("1.5")
LOW_BALANCE_GAS_FACTOR = 5

# --- Burn bookkeeping ---
AUTOMATIC_BURN_PREFIX = "AutomaticNFTBurn"
AUTOMATIC_BURN_PREFIX_LEGACY = "AutomaticDomainBurn"

# --- Reconciler ---
RECONCILE_WINDOW_START = 15 * 60  # newest item age, seconds
RECONCILE_WINDOW_END = 60 * 60  # oldest item age, seconds
RECONCILE_MAX_RETRIES = 5
RECONCILE_RETRY_DELAY = 5.0
RECONCILE_LOCK_KEY = "isAutoRetryMissingActionsExecuting"
EVENT_CACHE_LOCK_KEY = "isEventCacheRefreshJobExecuting"
FIO_WRAP_POLL_LOCK_KEY = "isWrapOnFIOPollJobExecuting"

FIO_HISTORY_PAGE_DELAY = 0.1


def action_name(action: str, asset_type: str) -> str:
    return f"{action} {asset_type}"


def job_lock_key(action: str, chain_code: str, asset_type: str, job_kind: str = "") -> str:
    """Lock key of one pipeline, e.g. ``isWrapOnETHTokensJobExecuting``."""
    return f"is{action.capitalize()}On{chain_code}{asset_type.capitalize()}{job_kind}JobExecuting"
