# /fio_oracle/core/config.py
from typing import List, Optional

from pydantic import BaseModel, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings


class ProviderDescriptor(BaseModel):
    """One JSON-RPC endpoint of a chain.

    ``priority`` orders general calls, ``get_logs_priority`` orders log
    queries. A provider without a ``get_logs_priority`` never serves
    ``eth_getLogs``.
    """
    name: str
    url: str
    priority: int
    get_logs_priority: Optional[int] = None
    blocks_range_limit: Optional[int] = None
    timeout: float = 10.0

    class Config:
        frozen = True


class ChainConfig(BaseModel):
    chain_code: str
    asset_type: str  # tokens | nfts
    chain_id: int
    contract_address: str
    contract_type_name: str = "fio.erc20"
    providers: List[ProviderDescriptor]
    blocks_range_limit: int = 3000
    blocks_offset: int = 0
    gas_limit: int = 200000
    fixed_gas_price_gwei: Optional[float] = None
    use_gas_api: bool = True
    gas_price_level: str = "average"
    gas_oracle_urls: List[str] = []
    block_time_seconds: float = 12.0

    class Config:
        frozen = True

    @field_validator("asset_type")
    @classmethod
    def _known_asset_type(cls, value: str) -> str:
        if value not in ("tokens", "nfts"):
            raise ValueError(f"Unknown asset type: {value}")
        return value

    @field_validator("gas_price_level")
    @classmethod
    def _known_gas_level(cls, value: str) -> str:
        if value not in ("low", "average", "high"):
            raise ValueError(f"Unknown gas price level: {value}")
        return value

    @model_validator(mode="after")
    def _unique_priorities(self):
        if not self.providers:
            raise ValueError(f"{self.chain_code}: at least one RPC provider is required")
        general = [p.priority for p in self.providers]
        logs = [p.get_logs_priority for p in self.providers if p.get_logs_priority is not None]
        if len(set(general)) != len(general):
            raise ValueError(f"{self.chain_code}: provider priorities must be unique")
        if len(set(logs)) != len(logs):
            raise ValueError(f"{self.chain_code}: provider get_logs priorities must be unique")
        return self


class Settings(BaseSettings):
    MODE: str = "testnet"

    # EVM signer
    ORACLE_PRIVATE_KEY: SecretStr | None = None
    ORACLE_PUBLIC_ADDRESS: str | None = None

    # Chains served by this oracle, JSON encoded list of ChainConfig
    SUPPORTED_CHAINS: List[ChainConfig] = []

    # FIO ledger
    FIO_ORACLE_ACCOUNT: str | None = None
    FIO_ORACLE_PERMISSION: str = "active"
    FIO_SIGNER_URL: str | None = None
    FIO_SERVER_URLS: List[str] = []
    FIO_HISTORY_URLS: List[str] = []
    FIO_HISTORY_OFFSET: int = 20
    FIO_MAX_HEAD_BLOCK_AGE: int = 180
    FIO_SYNC_TOLERANCE_BLOCKS: int = 120
    FIO_TX_EXPIRATION_SECONDS: int = 30
    FIO_TABLE_ROWS_LIMIT: int = 1000
    FIO_REQUEST_TIMEOUT: float = 15.0

    LOG_SIGNING_KEY: SecretStr | None = None
    SENTRY_DSN: SecretStr | None = None

    # Operational Settings
    LOG_LEVEL: str = "INFO"
    HEALTH_PORT: int = 8080
    SESSION_DIR: str = "/tmp/fio_oracle_session"  # For durable state files
    REDIS_URL: str = "redis://localhost:6379/0"
    LOCK_BACKEND: str = "memory"  # memory | redis
    JOB_LOCK_TTL_SECONDS: int = 900
    CONTROL_API_TOKEN: str | None = None

    # Job intervals, seconds
    POLL_INTERVAL: int = 60
    EVENT_CACHE_INTERVAL: int = 60
    EVENT_CACHE_RETENTION_SECONDS: int = 3600
    RECONCILE_INTERVAL: int = 600
    PENDING_SWEEP_INTERVAL: int = 120

    # Request throttle queue
    REQUEST_QUEUE_DELAY: float = 1.0
    REQUEST_QUEUE_MAX_RETRIES: int = 3
    REQUEST_QUEUE_BASE_RETRY_DELAY: float = 10.0
    REQUEST_QUEUE_POST_RETRY_COOLDOWN: float = 5.0

    # Transaction lifecycle
    MAX_TRANSACTION_AGE: int = 300
    MAX_REPLACEMENT_ATTEMPTS: int = 3
    RECEIPT_TIMEOUT: float = 180.0
    RECEIPT_POLL_INTERVAL: float = 3.0
    CHAIN_DELAY_SECONDS: float = 3.0
    TRANSACTION_DELAY_SECONDS: float = 3.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    def chains(self, asset_type: str | None = None) -> List[ChainConfig]:
        if asset_type is None:
            return list(self.SUPPORTED_CHAINS)
        return [c for c in self.SUPPORTED_CHAINS if c.asset_type == asset_type]


try:
    settings = Settings()
except Exception as e:
    # Late import to avoid circular dependency only for logging the failure
    try:
        from fio_oracle.core.logger import get_logger
        get_logger("FIO-Oracle.Config").critical("FAILED_TO_LOAD_SETTINGS", error=str(e))
    except Exception:
        print("FAILED_TO_LOAD_SETTINGS", e)
    # In a container, a hard exit is often appropriate if config fails.
    exit(1)
