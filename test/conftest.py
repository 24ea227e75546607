import pytest

from fio_oracle.core.config import ChainConfig, ProviderDescriptor, settings
from fio_oracle.core.log_files import LogPaths

CONTRACT = "0x" + "12" * 20
RECIPIENT = "0x" + "34" * 20
TEST_KEY = "0x" + "11" * 32


@pytest.fixture(autouse=True)
def fast_settings(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "SESSION_DIR", str(tmp_path))
    monkeypatch.setattr(settings, "MODE", "test")
    monkeypatch.setattr(settings, "RECEIPT_POLL_INTERVAL", 0)
    monkeypatch.setattr(settings, "RECEIPT_TIMEOUT", 0.05)
    monkeypatch.setattr(settings, "CHAIN_DELAY_SECONDS", 0)
    monkeypatch.setattr(settings, "TRANSACTION_DELAY_SECONDS", 0)
    monkeypatch.setattr(settings, "FIO_ORACLE_ACCOUNT", "oracle1")
    monkeypatch.setattr("fio_oracle.core.logger.ERROR_LOG_FILE", tmp_path / "Error.log")


@pytest.fixture
def paths(tmp_path):
    return LogPaths(str(tmp_path), "test")


def make_chain(chain_code="POL", asset_type="tokens", **overrides):
    values = dict(
        chain_code=chain_code,
        asset_type=asset_type,
        chain_id=137,
        contract_address=CONTRACT,
        contract_type_name="fio.erc20" if asset_type == "tokens" else "fio.erc721",
        providers=[
            ProviderDescriptor(name="primary", url="http://primary", priority=1, get_logs_priority=1),
            ProviderDescriptor(name="backup", url="http://backup", priority=2, get_logs_priority=2),
        ],
        use_gas_api=False,
        fixed_gas_price_gwei=10,
    )
    values.update(overrides)
    return ChainConfig(**values)
