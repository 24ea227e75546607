import pytest

from fio_oracle.core import config_validator
from fio_oracle.core.config import settings

from conftest import make_chain


@pytest.fixture
def valid_settings(monkeypatch):
    monkeypatch.setattr(settings, "ORACLE_PRIVATE_KEY", "0x" + "11" * 32)
    monkeypatch.setattr(settings, "ORACLE_PUBLIC_ADDRESS", "0x" + "ab" * 20)
    monkeypatch.setattr(settings, "FIO_SIGNER_URL", "http://signer")
    monkeypatch.setattr(settings, "FIO_SERVER_URLS", ["http://fio"])
    monkeypatch.setattr(settings, "SUPPORTED_CHAINS", [make_chain(), make_chain("POL", "nfts")])
    monkeypatch.setattr(settings, "LOCK_BACKEND", "memory")


def test_complete_configuration_passes(valid_settings):
    config_validator.validate()


def test_missing_signer_halts(valid_settings, monkeypatch):
    monkeypatch.setattr(settings, "FIO_SIGNER_URL", None)
    with pytest.raises(ValueError):
        config_validator.validate()


def test_duplicate_chain_and_missing_gas_price_halt(valid_settings, monkeypatch):
    monkeypatch.setattr(settings, "SUPPORTED_CHAINS", [make_chain(), make_chain(use_gas_api=False, fixed_gas_price_gwei=None)])
    with pytest.raises(ValueError):
        config_validator.validate()
