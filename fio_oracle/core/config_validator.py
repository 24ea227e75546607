# /fio_oracle/core/config_validator.py
# Run at startup to validate configs and secrets before any job starts.
from web3 import Web3

from fio_oracle.core.config import settings
from fio_oracle.core.logger import log


def validate():
    log.info("--- CONFIG VALIDATION START ---")
    required_vars = ["ORACLE_PRIVATE_KEY", "ORACLE_PUBLIC_ADDRESS", "FIO_ORACLE_ACCOUNT", "FIO_SIGNER_URL"]
    errors = []

    for var in required_vars:
        if not getattr(settings, var, None):
            errors.append(f"Missing required configuration: {var}")
    if not settings.SUPPORTED_CHAINS:
        errors.append("Missing required configuration: SUPPORTED_CHAINS")
    if not settings.FIO_SERVER_URLS:
        errors.append("Missing required configuration: FIO_SERVER_URLS")
    if settings.ORACLE_PUBLIC_ADDRESS and not Web3.is_address(settings.ORACLE_PUBLIC_ADDRESS):
        errors.append(f"ORACLE_PUBLIC_ADDRESS is not an EVM address: {settings.ORACLE_PUBLIC_ADDRESS}")
    if settings.LOCK_BACKEND not in ("memory", "redis"):
        errors.append(f"Unknown LOCK_BACKEND: {settings.LOCK_BACKEND}")

    seen = set()
    for chain in settings.SUPPORTED_CHAINS:
        key = (chain.chain_code, chain.asset_type)
        if key in seen:
            errors.append(f"Duplicate chain configuration: {chain.chain_code} {chain.asset_type}")
        seen.add(key)
        if not Web3.is_address(chain.contract_address):
            errors.append(f"{chain.chain_code} {chain.asset_type}: invalid contract address {chain.contract_address}")
        if not chain.use_gas_api and not chain.fixed_gas_price_gwei:
            errors.append(f"{chain.chain_code}: fixed gas mode needs fixed_gas_price_gwei")
        if not any(p.get_logs_priority is not None for p in chain.providers):
            errors.append(f"{chain.chain_code}: no provider serves eth_getLogs")

    if errors:
        for error in errors:
            log.critical(error)
        raise ValueError("System configuration is incomplete. Halting.")

    log.info("--- CONFIG VALIDATION PASSED ---")


if __name__ == "__main__":
    validate()
