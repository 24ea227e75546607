# /fio_oracle/core/gas.py
# Gas price policy: API quotes or a fixed price, scaled for retries and replacements.
import asyncio
from decimal import Decimal
from typing import List, Optional, Protocol

from fio_oracle.core.config import ChainConfig
from fio_oracle.core.constants import (
    GAS_PRICE_LEVELS,
    GAS_PRICE_REPLACEMENT_MULTIPLIER,
    GAS_PRICE_RETRY_MULTIPLIER,
    LOW_BALANCE_GAS_FACTOR,
)
from fio_oracle.core.errors import GasPriceUnavailable
from fio_oracle.core.logger import get_logger

log = get_logger(__name__)

GWEI = 10**9


class GasPriceOracle(Protocol):
    name: str

    async def get_gas_price(self, chain_code: str) -> int:
        """A gas price quote in wei."""
        ...


class GasPolicy:
    """
    Computes the gas price of one submission attempt.

    API mode takes the highest quote among the oracles that answer and
    scales it by the chain's tier (low/average/high). Fixed mode uses the
    configured gwei value. Retries and replacements add their multipliers
    on top.
    """

    def __init__(self, oracles: Optional[List[GasPriceOracle]] = None):
        self.oracles = list(oracles or [])

    async def best_quote(self, chain_code: str) -> int:
        if not self.oracles:
            return 0
        results = await asyncio.gather(
            *(o.get_gas_price(chain_code) for o in self.oracles), return_exceptions=True
        )
        quotes = []
        for oracle, result in zip(self.oracles, results):
            if isinstance(result, BaseException):
                log.warning("GAS_ORACLE_FAILED", chain=chain_code, oracle=oracle.name, error=str(result))
            elif result and result > 0:
                quotes.append(int(result))
        return max(quotes) if quotes else 0

    async def base_price(self, chain: ChainConfig) -> int:
        if chain.use_gas_api and self.oracles:
            quote = await self.best_quote(chain.chain_code)
            return int(Decimal(quote) * GAS_PRICE_LEVELS[chain.gas_price_level])
        if chain.fixed_gas_price_gwei:
            return int(Decimal(str(chain.fixed_gas_price_gwei)) * GWEI)
        return 0

    async def get_gas_price(
        self,
        chain: ChainConfig,
        retry_count: int = 0,
        is_replacement: bool = False,
        floor: Optional[int] = None,
    ) -> int:
        price = Decimal(await self.base_price(chain))
        if retry_count:
            price *= GAS_PRICE_RETRY_MULTIPLIER ** retry_count
        if is_replacement:
            # Replace-by-fee needs a clear bump over what is already in the mempool.
            price = max(price, Decimal(floor or 0)) * GAS_PRICE_REPLACEMENT_MULTIPLIER
        gas_price = int(price)
        if gas_price <= 0:
            raise GasPriceUnavailable(f"{chain.chain_code}: no usable gas price")
        log.info(
            "GAS_PRICE_SELECTED",
            chain=chain.chain_code, gas_price=gas_price, gwei=str(Decimal(gas_price) / GWEI),
            retry_count=retry_count, is_replacement=is_replacement,
        )
        return gas_price

    @staticmethod
    async def check_balance(rpc, address: str, chain: ChainConfig, gas_price: int) -> Optional[int]:
        """Warns when the signer cannot pay for a handful more transactions."""
        try:
            balance = await rpc.get_balance(address)
        except Exception as e:
            log.warning("BALANCE_CHECK_FAILED", chain=chain.chain_code, error=str(e))
            return None
        required = chain.gas_limit * gas_price * LOW_BALANCE_GAS_FACTOR
        if balance < required:
            log.warning("LOW_ORACLE_BALANCE", chain=chain.chain_code, address=address, balance=balance, required=required)
        return balance
