# /fio_oracle/adapters/gas_oracles.py
# Gas price quote sources plugged into GasPolicy.
from decimal import Decimal

import aiohttp

from fio_oracle.core.decorators import retriable_network_call
from fio_oracle.core.logger import get_logger

log = get_logger(__name__)

GWEI = 10**9


class RpcGasOracle:
    """Quotes ``eth_gasPrice`` from the chain's own providers."""

    def __init__(self, rpc_clients: dict):
        self.name = "rpc"
        self.rpc_clients = rpc_clients

    async def get_gas_price(self, chain_code: str) -> int:
        rpc = self.rpc_clients.get(chain_code)
        if rpc is None:
            return 0
        return await rpc.gas_price()


class EtherscanGasOracle:
    """Etherscan style gas tracker (``module=gastracker&action=gasoracle``).

    Answers are in gwei; the tier picked here is ProposeGasPrice and the
    GasPolicy applies its own tier multiplier on top.
    """

    FIELDS = ("ProposeGasPrice", "FastGasPrice", "SafeGasPrice")

    def __init__(self, urls_by_chain: dict, session: aiohttp.ClientSession | None = None, timeout: float = 10.0):
        self.name = "etherscan"
        self.urls_by_chain = urls_by_chain
        self._session = session
        self.timeout = timeout

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    @retriable_network_call
    async def _fetch(self, url: str) -> dict:
        async with self._get_session().get(url, timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
            resp.raise_for_status()
            return await resp.json(content_type=None)

    async def get_gas_price(self, chain_code: str) -> int:
        quotes = []
        for url in self.urls_by_chain.get(chain_code, []):
            data = await self._fetch(url)
            result = data.get("result") if isinstance(data, dict) else None
            if not isinstance(result, dict):
                log.warning("GAS_TRACKER_BAD_RESPONSE", chain=chain_code, url=url, message=str(data)[:200])
                continue
            for field in self.FIELDS:
                if result.get(field):
                    quotes.append(int(Decimal(str(result[field])) * GWEI))
                    break
        return max(quotes) if quotes else 0

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
