import pytest

from fio_oracle.adapters.gas_oracles import EtherscanGasOracle, RpcGasOracle
from fio_oracle.core.errors import GasPriceUnavailable
from fio_oracle.core.gas import GasPolicy

from conftest import make_chain


class FixedOracle:
    def __init__(self, name, price):
        self.name = name
        self.price = price

    async def get_gas_price(self, chain_code):
        if isinstance(self.price, Exception):
            raise self.price
        return self.price


class DummyRpc:
    async def gas_price(self):
        return 25 * 10**9

    async def get_balance(self, address):
        return 10**15


@pytest.mark.asyncio
async def test_fixed_price_with_retry_and_replacement_multipliers():
    chain = make_chain(fixed_gas_price_gwei=10)
    policy = GasPolicy()

    assert await policy.get_gas_price(chain) == 10 * 10**9
    assert await policy.get_gas_price(chain, retry_count=2) == 14_400_000_000
    # The replacement bumps whichever is higher: the policy price or what is in the mempool.
    assert await policy.get_gas_price(chain, is_replacement=True, floor=20 * 10**9) == 30 * 10**9
    assert await policy.get_gas_price(chain, is_replacement=True, floor=1) == 15 * 10**9


@pytest.mark.asyncio
async def test_api_mode_takes_the_highest_answering_quote():
    chain = make_chain(use_gas_api=True, gas_price_level="average", fixed_gas_price_gwei=None)
    policy = GasPolicy([FixedOracle("a", 20 * 10**9), FixedOracle("b", RuntimeError("down")), FixedOracle("c", 30 * 10**9)])

    assert await policy.get_gas_price(chain) == 36 * 10**9


@pytest.mark.asyncio
async def test_no_quote_and_no_fixed_price_is_an_error():
    chain = make_chain(use_gas_api=True, fixed_gas_price_gwei=None)
    with pytest.raises(GasPriceUnavailable):
        await GasPolicy([FixedOracle("a", RuntimeError("down"))]).get_gas_price(chain)


@pytest.mark.asyncio
async def test_rpc_oracle_and_low_balance_check():
    oracle = RpcGasOracle({"POL": DummyRpc()})
    assert await oracle.get_gas_price("POL") == 25 * 10**9
    assert await oracle.get_gas_price("ETH") == 0

    chain = make_chain()
    assert await GasPolicy.check_balance(DummyRpc(), "0xabc", chain, 10 * 10**9) == 10**15


@pytest.mark.asyncio
async def test_gas_tracker_reads_the_first_available_tier():
    oracle = EtherscanGasOracle({"ETH": ["http://tracker/1", "http://tracker/2"]})
    answers = {
        "http://tracker/1": {"status": "1", "result": {"SafeGasPrice": "11", "ProposeGasPrice": "12.5"}},
        "http://tracker/2": {"status": "0", "result": "Max rate limit reached"},
    }

    async def fetch(url):
        return answers[url]

    oracle._fetch = fetch
    assert await oracle.get_gas_price("ETH") == 12_500_000_000
    assert await oracle.get_gas_price("BSC") == 0
