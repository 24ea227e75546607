import json

import pytest
import pytest_asyncio

from fio_oracle.core.job_lock import MemoryJobLock
from fio_oracle.core.job_queue import JobQueue
from fio_oracle.core.log_files import append_line, read_int, read_lines, write_int
from fio_oracle.core.models import OracleLedgerItem, TxOutcome, TxStatus
from fio_oracle.core.registry import ChainRegistry
from fio_oracle.services.wrap import WrapService, wrap_params

from conftest import RECIPIENT, make_chain


class DummyFio:
    def __init__(self, items):
        self.items = items
        self.lower_bounds = []

    async def get_oracle_items(self, lower_bound=None):
        self.lower_bounds.append(lower_bound)
        return [i for i in self.items if lower_bound is None or i.id >= lower_bound]


class DummyTxManager:
    def __init__(self):
        self.submitted = []

    async def ensure_oracle_registered(self, chain_code, asset_type):
        return None

    async def submit(self, request):
        self.submitted.append(request)
        return TxOutcome(status=TxStatus.MINED, tx_hash="0x%064x" % len(self.submitted), nonce=len(self.submitted) - 1)


def ledger_item(id, chaincode="POL", **kw):
    values = dict(id=id, chaincode=chaincode, pubaddress=RECIPIENT, amount=500, timestamp=1700000000)
    values.update(kw)
    return OracleLedgerItem(**values)


@pytest_asyncio.fixture
async def setup(paths):
    registry = ChainRegistry(
        [make_chain("POL", "tokens"), make_chain("POL", "nfts", contract_address="0x" + "56" * 20)],
        "0x" + "ab" * 20,
        paths=paths,
        rpc_factory=lambda cfg: object(),
    )
    tx = DummyTxManager()
    yield registry, tx
    await registry.close()


def make_service(fio, tx, registry, paths):
    return WrapService(fio, tx, registry, JobQueue(MemoryJobLock()), paths=paths)


def test_wrap_params_by_asset_type():
    assert wrap_params("5", "tokens", {"pubaddress": RECIPIENT, "amount": "500"}) == {"obtId": "5", "pubaddress": RECIPIENT, "amount": 500}
    assert wrap_params("6", "nfts", {"pubaddress": RECIPIENT, "nftname": "dapix"}) == {"obtId": "6", "pubaddress": RECIPIENT, "nftName": "dapix"}


@pytest.mark.asyncio
async def test_first_poll_starts_after_existing_items(setup, paths):
    registry, tx = setup
    fio = DummyFio([ledger_item(3), ledger_item(9)])

    assert await make_service(fio, tx, registry, paths).poll_fio_ledger() == 0

    assert await read_int(paths.fio_oracle_item_id()) == 9
    assert tx.submitted == []


@pytest.mark.asyncio
async def test_new_items_are_routed_and_wrapped(setup, paths):
    registry, tx = setup
    await write_int(paths.fio_oracle_item_id(), 5)
    fio = DummyFio([
        ledger_item(6),
        ledger_item(7, chaincode="BSC"),
        ledger_item(8, amount=None, nftname="dapix"),
    ])

    assert await make_service(fio, tx, registry, paths).poll_fio_ledger() == 2

    assert fio.lower_bounds == [6]
    assert await read_int(paths.fio_oracle_item_id()) == 8
    by_type = {r.asset_type: r for r in tx.submitted}
    assert by_type["tokens"].params == {"obtId": "6", "pubaddress": RECIPIENT, "amount": 500}
    assert by_type["nfts"].params == {"obtId": "8", "pubaddress": RECIPIENT, "nftName": "dapix"}
    assert await read_lines(paths.queue("wrap", "POL", "tokens")) == []
    receipts = await read_lines(paths.chain("POL", "tokens"))
    assert any("POL fio.erc20 wrap tokens receipt" in l and '"obtId": "6"' in l for l in receipts)
    fio_log = "\n".join(await read_lines(paths.fio()))
    assert '"chaincode":"BSC"' in fio_log


@pytest.mark.asyncio
async def test_item_for_another_chain_goes_to_the_error_queue(setup, paths):
    registry, tx = setup
    line = "9 " + json.dumps({"chaincode": "ETH", "pubaddress": RECIPIENT, "amount": 1})
    await append_line(paths.queue("wrap", "POL", "tokens"), line)

    service = make_service(DummyFio([]), tx, registry, paths)
    assert await service.drain(registry.get("POL", "tokens")) == 1

    assert tx.submitted == []
    assert await read_lines(paths.error_queue("wrap", "POL", "tokens")) == [line]
