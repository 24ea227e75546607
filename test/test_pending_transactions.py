import pytest

from fio_oracle.core.log_files import append_lines, read_lines
from fio_oracle.core.models import PendingTransactionRecord, now_ms
from fio_oracle.services.pending_transactions import PendingTransactionSweeper

from conftest import RECIPIENT
from test_tx import DummyChainRpc, make_manager


class SweepRpc(DummyChainRpc):
    def __init__(self, latest, in_mempool=(), mined=()):
        super().__init__()
        self.latest = latest
        self.in_mempool = set(in_mempool)
        for tx_hash in mined:
            self.receipts[tx_hash] = {"status": "0x1", "blockNumber": "0x1"}

    async def get_transaction_count(self, address, block="pending"):
        return self.latest

    async def get_transaction(self, tx_hash):
        return {"hash": tx_hash} if tx_hash in self.in_mempool else None


def record(tx_hash, nonce, **kw):
    return PendingTransactionRecord(
        tx_hash=tx_hash, chain_code="POL", action="wrap", asset_type="tokens",
        contract_action_params={"obtId": tx_hash, "pubaddress": RECIPIENT, "amount": 1},
        nonce=nonce, gas_price=10**10, **kw,
    )


@pytest.mark.asyncio
async def test_sweep_drops_replaces_and_keeps(paths):
    rpc = SweepRpc(latest=5, in_mempool={"0xb"}, mined={"0xf"})
    tm = make_manager(paths, rpc)
    old = now_ms() - 10 * 60 * 1000
    await append_lines(paths.pending_transactions("POL"), [
        record("0xa", 3).to_line(),
        record("0xb", 5).to_line(),
        record("0xc", 6, timestamp=old).to_line(),
        record("0xd", 7, is_replacement=True, replacement_attempt=3).to_line(),
        record("0xe", 8).to_line(),
        record("0xf", 8, is_replacement=True, replacement_attempt=1, original_tx_hash="0xe").to_line(),
        "garbage-without-json",
    ])

    stats = await PendingTransactionSweeper(tm, tm.registry, paths=paths).sweep("POL")

    remaining = [l.split(" ")[0] for l in await read_lines(paths.pending_transactions("POL"))]
    assert remaining == ["0xb", "garbage-without-json"]
    assert stats["replaced"] == 1
    assert stats["waiting"] == 1
    # The replacement reused nonce 6.
    assert len(rpc.sent) == 1
    assert tm.registry.nonce_manager("POL").last_issued == 6
    await tm.close()


@pytest.mark.asyncio
async def test_sweep_with_empty_log_does_nothing(paths):
    rpc = SweepRpc(latest=0)
    tm = make_manager(paths, rpc)
    stats = await PendingTransactionSweeper(tm, tm.registry, paths=paths).sweep("POL")
    assert stats == {"removed": 0, "replaced": 0, "waiting": 0}
    await tm.close()
