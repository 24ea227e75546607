import asyncio

import pytest
from eth_account import Account

from fio_oracle.core.errors import ProviderError, TransactionFailed
from fio_oracle.core.gas import GasPolicy
from fio_oracle.core.log_files import read_lines
from fio_oracle.core.models import PendingTransactionRecord, SubmitRequest, TxStatus
from fio_oracle.core.registry import ChainRegistry
from fio_oracle.core.tx import TransactionManager

from conftest import RECIPIENT, TEST_KEY, make_chain

ADDRESS = Account.from_key(TEST_KEY).address


class DummyChainRpc:
    def __init__(self, mine=True, receipt_status="0x1"):
        self.pending = 0
        self.mine = mine
        self.receipt_status = receipt_status
        self.sent = []
        self.receipts = {}
        self.send_errors = []
        self.preflight_error = None
        self.replay_error = None

    async def get_transaction_count(self, address, block="pending"):
        return self.pending

    async def get_balance(self, address):
        return 10**20

    async def call(self, tx, block="latest"):
        if block == "latest" and self.preflight_error:
            raise self.preflight_error
        if block != "latest" and self.replay_error:
            raise self.replay_error
        return "0x"

    async def send_raw_transaction(self, raw):
        if self.send_errors:
            raise self.send_errors.pop(0)
        self.sent.append(raw)
        tx_hash = "0x%064x" % len(self.sent)
        if self.mine:
            self.receipts[tx_hash] = {"status": self.receipt_status, "blockNumber": "0x10"}
        return tx_hash

    async def get_transaction_receipt(self, tx_hash):
        return self.receipts.get(tx_hash)

    async def get_transaction(self, tx_hash):
        return None


def make_manager(paths, rpc):
    registry = ChainRegistry([make_chain()], ADDRESS, paths=paths, rpc_factory=lambda cfg: rpc)
    return TransactionManager(registry, GasPolicy(), private_key=TEST_KEY, paths=paths)


def wrap_request(obt_id="42"):
    return SubmitRequest(
        action="wrap", chain_code="POL", asset_type="tokens",
        params={"obtId": obt_id, "pubaddress": RECIPIENT, "amount": 500},
    )


@pytest.mark.asyncio
async def test_mined_submission_clears_pending_record(paths):
    rpc = DummyChainRpc()
    tm = make_manager(paths, rpc)

    outcome = await tm.submit(wrap_request())

    assert outcome.status == TxStatus.MINED
    assert outcome.nonce == 0
    assert len(rpc.sent) == 1
    assert await read_lines(paths.pending_transactions("POL")) == []
    chain_log = await read_lines(paths.chain("POL", "tokens"))
    assert "POL fio.erc20 wrap tokens submit" in chain_log[0]
    assert tm.registry.nonce_manager("POL").last_issued == 0
    await tm.close()


@pytest.mark.asyncio
async def test_already_approved_preflight_is_success_without_broadcast(paths):
    rpc = DummyChainRpc()
    rpc.preflight_error = ProviderError("execution reverted: Oracle has already approved this obtid")
    tm = make_manager(paths, rpc)

    outcome = await tm.submit(wrap_request())

    assert outcome.status == TxStatus.ALREADY_COMPLETED
    assert outcome.succeeded
    assert rpc.sent == []
    await tm.close()


@pytest.mark.asyncio
async def test_reverted_receipt_classified_as_already_completed(paths):
    rpc = DummyChainRpc(receipt_status="0x0")
    rpc.replay_error = ProviderError("execution reverted", data={"message": "obtid already complete"})
    tm = make_manager(paths, rpc)

    outcome = await tm.submit(wrap_request())

    assert outcome.status == TxStatus.ALREADY_COMPLETED
    assert await read_lines(paths.pending_transactions("POL")) == []
    await tm.close()


@pytest.mark.asyncio
async def test_reverted_receipt_with_other_reason_fails(paths):
    rpc = DummyChainRpc(receipt_status="0x0")
    rpc.replay_error = ProviderError("execution reverted: Invalid amount")
    tm = make_manager(paths, rpc)

    with pytest.raises(TransactionFailed):
        await tm.submit(wrap_request())
    await tm.close()


@pytest.mark.asyncio
async def test_nonce_conflict_moves_to_the_next_nonce(paths):
    rpc = DummyChainRpc()
    rpc.send_errors = [ProviderError("nonce too low")]
    tm = make_manager(paths, rpc)

    outcome = await tm.submit(wrap_request())

    assert outcome.status == TxStatus.MINED
    assert outcome.nonce == 1
    await tm.close()


@pytest.mark.asyncio
async def test_unknown_send_error_is_terminal(paths):
    rpc = DummyChainRpc()
    rpc.send_errors = [ProviderError("insufficient funds for gas * price + value")]
    tm = make_manager(paths, rpc)

    with pytest.raises(TransactionFailed):
        await tm.submit(wrap_request())
    assert rpc.sent == []
    await tm.close()


@pytest.mark.asyncio
async def test_unmined_transactions_stay_pending_with_distinct_nonces(paths):
    rpc = DummyChainRpc(mine=False)
    tm = make_manager(paths, rpc)

    outcomes = await asyncio.gather(tm.submit(wrap_request("1")), tm.submit(wrap_request("2")))

    assert all(o.status == TxStatus.PENDING for o in outcomes)
    assert sorted(o.nonce for o in outcomes) == [0, 1]
    records = [PendingTransactionRecord.from_line(l) for l in await read_lines(paths.pending_transactions("POL"))]
    assert sorted(r.nonce for r in records) == [0, 1]
    assert {r.contract_action_params["obtId"] for r in records} == {"1", "2"}
    await tm.close()
