import pytest

from fio_oracle.core.nonce_manager import NonceManager


class DummyRpc:
    def __init__(self, pending=0, latest=0):
        self.pending = pending
        self.latest = latest

    async def get_transaction_count(self, address, block="pending"):
        return self.pending if block == "pending" else self.latest


@pytest.mark.asyncio
async def test_first_nonce_comes_from_chain(tmp_path):
    nm = NonceManager(DummyRpc(pending=7), "0xabc", tmp_path / "nonce-POL.log")
    assert await nm.resolve() == 7
    await nm.commit(7)
    assert (tmp_path / "nonce-POL.log").read_text() == "7"
    nm.close()


@pytest.mark.asyncio
async def test_nonce_is_monotonic_across_restart_when_chain_lags(tmp_path):
    path = tmp_path / "nonce-POL.log"
    rpc = DummyRpc(pending=5)
    nm = NonceManager(rpc, "0xabc", path)
    for expected in (5, 6, 7):
        nonce = await nm.resolve()
        assert nonce == expected
        await nm.commit(nonce)
    nm.close()

    # A lagging provider still reports the old pending count after restart.
    restarted = NonceManager(DummyRpc(pending=5), "0xabc", path)
    assert await restarted.resolve() == 8
    restarted.close()


@pytest.mark.asyncio
async def test_chain_ahead_of_file_wins(tmp_path):
    path = tmp_path / "nonce-POL.log"
    path.write_text("3")
    nm = NonceManager(DummyRpc(pending=10), "0xabc", path)
    assert await nm.resolve() == 10
    nm.close()


@pytest.mark.asyncio
async def test_commit_never_moves_backwards(tmp_path):
    nm = NonceManager(DummyRpc(pending=0), "0xabc", tmp_path / "nonce-POL.log")
    await nm.commit(9)
    await nm.commit(4)
    assert nm.last_issued == 9
    assert (tmp_path / "nonce-POL.log").read_text() == "9"
    nm.close()
