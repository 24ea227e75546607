import pytest
import pytest_asyncio

from fio_oracle.core.job_lock import MemoryJobLock
from fio_oracle.core.job_queue import JobQueue
from fio_oracle.core.log_files import add_log_message, read_lines
from fio_oracle.core.registry import ChainRegistry
from fio_oracle.services.burn import BurnService, burn_obt_id, legacy_obt_id

from conftest import make_chain
from test_wrap import DummyTxManager


class DummyFio:
    def __init__(self, owners):
        self.owners = owners
        self.calls = 0

    async def get_domain_owners(self):
        self.calls += 1
        return self.owners


@pytest_asyncio.fixture
async def service(paths):
    registry = ChainRegistry([make_chain("POL", "nfts")], "0x" + "ab" * 20, paths=paths, rpc_factory=lambda cfg: object())
    fio = DummyFio({"dapix": "fio.oracle", "gone": "alice"})
    yield BurnService(fio, DummyTxManager(), registry, JobQueue(MemoryJobLock()), paths=paths)
    await registry.close()


def test_burn_obt_ids():
    assert burn_obt_id(7, "dapix") == "7AutomaticNFTBurndapix"
    assert legacy_obt_id("7AutomaticNFTBurndapix") == "7AutomaticDomainBurndapix"
    assert legacy_obt_id("42") is None


@pytest.mark.asyncio
async def test_only_domains_left_by_the_oracle_are_burned(service, paths):
    candidates = [
        {"tokenId": 1, "nftName": "Dapix"},
        {"tokenId": 2, "nftName": "gone"},
        {"tokenId": 3, "domain": "missing"},
        {"tokenId": 4},
    ]

    assert await service.enqueue("POL", candidates) == 2
    assert await read_lines(paths.queue("burn", "POL", "nfts")) == [
        '2AutomaticNFTBurngone {"tokenId":2,"nftName":"gone"}',
        '3AutomaticNFTBurnmissing {"tokenId":3,"nftName":"missing"}',
    ]

    await service.drain_all()

    params = [r.params for r in service.tx_manager.submitted]
    assert params == [
        {"obtId": "2AutomaticNFTBurngone", "tokenId": 2},
        {"obtId": "3AutomaticNFTBurnmissing", "tokenId": 3},
    ]
    assert await read_lines(paths.queue("burn", "POL", "nfts")) == []
    fio_log = "\n".join(await read_lines(paths.fio()))
    assert "2AutomaticNFTBurngone" in fio_log


@pytest.mark.asyncio
async def test_recorded_burns_are_not_queued_twice(service, paths):
    await service.enqueue("POL", [{"tokenId": 2, "nftName": "gone"}])
    assert await service.enqueue("POL", [{"tokenId": 2, "nftName": "gone"}]) == 0

    await add_log_message(paths.chain("POL", "nfts"), 'POL fio.erc721 burn nfts receipt {"obtId": "5AutomaticDomainBurnold"}')
    assert await service.enqueue("POL", [{"tokenId": 5, "nftName": "old"}]) == 0
    assert len(await read_lines(paths.queue("burn", "POL", "nfts"))) == 1


@pytest.mark.asyncio
async def test_unknown_chain_is_rejected(service):
    with pytest.raises(KeyError):
        await service.enqueue("BSC", [{"tokenId": 1, "nftName": "x"}])
