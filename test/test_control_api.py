import pytest
from aiohttp import test_utils

from fio_oracle.core.config import settings
from fio_oracle.core.control_api import create_app


class DummyBurn:
    def __init__(self):
        self.enqueued = []
        self.drained = 0

    async def enqueue(self, chain_code, items):
        if chain_code != "POL":
            raise KeyError(f"No nfts contract for {chain_code}")
        self.enqueued.append((chain_code, items))
        return len(items)

    async def drain_all(self):
        self.drained += 1


class DummyQueue:
    def stats(self):
        return {"processed": 3, "queued": 0}


@pytest.fixture
def services():
    return {"burn": DummyBurn(), "request_queue": DummyQueue()}


@pytest.mark.asyncio
async def test_healthz_is_public(services):
    async with test_utils.TestClient(test_utils.TestServer(create_app(services))) as client:
        resp = await client.get("/healthz")
        assert resp.status == 200
        body = await resp.json()
    assert body["status"] == "ok"
    assert body["mode"] == "test"
    assert body["request_queue"]["processed"] == 3


@pytest.mark.asyncio
async def test_burn_requires_the_control_token(services, monkeypatch):
    monkeypatch.setattr(settings, "CONTROL_API_TOKEN", "tok")
    async with test_utils.TestClient(test_utils.TestServer(create_app(services))) as client:
        resp = await client.post("/burn", json={"chainCode": "POL", "items": []}, headers={"Authorization": "Bearer nope"})
        assert resp.status == 401
    assert services["burn"].enqueued == []


@pytest.mark.asyncio
async def test_authorized_burn_is_queued_and_drained(services, monkeypatch):
    monkeypatch.setattr(settings, "CONTROL_API_TOKEN", "tok")
    headers = {"Authorization": "Bearer tok"}
    items = [{"tokenId": 7, "nftName": "dapix"}]
    async with test_utils.TestClient(test_utils.TestServer(create_app(services))) as client:
        resp = await client.post("/burn", json={"chainCode": "POL", "items": items}, headers=headers)
        assert resp.status == 200
        assert (await resp.json()) == {"queued": 1}

        resp = await client.post("/burn", json={"chainCode": "BSC", "items": items}, headers=headers)
        assert resp.status == 404

        resp = await client.post("/burn", json={"items": items}, headers=headers)
        assert resp.status == 400
    assert services["burn"].enqueued == [("POL", items)]
    assert services["burn"].drained == 1


@pytest.mark.asyncio
async def test_metrics_are_exposed(services):
    async with test_utils.TestClient(test_utils.TestServer(create_app(services))) as client:
        resp = await client.get("/metrics")
        assert resp.status == 200
        assert "fio_oracle_transactions_submitted" in await resp.text()
