# /fio_oracle/core/control_api.py
from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from fio_oracle.core.config import settings
from fio_oracle.core.logger import get_logger

log = get_logger(__name__)

SERVICES_KEY = web.AppKey("services", dict)


def verify(request: web.Request):
    token = settings.CONTROL_API_TOKEN
    if not token:
        raise web.HTTPInternalServerError(text="Control token not configured")
    if request.headers.get("Authorization") != f"Bearer {token}":
        raise web.HTTPUnauthorized(text="Unauthorized")


async def healthz(request: web.Request):
    services = request.app[SERVICES_KEY]
    queue = services.get("request_queue")
    return web.json_response({
        "status": "ok",
        "mode": settings.MODE,
        "chains": [f"{c.chain_code}:{c.asset_type}" for c in settings.chains()],
        "request_queue": queue.stats() if queue is not None else None,
    })


async def metrics(request: web.Request):
    return web.Response(body=generate_latest(), headers={"Content-Type": CONTENT_TYPE_LATEST})


async def trigger_poll(request: web.Request):
    verify(request)
    services = request.app[SERVICES_KEY]
    queued = await services["wrap"].poll_fio_ledger()
    found = await services["unwrap"].poll_chains()
    log.warning("MANUAL_POLL_TRIGGERED", wrap_queued=queued, unwrap_found=found)
    return web.json_response({"wrap_queued": queued, "unwrap_found": found})


async def submit_burn(request: web.Request):
    """Body: ``{"chainCode": "POL", "items": [{"tokenId": 7, "nftName": "domain"}]}``."""
    verify(request)
    try:
        body = await request.json()
        chain_code = body["chainCode"]
        items = list(body["items"])
    except (ValueError, KeyError, TypeError):
        raise web.HTTPBadRequest(text="Expected {chainCode, items}")
    burn = request.app[SERVICES_KEY]["burn"]
    try:
        queued = await burn.enqueue(chain_code, items)
    except KeyError as e:
        raise web.HTTPNotFound(text=str(e))
    await burn.drain_all()
    return web.json_response({"queued": queued})


def create_app(services: dict) -> web.Application:
    app = web.Application()
    app[SERVICES_KEY] = services
    app.add_routes([
        web.get("/healthz", healthz),
        web.get("/metrics", metrics),
        web.post("/poll", trigger_poll),
        web.post("/burn", submit_burn),
    ])
    return app
