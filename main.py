# /main.py
# Composition root: builds the shared services once and runs every job on its own interval.
import asyncio

from aiohttp import web
from eth_account import Account

from fio_oracle.core.config import settings
from fio_oracle.core.config_validator import validate as validate_config
from fio_oracle.core.control_api import create_app
from fio_oracle.core.gas import GasPolicy
from fio_oracle.core.job_lock import create_job_lock
from fio_oracle.core.job_queue import JobQueue
from fio_oracle.core.log_files import get_log_paths, prepare_log_file
from fio_oracle.core.logger import configure_logging, get_logger
from fio_oracle.core.registry import ChainRegistry
from fio_oracle.core.request_queue import RequestQueue
from fio_oracle.core.tx import TransactionManager
from fio_oracle.adapters.fio import FioLedgerClient, RemoteFioSigner
from fio_oracle.adapters.gas_oracles import EtherscanGasOracle, RpcGasOracle
from fio_oracle.services.burn import BurnService
from fio_oracle.services.event_cache import EventCache
from fio_oracle.services.pending_transactions import PendingTransactionSweeper
from fio_oracle.services.reconciler import Reconciler
from fio_oracle.services.unwrap import UnwrapService
from fio_oracle.services.wrap import WrapService

log = get_logger("FIO-Oracle.System")


async def run_every(name: str, interval: float, job):
    """Runs ``job`` forever, ``interval`` seconds apart. A failed run never stops the loop."""
    while True:
        try:
            await job()
        except Exception as e:
            log.error("JOB_RUN_FAILED", job=name, error=str(e), exc_info=True)
        await asyncio.sleep(interval)


async def prepare_files(paths, registry: ChainRegistry):
    for path in (paths.fio(), paths.fio_oracle_item_id(), paths.missing_actions(), paths.errors()):
        await prepare_log_file(path)
    for ctx in registry.contexts():
        for path in paths.for_chain(ctx.chain_code, ctx.asset_type):
            await prepare_log_file(path)


async def main():
    configure_logging()
    validate_config()
    log.info("FIO_ORACLE_STARTING", mode=settings.MODE, chains=[f"{c.chain_code}:{c.asset_type}" for c in settings.chains()])

    private_key = settings.ORACLE_PRIVATE_KEY.get_secret_value()
    address = settings.ORACLE_PUBLIC_ADDRESS or Account.from_key(private_key).address
    paths = get_log_paths()

    # --- Shared Core Components ---
    request_queue = RequestQueue()
    registry = ChainRegistry(settings.chains(), address, queue=request_queue, paths=paths)
    await prepare_files(paths, registry)
    gas_policy = GasPolicy([
        RpcGasOracle(registry.rpc_clients()),
        EtherscanGasOracle({c.chain_code: c.gas_oracle_urls for c in settings.chains() if c.gas_oracle_urls}),
    ])
    tx_manager = TransactionManager(registry, gas_policy, private_key=private_key, paths=paths)
    job_lock = create_job_lock()
    job_queue = JobQueue(job_lock)
    signer = RemoteFioSigner(settings.FIO_SIGNER_URL)
    fio = FioLedgerClient(signer=signer)

    # --- Services ---
    event_cache = EventCache(registry, paths=paths, job_lock=job_lock)
    await event_cache.load()
    services = {
        "request_queue": request_queue,
        "wrap": WrapService(fio, tx_manager, registry, job_queue, paths=paths),
        "unwrap": UnwrapService(fio, event_cache, registry, job_queue, paths=paths),
        "burn": BurnService(fio, tx_manager, registry, job_queue, paths=paths),
    }
    sweeper = PendingTransactionSweeper(tx_manager, registry, paths=paths)
    reconciler = Reconciler(fio, tx_manager, event_cache, registry, job_lock, paths=paths)

    # --- Start Health / Control Server & All Jobs ---
    app = create_app(services)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", settings.HEALTH_PORT or 8080)
    await site.start()
    log.info("CONTROL_SERVER_STARTED", port=settings.HEALTH_PORT or 8080)

    async def log_queue_stats():
        request_queue.log_stats()

    log.info("STARTING_ALL_CONCURRENT_JOBS")
    try:
        await asyncio.gather(
            run_every("event_cache", settings.EVENT_CACHE_INTERVAL, event_cache.refresh_all),
            run_every("wrap", settings.POLL_INTERVAL, services["wrap"].poll_fio_ledger),
            run_every("unwrap", settings.POLL_INTERVAL, services["unwrap"].poll_chains),
            run_every("burn", settings.POLL_INTERVAL, services["burn"].drain_all),
            run_every("pending_sweep", settings.PENDING_SWEEP_INTERVAL, sweeper.sweep_all),
            run_every("reconcile", settings.RECONCILE_INTERVAL, reconciler.run),
            run_every("request_queue_stats", settings.RECONCILE_INTERVAL, log_queue_stats),
        )
    finally:
        await tx_manager.close()
        await fio.close()
        await signer.close()
        for oracle in gas_policy.oracles:
            close = getattr(oracle, "close", None)
            if close is not None:
                await close()
        await job_lock.close()
        await runner.cleanup()
        log.warning("SYSTEM_SHUTDOWN_COMPLETE")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
