# /fio_oracle/services/wrap.py
# FIO ledger items -> wrap transactions on the target chains.
import json
from functools import partial
from typing import Optional

from web3 import Web3

from fio_oracle.core.config import settings
from fio_oracle.core.constants import (
    FIO_CHAIN_NAME,
    FIO_ORACLE_ACCOUNT,
    FIO_WRAP_POLL_LOCK_KEY,
    Action,
    AssetType,
    action_name,
    job_lock_key,
)
from fio_oracle.core.log_files import LogPaths, add_log_message, append_line, read_int, write_int
from fio_oracle.core.logger import bind_job, get_logger
from fio_oracle.core.models import SubmitRequest, split_line
from fio_oracle.core.registry import ChainContext, ChainRegistry
from fio_oracle.core.tx import TransactionManager

log = get_logger(__name__)


def wrap_params(obt_id: str, asset_type: str, payload: dict) -> dict:
    params = {"obtId": obt_id, "pubaddress": payload["pubaddress"]}
    if asset_type == AssetType.TOKENS:
        params["amount"] = int(payload["amount"])
    else:
        params["nftName"] = str(payload["nftname"])
    return params


class WrapService:
    def __init__(self, fio, tx_manager: TransactionManager, registry: ChainRegistry, job_queue, paths: Optional[LogPaths] = None):
        self.fio = fio
        self.tx_manager = tx_manager
        self.registry = registry
        self.job_queue = job_queue
        self.paths = paths or registry.paths

    async def poll_fio_ledger(self) -> int:
        """Moves new ``oracleldgrs`` rows into the per-chain wrap queues, then drains them."""
        bind_job("wrap", FIO_CHAIN_NAME)
        job_lock = self.job_queue.job_lock
        token = await job_lock.acquire(FIO_WRAP_POLL_LOCK_KEY)
        if not token:
            return 0
        queued = 0
        try:
            id_path = self.paths.fio_oracle_item_id()
            last_id = await read_int(id_path)
            items = await self.fio.get_oracle_items(lower_bound=None if last_id is None else last_id + 1)
            if last_id is None:
                # First start: begin after what is already on the ledger.
                start = max((i.id for i in items), default=0)
                await write_int(id_path, start)
                log.info("FIO_ORACLE_ITEM_ID_INITIALIZED", item_id=start)
                return 0
            for item in items:
                if item.id <= last_id:
                    continue
                ctx = self.registry.find(item.chaincode, item.asset_type)
                if ctx is None:
                    log.warning("WRAP_ITEM_UNSUPPORTED_CHAIN", item_id=item.id, chaincode=item.chaincode, type=item.asset_type)
                else:
                    line = f"{item.id} {json.dumps(item.queue_payload(), separators=(',', ':'))}"
                    await append_line(self.paths.queue(Action.WRAP, ctx.chain_code, ctx.asset_type), line)
                    queued += 1
                await add_log_message(self.paths.fio(), {
                    "chain": FIO_CHAIN_NAME,
                    "contract": FIO_ORACLE_ACCOUNT,
                    "action": action_name(Action.WRAP, item.asset_type),
                    "item": item.model_dump(),
                })
                await write_int(id_path, item.id)
            if queued:
                log.info("WRAP_ITEMS_QUEUED", count=queued)
        finally:
            await job_lock.release(FIO_WRAP_POLL_LOCK_KEY, token)
        await self.drain_all()
        return queued

    async def drain_all(self):
        for ctx in self.registry.contexts():
            try:
                await self.drain(ctx)
            except Exception as e:
                log.error("WRAP_DRAIN_FAILED", chain=ctx.chain_code, type=ctx.asset_type, error=str(e))

    async def drain(self, ctx: ChainContext) -> int:
        bind_job("wrap", ctx.chain_code)
        return await self.job_queue.drain(
            job_lock_key(Action.WRAP, ctx.chain_code, ctx.asset_type),
            self.paths.queue(Action.WRAP, ctx.chain_code, ctx.asset_type),
            self.paths.error_queue(Action.WRAP, ctx.chain_code, ctx.asset_type),
            partial(self.handle, ctx),
            before_drain=partial(self.tx_manager.ensure_oracle_registered, ctx.chain_code, ctx.asset_type),
            item_delay=settings.TRANSACTION_DELAY_SECONDS,
        )

    async def handle(self, ctx: ChainContext, line: str) -> bool:
        obt_id, raw = split_line(line)
        payload = json.loads(raw)
        name = action_name(Action.WRAP, ctx.asset_type)
        if str(payload.get("chaincode", "")).upper() != ctx.chain_code.upper():
            log.error("WRAP_CHAIN_MISMATCH", chain=ctx.chain_code, obt_id=obt_id, chaincode=payload.get("chaincode"))
            return False
        if not Web3.is_address(payload.get("pubaddress", "")):
            log.error("WRAP_INVALID_ADDRESS", chain=ctx.chain_code, obt_id=obt_id, pubaddress=payload.get("pubaddress"))
            return False

        outcome = await self.tx_manager.submit(SubmitRequest(
            action=Action.WRAP,
            chain_code=ctx.chain_code,
            asset_type=ctx.asset_type,
            params=wrap_params(obt_id, ctx.asset_type, payload),
        ))
        await add_log_message(
            self.paths.chain(ctx.chain_code, ctx.asset_type),
            f"{ctx.chain_code} {ctx.config.contract_type_name} {name} receipt "
            f"{json.dumps({'obtId': obt_id, 'txHash': outcome.tx_hash, 'status': outcome.status})}",
        )
        return outcome.succeeded
