# /fio_oracle/services/unwrap.py
# ``unwrapped`` events on the target chains -> unwrap actions on FIO.
import asyncio
import json
from functools import partial
from typing import Optional

from fio_oracle.core.config import settings
from fio_oracle.core.constants import (
    FIO_CHAIN_NAME,
    FIO_ORACLE_ACCOUNT,
    Action,
    AssetType,
    ContractEvent,
    JobKind,
    action_name,
    job_lock_key,
)
from fio_oracle.core.errors import FioTransactionError, is_already_completed, is_fio_non_retryable
from fio_oracle.core.log_files import LogPaths, add_log_message, append_line, read_int, write_int
from fio_oracle.core.logger import bind_job, get_logger
from fio_oracle.core.models import split_line
from fio_oracle.core.registry import ChainContext, ChainRegistry
from fio_oracle.adapters.fio import unwrap_action_payload

log = get_logger(__name__)


class UnwrapService:
    def __init__(self, fio, event_cache, registry: ChainRegistry, job_queue, paths: Optional[LogPaths] = None):
        self.fio = fio
        self.event_cache = event_cache
        self.registry = registry
        self.job_queue = job_queue
        self.paths = paths or registry.paths

    async def poll_chains(self) -> int:
        contexts = self.registry.contexts()
        found = 0
        for i, ctx in enumerate(contexts):
            try:
                found += await self.detect(ctx)
            except Exception as e:
                log.error("UNWRAP_DETECTION_FAILED", chain=ctx.chain_code, type=ctx.asset_type, error=str(e))
            if i < len(contexts) - 1:
                await asyncio.sleep(settings.CHAIN_DELAY_SECONDS)
        for ctx in contexts:
            try:
                await self.drain(ctx)
            except Exception as e:
                log.error("UNWRAP_DRAIN_FAILED", chain=ctx.chain_code, type=ctx.asset_type, error=str(e))
        return found

    async def detect(self, ctx: ChainContext) -> int:
        """Queues ``unwrapped`` events found after the saved block number."""
        bind_job("unwrap", ctx.chain_code)
        key = job_lock_key(Action.UNWRAP, ctx.chain_code, ctx.asset_type, JobKind.EVENT_DETECTION)
        job_lock = self.job_queue.job_lock
        token = await job_lock.acquire(key)
        if not token:
            return 0
        try:
            block_path = self.paths.block_number(ctx.chain_code, ctx.asset_type)
            last = await ctx.rpc.block_number() - ctx.config.blocks_offset
            saved = await read_int(block_path)
            if saved is None or saved > last:
                await write_int(block_path, last)
                log.info("UNWRAP_BLOCK_NUMBER_RESET", chain=ctx.chain_code, type=ctx.asset_type, block=last, previous=saved)
                return 0
            from_block = saved + 1
            if from_block > last:
                return 0

            events = await self.event_cache.get_events_in_block_range(
                ctx.chain_code, ctx.asset_type, ContractEvent.UNWRAPPED, from_block, last,
            )
            name = action_name(Action.UNWRAP, ctx.asset_type)
            for event in events:
                values = json.dumps(event.return_values, separators=(",", ":"))
                await add_log_message(
                    self.paths.chain(ctx.chain_code, ctx.asset_type),
                    f"{ctx.chain_code} {ctx.config.contract_type_name} {name} {event.transaction_hash} {values}",
                )
                await append_line(
                    self.paths.queue(Action.UNWRAP, ctx.chain_code, ctx.asset_type),
                    f"{event.transaction_hash} {values}",
                )
            await write_int(block_path, last)
            if events:
                log.info("UNWRAP_EVENTS_QUEUED", chain=ctx.chain_code, type=ctx.asset_type, count=len(events), from_block=from_block, to_block=last)
            return len(events)
        finally:
            await job_lock.release(key, token)

    async def drain(self, ctx: ChainContext) -> int:
        return await self.job_queue.drain(
            job_lock_key(Action.UNWRAP, ctx.chain_code, ctx.asset_type, JobKind.FIO_TX),
            self.paths.queue(Action.UNWRAP, ctx.chain_code, ctx.asset_type),
            self.paths.error_queue(Action.UNWRAP, ctx.chain_code, ctx.asset_type),
            partial(self.handle, ctx),
            item_delay=settings.TRANSACTION_DELAY_SECONDS,
        )

    async def handle(self, ctx: ChainContext, line: str) -> bool:
        tx_hash, raw = split_line(line)
        values = json.loads(raw)
        value = values["amount"] if ctx.asset_type == AssetType.TOKENS else values["domain"]
        action, data = unwrap_action_payload(ctx.asset_type, tx_hash, values["fioaddress"], value)
        try:
            result = await self.fio.push_transaction(action, data)
        except FioTransactionError as e:
            if is_already_completed(e):
                log.info("UNWRAP_ALREADY_COMPLETED", chain=ctx.chain_code, obt_id=tx_hash)
                return True
            if is_fio_non_retryable(e):
                log.error("UNWRAP_NON_RETRYABLE", chain=ctx.chain_code, obt_id=tx_hash, error=str(e.result or e))
                return False
            raise
        await add_log_message(self.paths.fio(), {
            "chain": FIO_CHAIN_NAME,
            "contract": FIO_ORACLE_ACCOUNT,
            "action": action,
            "obtId": tx_hash,
            "transaction": result,
        })
        return True
