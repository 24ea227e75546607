# /fio_oracle/services/reconciler.py
# Finds relay actions this oracle should have taken in the last hour but did not.
import asyncio
import time
from typing import Dict, Iterable, List, Optional

from fio_oracle.core.constants import (
    CONSENSUS_ORACLE_SIGNER,
    RECONCILE_LOCK_KEY,
    RECONCILE_MAX_RETRIES,
    RECONCILE_RETRY_DELAY,
    RECONCILE_WINDOW_END,
    RECONCILE_WINDOW_START,
    Action,
    AssetType,
    ContractEvent,
    action_name,
)
from fio_oracle.core.errors import FioTransactionError, is_already_completed, is_fio_non_retryable
from fio_oracle.core.log_files import LogPaths, add_log_message, read_lines
from fio_oracle.core.logger import MISSING_ACTIONS, bind_job, get_logger
from fio_oracle.core.models import CachedEvent, OracleLedgerItem, SubmitRequest
from fio_oracle.core.registry import ChainContext, ChainRegistry
from fio_oracle.adapters.fio import unwrap_action_payload
from fio_oracle.services.wrap import wrap_params

log = get_logger(__name__)


def _same_address(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()


def _wrap_seen(item: OracleLedgerItem, obt_id: str, consensus_events: Iterable[CachedEvent], wrapped_events: Iterable[CachedEvent], oracle_address: str) -> bool:
    for event in consensus_events:
        values = event.return_values
        if (
            values.get("signer") == CONSENSUS_ORACLE_SIGNER
            and str(values.get("obtid")) == obt_id
            and _same_address(values.get("account"), oracle_address)
        ):
            return True
    for event in wrapped_events:
        values = event.return_values
        if str(values.get("obtid")) != obt_id or not _same_address(values.get("account"), item.pubaddress):
            continue
        if item.amount:
            if str(values.get("amount")) == str(item.amount):
                return True
        elif values.get("domain") == item.nftname:
            return True
    return False


def find_missing_wrap_actions(
    items: Iterable[OracleLedgerItem],
    consensus_events: List[CachedEvent],
    wrapped_events: List[CachedEvent],
    chain_code: str,
    oracle_address: str,
) -> List[OracleLedgerItem]:
    """Ledger items of ``chain_code`` with neither our consensus vote nor a matching ``wrapped`` event."""
    missing = []
    for item in items:
        if (item.chaincode or "").upper() != chain_code.upper():
            continue
        if not _wrap_seen(item, str(item.id), consensus_events, wrapped_events, oracle_address):
            missing.append(item)
    return missing


def find_missing_unwrap_actions(unwrapped_events: Iterable[CachedEvent], fio_actions: List[dict], asset_type: str) -> List[CachedEvent]:
    """``unwrapped`` events without a matching unwrap action on FIO."""
    missing = []
    for event in unwrapped_events:
        values = event.return_values
        tx_hash = (event.transaction_hash or "").lower()
        matched = False
        for action in fio_actions:
            data = action.get("data") or {}
            obt_id = str(data.get("obt_id") or data.get("obtid") or "").lower()
            if obt_id != tx_hash:
                continue
            if asset_type == AssetType.TOKENS:
                if str(data.get("amount")) != str(values.get("amount")):
                    continue
            elif data.get("domain") != values.get("domain"):
                continue
            fio_address = data.get("fio_address")
            if fio_address and values.get("fioaddress") and fio_address != values.get("fioaddress"):
                continue
            matched = True
            break
        if not matched:
            missing.append(event)
    return missing


class Reconciler:
    def __init__(
        self,
        fio,
        tx_manager,
        event_cache,
        registry: ChainRegistry,
        job_lock,
        paths: Optional[LogPaths] = None,
        retry_delay: float = RECONCILE_RETRY_DELAY,
        max_retries: int = RECONCILE_MAX_RETRIES,
    ):
        self.fio = fio
        self.tx_manager = tx_manager
        self.event_cache = event_cache
        self.registry = registry
        self.job_lock = job_lock
        self.paths = paths or registry.paths
        self.retry_delay = retry_delay
        self.max_retries = max_retries

    async def run(self) -> Dict[str, int]:
        stats = {"missing_wraps": 0, "missing_unwraps": 0, "executed": 0, "failed": 0}
        token = await self.job_lock.acquire(RECONCILE_LOCK_KEY)
        if not token:
            return stats
        bind_job("reconcile")
        try:
            now = int(time.time())
            window_start, window_end = now - RECONCILE_WINDOW_END, now - RECONCILE_WINDOW_START
            items = [i for i in await self.fio.get_oracle_items() if window_start <= i.timestamp <= window_end]
            fio_unwraps = await self.fio.get_unwrap_actions(window_start)
            for ctx in self.registry.contexts():
                try:
                    await self._reconcile_chain(ctx, items, fio_unwraps, window_start, window_end, stats)
                except Exception as e:
                    log.error("RECONCILE_CHAIN_FAILED", chain=ctx.chain_code, type=ctx.asset_type, error=str(e))
            log.info("RECONCILE_DONE", **stats)
            return stats
        finally:
            await self.job_lock.release(RECONCILE_LOCK_KEY, token)

    async def _reconcile_chain(self, ctx: ChainContext, items, fio_unwraps, window_start: int, window_end: int, stats: Dict[str, int]):
        chain_items = [i for i in items if (i.chaincode or "").upper() == ctx.chain_code.upper() and i.asset_type == ctx.asset_type]
        missing_wraps = await self.missing_wraps(ctx, chain_items, window_start)

        unwrapped = self.event_cache.get_cached_events(
            ctx.chain_code, ctx.asset_type, ContractEvent.UNWRAPPED, from_ts=window_start * 1000, to_ts=window_end * 1000,
        )
        missing_unwraps = find_missing_unwrap_actions(unwrapped, fio_unwraps, ctx.asset_type)

        stats["missing_wraps"] += len(missing_wraps)
        stats["missing_unwraps"] += len(missing_unwraps)
        for item in missing_wraps:
            MISSING_ACTIONS.labels(Action.WRAP).inc()
            await add_log_message(self.paths.missing_actions(), {
                "chain": ctx.chain_code, "action": action_name(Action.WRAP, ctx.asset_type), "obtId": str(item.id), "item": item.model_dump(),
            })
        for event in missing_unwraps:
            MISSING_ACTIONS.labels(Action.UNWRAP).inc()
            await add_log_message(self.paths.missing_actions(), {
                "chain": ctx.chain_code, "action": action_name(Action.UNWRAP, ctx.asset_type), "obtId": event.transaction_hash, "event": event.return_values,
            })
        if not missing_wraps and not missing_unwraps:
            return
        if await read_lines(self.paths.pending_transactions(ctx.chain_code)):
            log.warning("RECONCILE_SKIPPED_PENDING_TRANSACTIONS", chain=ctx.chain_code)
            return

        for item in missing_wraps:
            ok = await self._with_retries(lambda item=item: self.execute_wrap(ctx, item), ctx, str(item.id))
            stats["executed" if ok else "failed"] += 1
        for event in missing_unwraps:
            ok = await self._with_retries(lambda event=event: self.execute_unwrap(ctx, event), ctx, event.transaction_hash)
            stats["executed" if ok else "failed"] += 1

    async def missing_wraps(self, ctx: ChainContext, items: List[OracleLedgerItem], window_start: int) -> List[OracleLedgerItem]:
        """Narrows candidates: recent cache, then the full disk cache, then the chain itself."""
        if not items:
            return []
        recent = self.event_cache.get_cached_events(ctx.chain_code, ctx.asset_type, from_ts=window_start * 1000)
        candidates = find_missing_wrap_actions(
            items,
            [e for e in recent if e.event == ContractEvent.CONSENSUS_ACTIVITY],
            [e for e in recent if e.event == ContractEvent.WRAPPED],
            ctx.chain_code,
            ctx.address,
        )
        if candidates:
            everything = await self.event_cache.get_all_cached_events(ctx.chain_code, ctx.asset_type)
            candidates = find_missing_wrap_actions(
                candidates,
                [e for e in everything if e.event == ContractEvent.CONSENSUS_ACTIVITY],
                [e for e in everything if e.event == ContractEvent.WRAPPED],
                ctx.chain_code,
                ctx.address,
            )
        confirmed = []
        for item in candidates:
            if await self.confirm_missing_on_chain(ctx, item):
                confirmed.append(item)
        return confirmed

    async def confirm_missing_on_chain(self, ctx: ChainContext, item: OracleLedgerItem) -> bool:
        obt_id = str(item.id)
        try:
            approvals = await self.tx_manager.get_approval_count(ctx, obt_id)
        except Exception as e:
            log.warning("RECONCILE_APPROVAL_CHECK_FAILED", chain=ctx.chain_code, obt_id=obt_id, error=str(e))
            return False
        if approvals > 0:
            log.info("RECONCILE_APPROVALS_PRESENT", chain=ctx.chain_code, obt_id=obt_id, approvals=approvals)
            return False
        try:
            await self.tx_manager.simulate(self._wrap_request(ctx, item))
        except Exception as e:
            if is_already_completed(e):
                log.info("RECONCILE_ALREADY_COMPLETED", chain=ctx.chain_code, obt_id=obt_id)
                return False
            log.warning("RECONCILE_DRY_RUN_FAILED", chain=ctx.chain_code, obt_id=obt_id, error=str(e))
        return True

    def _wrap_request(self, ctx: ChainContext, item: OracleLedgerItem) -> SubmitRequest:
        return SubmitRequest(
            action=Action.WRAP,
            chain_code=ctx.chain_code,
            asset_type=ctx.asset_type,
            params=wrap_params(str(item.id), ctx.asset_type, item.queue_payload()),
        )

    async def execute_wrap(self, ctx: ChainContext, item: OracleLedgerItem) -> bool:
        outcome = await self.tx_manager.submit(self._wrap_request(ctx, item))
        return outcome.succeeded

    async def execute_unwrap(self, ctx: ChainContext, event: CachedEvent) -> bool:
        values = event.return_values
        value = values["amount"] if ctx.asset_type == AssetType.TOKENS else values["domain"]
        action, data = unwrap_action_payload(ctx.asset_type, event.transaction_hash, values["fioaddress"], value)
        try:
            await self.fio.push_transaction(action, data)
        except FioTransactionError as e:
            if is_already_completed(e):
                return True
            raise
        return True

    async def _with_retries(self, attempt, ctx: ChainContext, obt_id: str) -> bool:
        for n in range(1, self.max_retries + 1):
            try:
                if await attempt():
                    log.info("RECONCILE_ACTION_EXECUTED", chain=ctx.chain_code, obt_id=obt_id, attempt=n)
                    await asyncio.sleep(self.retry_delay)
                    return True
            except Exception as e:
                if is_fio_non_retryable(e):
                    log.error("RECONCILE_NON_RETRYABLE", chain=ctx.chain_code, obt_id=obt_id, error=str(e))
                    return False
                log.warning("RECONCILE_ATTEMPT_FAILED", chain=ctx.chain_code, obt_id=obt_id, attempt=n, error=str(e))
            await asyncio.sleep(self.retry_delay)
        log.error("RECONCILE_ACTION_GAVE_UP", chain=ctx.chain_code, obt_id=obt_id, attempts=self.max_retries)
        return False
