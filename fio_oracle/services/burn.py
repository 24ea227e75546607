# /fio_oracle/services/burn.py
# Burns wrapped domain NFTs whose FIO domain is no longer held by fio.oracle.
import json
from functools import partial
from typing import Dict, List, Optional

from fio_oracle.core.config import settings
from fio_oracle.core.constants import (
    AUTOMATIC_BURN_PREFIX,
    AUTOMATIC_BURN_PREFIX_LEGACY,
    FIO_CHAIN_NAME,
    FIO_ORACLE_ACCOUNT,
    Action,
    AssetType,
    action_name,
    job_lock_key,
)
from fio_oracle.core.log_files import LogPaths, add_log_message, append_line, read_text
from fio_oracle.core.logger import bind_job, get_logger
from fio_oracle.core.models import SubmitRequest, split_line
from fio_oracle.core.registry import ChainContext, ChainRegistry
from fio_oracle.core.tx import TransactionManager

log = get_logger(__name__)


def normalize_name(name: str) -> str:
    return str(name or "").strip().lower()


def burn_obt_id(token_id, name: str) -> str:
    return f"{token_id}{AUTOMATIC_BURN_PREFIX}{name}"


def legacy_obt_id(obt_id: str) -> Optional[str]:
    if AUTOMATIC_BURN_PREFIX in obt_id:
        return obt_id.replace(AUTOMATIC_BURN_PREFIX, AUTOMATIC_BURN_PREFIX_LEGACY)
    return None


class BurnService:
    def __init__(self, fio, tx_manager: TransactionManager, registry: ChainRegistry, job_queue, paths: Optional[LogPaths] = None):
        self.fio = fio
        self.tx_manager = tx_manager
        self.registry = registry
        self.job_queue = job_queue
        self.paths = paths or registry.paths

    async def _seen_checker(self, chain_code: str):
        """A predicate telling whether a burn obtId was already queued or executed."""
        queue_log = await read_text(self.paths.queue(Action.BURN, chain_code, AssetType.NFTS))
        receipt_lines = [
            line
            for path in (self.paths.chain(chain_code, AssetType.NFTS), self.paths.fio())
            for line in (await read_text(path)).splitlines()
            if "receipt" in line
        ]

        def seen(obt_id: str) -> bool:
            ids = [i for i in (obt_id, legacy_obt_id(obt_id)) if i]
            for i in ids:
                if i in queue_log or any(i in line for line in receipt_lines):
                    return True
            return False

        return seen

    async def verify_and_filter_burn_list(self, chain_code: str, candidates: List[Dict]) -> List[Dict]:
        """Keeps candidates that are new and whose domain left fio.oracle's custody."""
        seen = await self._seen_checker(chain_code)
        named = []
        for candidate in candidates:
            name = normalize_name(candidate.get("nftName") or candidate.get("domain") or candidate.get("name"))
            if not name or candidate.get("tokenId") is None:
                log.warning("BURN_CANDIDATE_WITHOUT_NAME", chain=chain_code, candidate=candidate)
                continue
            obt_id = candidate.get("obtId") or burn_obt_id(candidate["tokenId"], name)
            if seen(obt_id):
                log.info("BURN_ALREADY_RECORDED", chain=chain_code, obt_id=obt_id)
                continue
            named.append({"tokenId": int(candidate["tokenId"]), "nftName": name, "obtId": obt_id})
        if not named:
            return []

        owners = await self.fio.get_domain_owners()
        to_burn = []
        for candidate in named:
            owner = owners.get(candidate["nftName"])
            if owner is None or owner != FIO_ORACLE_ACCOUNT:
                to_burn.append(candidate)
            else:
                log.info("BURN_SKIPPED_STILL_WRAPPED", chain=chain_code, nft_name=candidate["nftName"])
        return to_burn

    async def enqueue(self, chain_code: str, candidates: List[Dict]) -> int:
        ctx = self.registry.get(chain_code, AssetType.NFTS)
        to_burn = await self.verify_and_filter_burn_list(ctx.chain_code, candidates)
        for item in to_burn:
            payload = {"tokenId": item["tokenId"], "nftName": item["nftName"]}
            await append_line(
                self.paths.queue(Action.BURN, ctx.chain_code, AssetType.NFTS),
                f"{item['obtId']} {json.dumps(payload, separators=(',', ':'))}",
            )
        log.info("BURN_ITEMS_QUEUED", chain=ctx.chain_code, count=len(to_burn), candidates=len(candidates))
        return len(to_burn)

    async def drain_all(self):
        for ctx in self.registry.contexts(AssetType.NFTS):
            try:
                await self.drain(ctx)
            except Exception as e:
                log.error("BURN_DRAIN_FAILED", chain=ctx.chain_code, error=str(e))

    async def drain(self, ctx: ChainContext) -> int:
        bind_job("burn", ctx.chain_code)
        return await self.job_queue.drain(
            job_lock_key(Action.BURN, ctx.chain_code, AssetType.NFTS),
            self.paths.queue(Action.BURN, ctx.chain_code, AssetType.NFTS),
            self.paths.error_queue(Action.BURN, ctx.chain_code, AssetType.NFTS),
            partial(self.handle, ctx),
            before_drain=partial(self.tx_manager.ensure_oracle_registered, ctx.chain_code, AssetType.NFTS),
            item_delay=settings.TRANSACTION_DELAY_SECONDS,
        )

    async def handle(self, ctx: ChainContext, line: str) -> bool:
        obt_id, raw = split_line(line)
        payload = json.loads(raw)
        outcome = await self.tx_manager.submit(SubmitRequest(
            action=Action.BURN,
            chain_code=ctx.chain_code,
            asset_type=AssetType.NFTS,
            params={"obtId": obt_id, "tokenId": int(payload["tokenId"])},
        ))
        record = {"obtId": obt_id, "tokenId": payload["tokenId"], "nftName": payload.get("nftName"), "txHash": outcome.tx_hash, "status": outcome.status}
        await add_log_message(
            self.paths.chain(ctx.chain_code, AssetType.NFTS),
            f"{ctx.chain_code} {ctx.config.contract_type_name} {action_name(Action.BURN, AssetType.NFTS)} receipt {json.dumps(record)}",
        )
        if outcome.succeeded:
            await add_log_message(self.paths.fio(), {"chain": FIO_CHAIN_NAME, "action": "burnnft", "receipt": record})
        return outcome.succeeded
