# /fio_oracle/services/pending_transactions.py
# Periodic check of broadcast transactions that never produced a receipt.
from itertools import groupby
from typing import Dict, List, Optional, Set

from fio_oracle.core.config import settings
from fio_oracle.core.errors import ProviderError
from fio_oracle.core.log_files import LogPaths, read_lines, remove_lines
from fio_oracle.core.logger import get_logger
from fio_oracle.core.models import PendingTransactionRecord, SubmitRequest, TxStatus, now_ms
from fio_oracle.core.registry import ChainRegistry
from fio_oracle.core.tx import TransactionManager

log = get_logger(__name__)


class PendingTransactionSweeper:
    def __init__(self, tx_manager: TransactionManager, registry: ChainRegistry, paths: Optional[LogPaths] = None):
        self.tx_manager = tx_manager
        self.registry = registry
        self.paths = paths or registry.paths

    async def _load(self, chain_code: str) -> List[PendingTransactionRecord]:
        records = []
        for line in await read_lines(self.paths.pending_transactions(chain_code)):
            try:
                records.append(PendingTransactionRecord.from_line(line))
            except (ValueError, KeyError) as e:
                log.warning("PENDING_TX_BAD_LINE", chain=chain_code, line=line, error=str(e))
        return records

    async def sweep(self, chain_code: str) -> Dict[str, int]:
        """One pass over ``pending-transactions-<chain>.log``.

        Per nonce only the first live entry is looked at: a mined entry is
        removed, a missing or overdue one is replaced with the same nonce and
        a higher gas price.
        """
        stats = {"removed": 0, "replaced": 0, "waiting": 0}
        records = await self._load(chain_code)
        if not records:
            return stats
        nonce_manager = self.registry.nonce_manager(chain_code)
        rpc = nonce_manager.rpc
        latest_confirmed = await nonce_manager.latest_confirmed()

        superseded = {r.original_tx_hash for r in records if r.original_tx_hash}
        drop: Set[str] = set()
        live: List[PendingTransactionRecord] = []
        records.sort(key=lambda r: (r.nonce, r.replacement_attempt, r.timestamp))
        for nonce, group in groupby(records, key=lambda r: r.nonce):
            group = list(group)
            attempts = max(r.replacement_attempt for r in group)
            if nonce < latest_confirmed:
                drop.update(r.tx_hash for r in group)
                log.info("PENDING_TX_NONCE_CONFIRMED", chain=chain_code, nonce=nonce, latest_confirmed=latest_confirmed)
                continue
            if attempts >= settings.MAX_REPLACEMENT_ATTEMPTS:
                drop.update(r.tx_hash for r in group)
                log.error("PENDING_TX_REPLACEMENT_LIMIT_REACHED", chain=chain_code, nonce=nonce, attempts=attempts, hashes=[r.tx_hash for r in group])
                continue
            for r in group:
                if r.tx_hash in superseded:
                    drop.add(r.tx_hash)
                else:
                    live.append(r)

        seen_nonces: Set[int] = set()
        for record in live:
            if record.nonce in seen_nonces:
                continue
            seen_nonces.add(record.nonce)
            try:
                await self._check(chain_code, rpc, record, drop, stats)
            except Exception as e:
                log.error("PENDING_TX_CHECK_FAILED", chain=chain_code, tx_hash=record.tx_hash, nonce=record.nonce, error=str(e))

        if drop:
            stats["removed"] += await remove_lines(
                self.paths.pending_transactions(chain_code), lambda line: line.split(" ", 1)[0] in drop,
            )
        log.info("PENDING_TX_SWEEP_DONE", chain=chain_code, **stats)
        return stats

    async def _check(self, chain_code: str, rpc, record: PendingTransactionRecord, drop: Set[str], stats: Dict[str, int]):
        receipt = await rpc.get_transaction_receipt(record.tx_hash)
        if receipt:
            drop.add(record.tx_hash)
            log.info("PENDING_TX_MINED", chain=chain_code, tx_hash=record.tx_hash, nonce=record.nonce, status=receipt.get("status"))
            return
        try:
            tx = await rpc.get_transaction(record.tx_hash)
        except ProviderError as e:
            log.warning("PENDING_TX_LOOKUP_FAILED", chain=chain_code, tx_hash=record.tx_hash, error=str(e))
            tx = None
        age = (now_ms() - record.timestamp) / 1000
        if tx is not None and age <= settings.MAX_TRANSACTION_AGE:
            stats["waiting"] += 1
            return

        log.warning(
            "PENDING_TX_REPLACING", chain=chain_code, tx_hash=record.tx_hash, nonce=record.nonce,
            found=tx is not None, age=int(age), attempt=record.replacement_attempt + 1,
        )
        outcome = await self.tx_manager.submit(SubmitRequest(
            action=record.action,
            chain_code=record.chain_code,
            asset_type=record.asset_type,
            params=record.contract_action_params,
            nonce=record.nonce,
            is_replacement=True,
            original_tx_hash=record.tx_hash,
            replacement_attempt=record.replacement_attempt + 1,
            original_gas_price=record.gas_price or None,
        ))
        stats["replaced"] += 1
        if outcome.status in (TxStatus.MINED, TxStatus.ALREADY_COMPLETED):
            drop.add(record.tx_hash)

    async def sweep_all(self) -> None:
        for chain_code in self.registry.chain_codes():
            try:
                await self.sweep(chain_code)
            except Exception as e:
                log.error("PENDING_TX_SWEEP_FAILED", chain=chain_code, error=str(e))
