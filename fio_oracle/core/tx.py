# /fio_oracle/core/tx.py
# Builds, signs and broadcasts relay transactions; tracks them until mined.
import asyncio
import json
from typing import Any, Dict, Optional

from eth_account import Account

from fio_oracle.core.config import settings
from fio_oracle.core.constants import MAX_RETRY_TRANSACTION_ATTEMPTS, action_name
from fio_oracle.core.errors import (
    ErrorKind,
    OracleNotRegistered,
    ProviderError,
    TransactionFailed,
    classify_error,
)
from fio_oracle.core.gas import GasPolicy
from fio_oracle.core.log_files import LogPaths, add_log_message, append_line, get_log_paths, remove_lines
from fio_oracle.core.logger import (
    TX_ALREADY_COMPLETED,
    TX_FAILED,
    TX_REPLACED,
    TX_SUBMITTED,
    get_logger,
)
from fio_oracle.core.models import PendingTransactionRecord, SubmitRequest, TxOutcome, TxStatus
from fio_oracle.core.registry import ChainContext, ChainRegistry

log = get_logger(__name__)


def _hex(value) -> str:
    if isinstance(value, str):
        return value if value.startswith("0x") else "0x" + value
    return "0x" + bytes(value).hex()


class TransactionManager:
    """Manages the lifecycle of relay transactions on the EVM chains."""

    def __init__(self, registry: ChainRegistry, gas_policy: GasPolicy, private_key: Optional[str] = None, paths: Optional[LogPaths] = None):
        self.registry = registry
        self.gas_policy = gas_policy
        if private_key is None and settings.ORACLE_PRIVATE_KEY:
            private_key = settings.ORACLE_PRIVATE_KEY.get_secret_value()
        self._private_key = private_key
        self.paths = paths or registry.paths or get_log_paths()
        self._chain_locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, chain_code: str) -> asyncio.Lock:
        if chain_code not in self._chain_locks:
            self._chain_locks[chain_code] = asyncio.Lock()
        return self._chain_locks[chain_code]

    # --- read-only contract calls ---

    async def get_oracles(self, ctx: ChainContext) -> list:
        data = ctx.codec.encode_call("getOracles")
        result = await ctx.rpc.call({"to": ctx.contract_address, "data": data})
        return list(ctx.codec.decode_output("getOracles", result)[0])

    async def ensure_oracle_registered(self, chain_code: str, asset_type: str):
        ctx = self.registry.get(chain_code, asset_type)
        oracles = [o.lower() for o in await self.get_oracles(ctx)]
        if ctx.address.lower() not in oracles:
            log.error("ORACLE_NOT_REGISTERED", chain=chain_code, type=asset_type, address=ctx.address)
            raise OracleNotRegistered(f"{ctx.address} is not a registered oracle on {chain_code} {asset_type}")

    async def get_approval_count(self, ctx: ChainContext, obt_id: str) -> int:
        data = ctx.codec.encode_call("getApproval", obt_id)
        result = await ctx.rpc.call({"to": ctx.contract_address, "data": data})
        return int(ctx.codec.decode_output("getApproval", result)[0])

    async def simulate(self, request: SubmitRequest) -> None:
        """Dry-runs the call from our address; raises whatever the node reports."""
        ctx = self.registry.get(request.chain_code, request.asset_type)
        data = ctx.codec.encode_action(request.action, request.asset_type, request.params)
        await ctx.rpc.call({"from": ctx.address, "to": ctx.contract_address, "data": data})

    # --- submission ---

    async def submit(self, request: SubmitRequest) -> TxOutcome:
        ctx = self.registry.get(request.chain_code, request.asset_type)
        name = action_name(request.action, request.asset_type)
        data = ctx.codec.encode_action(request.action, request.asset_type, request.params)

        try:
            await ctx.rpc.call({"from": ctx.address, "to": ctx.contract_address, "data": data})
        except Exception as e:
            if classify_error(e) is ErrorKind.ALREADY_COMPLETED:
                return self._already_completed(ctx, name, request, e)
            log.warning("TX_PREFLIGHT_FAILED", chain=ctx.chain_code, action=name, obt_id=request.params.get("obtId"), error=str(e))

        retry_count = 0
        while True:
            try:
                tx_hash, nonce, gas_price = await self._broadcast(ctx, request, data, retry_count)
                break
            except Exception as e:
                kind = classify_error(e)
                if kind is ErrorKind.ALREADY_COMPLETED:
                    return self._already_completed(ctx, name, request, e)
                if kind is ErrorKind.NONCE_CONFLICT and request.nonce is not None:
                    # A replacement whose nonce is already used: the original (or
                    # another replacement) made it in.
                    log.info("REPLACEMENT_NONCE_ALREADY_USED", chain=ctx.chain_code, nonce=request.nonce)
                    return TxOutcome(status=TxStatus.ALREADY_COMPLETED, nonce=request.nonce)
                if kind in (ErrorKind.NONCE_CONFLICT, ErrorKind.UNDERPRICED) and retry_count < MAX_RETRY_TRANSACTION_ATTEMPTS:
                    retry_count += 1
                    log.warning("TX_RETRYING", chain=ctx.chain_code, action=name, kind=kind.value, retry_count=retry_count, error=str(e))
                    continue
                TX_FAILED.labels(ctx.chain_code, name).inc()
                log.error("TX_SUBMIT_FAILED", chain=ctx.chain_code, action=name, kind=kind.value, params=request.params, error=str(e))
                raise TransactionFailed(f"{ctx.chain_code} {name}: {e}") from e

        TX_SUBMITTED.labels(ctx.chain_code, name).inc()
        if request.is_replacement:
            TX_REPLACED.labels(ctx.chain_code).inc()
        record = PendingTransactionRecord(
            tx_hash=tx_hash,
            original_tx_hash=request.original_tx_hash,
            chain_code=ctx.chain_code,
            action=request.action,
            asset_type=request.asset_type,
            contract_action_params=request.params,
            nonce=nonce,
            gas_price=gas_price,
            is_replacement=request.is_replacement,
            replacement_attempt=request.replacement_attempt,
        )
        await add_log_message(
            self.paths.chain(ctx.chain_code, ctx.asset_type),
            f"{ctx.chain_code} {ctx.config.contract_type_name} "
            f"{name} submit {json.dumps({'txHash': tx_hash, 'nonce': nonce, 'gasPrice': gas_price, 'params': request.params}, default=str)}",
        )
        await append_line(self.paths.pending_transactions(ctx.chain_code), record.to_line())
        log.info("TX_SUBMITTED", chain=ctx.chain_code, action=name, tx_hash=tx_hash, nonce=nonce, gas_price=gas_price, is_replacement=request.is_replacement)

        return await self.wait_for_receipt(ctx, name, tx_hash, nonce, data)

    async def _broadcast(self, ctx: ChainContext, request: SubmitRequest, data: str, retry_count: int):
        if not self._private_key:
            raise TransactionFailed("ORACLE_PRIVATE_KEY is not configured")
        async with self._lock_for(ctx.chain_code):
            nonce = request.nonce if request.nonce is not None else await ctx.nonce_manager.resolve()
            gas_price = await self.gas_policy.get_gas_price(
                ctx.config, retry_count=retry_count, is_replacement=request.is_replacement, floor=request.original_gas_price,
            )
            await self.gas_policy.check_balance(ctx.rpc, ctx.address, ctx.config, gas_price)
            tx = {
                "to": ctx.contract_address,
                "data": data,
                "value": 0,
                "gas": ctx.config.gas_limit,
                "gasPrice": gas_price,
                "nonce": nonce,
                "chainId": ctx.config.chain_id,
            }
            signed = Account.sign_transaction(tx, self._private_key)
            raw = getattr(signed, "raw_transaction", None) or signed.rawTransaction
            try:
                tx_hash = await ctx.rpc.send_raw_transaction(_hex(raw))
            except Exception as e:
                if request.nonce is None and classify_error(e) is ErrorKind.NONCE_CONFLICT:
                    # Mark the nonce as taken so the next resolve moves past it.
                    await ctx.nonce_manager.commit(nonce)
                raise
            await ctx.nonce_manager.commit(nonce)
            tx_hash = _hex(tx_hash or signed.hash)
            return tx_hash, nonce, gas_price

    def _already_completed(self, ctx: ChainContext, name: str, request: SubmitRequest, error: Exception) -> TxOutcome:
        TX_ALREADY_COMPLETED.labels(ctx.chain_code, name).inc()
        log.info("TX_ALREADY_COMPLETED", chain=ctx.chain_code, action=name, obt_id=request.params.get("obtId"), reason=str(error))
        return TxOutcome(status=TxStatus.ALREADY_COMPLETED, nonce=request.nonce)

    # --- receipts ---

    async def wait_for_receipt(self, ctx: ChainContext, name: str, tx_hash: str, nonce: int, data: str) -> TxOutcome:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + settings.RECEIPT_TIMEOUT
        while True:
            try:
                receipt = await ctx.rpc.get_transaction_receipt(tx_hash)
            except ProviderError as e:
                log.warning("TX_RECEIPT_LOOKUP_FAILED", chain=ctx.chain_code, tx_hash=tx_hash, error=str(e))
                receipt = None
            if receipt:
                return await self._settle(ctx, name, tx_hash, nonce, data, receipt)
            if loop.time() >= deadline:
                log.warning("TX_RECEIPT_TIMEOUT", chain=ctx.chain_code, action=name, tx_hash=tx_hash, nonce=nonce)
                return TxOutcome(status=TxStatus.PENDING, tx_hash=tx_hash, nonce=nonce)
            await asyncio.sleep(settings.RECEIPT_POLL_INTERVAL)

    async def _settle(self, ctx: ChainContext, name: str, tx_hash: str, nonce: int, data: str, receipt: Dict[str, Any]) -> TxOutcome:
        await self.remove_pending(ctx.chain_code, tx_hash)
        if _receipt_status(receipt) == 1:
            log.info("TX_MINED", chain=ctx.chain_code, action=name, tx_hash=tx_hash, block=receipt.get("blockNumber"))
            return TxOutcome(status=TxStatus.MINED, tx_hash=tx_hash, nonce=nonce, receipt=receipt)

        reason = await self._revert_reason(ctx, data, receipt)
        if reason is not None and classify_error(reason) is ErrorKind.ALREADY_COMPLETED:
            TX_ALREADY_COMPLETED.labels(ctx.chain_code, name).inc()
            log.info("TX_REVERTED_ALREADY_COMPLETED", chain=ctx.chain_code, action=name, tx_hash=tx_hash, reason=str(reason))
            return TxOutcome(status=TxStatus.ALREADY_COMPLETED, tx_hash=tx_hash, nonce=nonce, receipt=receipt)
        TX_FAILED.labels(ctx.chain_code, name).inc()
        log.error("TX_REVERTED", chain=ctx.chain_code, action=name, tx_hash=tx_hash, reason=str(reason))
        raise TransactionFailed(f"{ctx.chain_code} {name} reverted in {tx_hash}: {reason}")

    async def _revert_reason(self, ctx: ChainContext, data: str, receipt: Dict[str, Any]) -> Optional[Exception]:
        """Replays the call at the receipt's block; the raised error carries the reason."""
        block = receipt.get("blockNumber")
        if isinstance(block, str):
            block = int(block, 16)
        try:
            await ctx.rpc.call({"from": ctx.address, "to": ctx.contract_address, "data": data}, block if block is not None else "latest")
        except Exception as e:
            return e
        return None

    async def remove_pending(self, chain_code: str, tx_hash: str) -> int:
        prefix = f"{tx_hash} "
        return await remove_lines(self.paths.pending_transactions(chain_code), lambda line: line.startswith(prefix))

    async def close(self):
        await self.registry.close()


def _receipt_status(receipt: Dict[str, Any]) -> int:
    status = receipt.get("status", 1)
    if isinstance(status, str):
        return int(status, 16) if status.startswith("0x") else int(status)
    return int(status)
