# /fio_oracle/core/rpc.py
# Multi-provider JSON-RPC client with ordered fallback and block-range chunking.
import asyncio
import itertools
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from fio_oracle.core.config import ChainConfig, ProviderDescriptor
from fio_oracle.core.errors import ProviderError, RANGE_ERROR_MARKERS, is_range_error
from fio_oracle.core.logger import get_logger, RPC_FALLBACKS
from fio_oracle.core.request_queue import RATE_LIMIT_CODES, RequestQueue

log = get_logger(__name__)

GENERAL = "general"
GET_LOGS = "get_logs"

_ids = itertools.count(1)


def split_block_range(from_block: int, to_block: int, cap: int) -> List[Tuple[int, int]]:
    """Contiguous inclusive windows, each at most ``cap`` blocks, covering [from, to]."""
    if cap < 1:
        raise ValueError("Block range cap must be at least 1")
    windows = []
    start = from_block
    while start <= to_block:
        end = min(to_block, start + cap - 1)
        windows.append((start, end))
        start = end + 1
    return windows


def _error_from_payload(provider: str, error: Dict[str, Any], status: int | None = None) -> ProviderError:
    message = str(error.get("message") or error)
    code = error.get("code")
    lowered = message.lower()
    rate_limited = code in RATE_LIMIT_CODES or "rate limit" in lowered or "too many requests" in lowered
    return ProviderError(
        message,
        provider=provider,
        status=status,
        code=code,
        data=error.get("data"),
        rate_limited=rate_limited,
        # Rate limits get one more chance on the next provider once the
        # throttle queue gives up; business errors never do.
        retryable=rate_limited,
        range_exceeded=any(m in lowered for m in RANGE_ERROR_MARKERS),
    )


class JsonRpcProvider:
    """One HTTP JSON-RPC endpoint."""

    def __init__(self, descriptor: ProviderDescriptor, session: Optional[aiohttp.ClientSession] = None):
        self.descriptor = descriptor
        self.name = descriptor.name
        self._session = session

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def request(self, method: str, params: list) -> Any:
        body = {"jsonrpc": "2.0", "id": next(_ids), "method": method, "params": params}
        timeout = aiohttp.ClientTimeout(total=self.descriptor.timeout)
        try:
            async with self._get_session().post(self.descriptor.url, json=body, timeout=timeout) as resp:
                status = resp.status
                if status == 429:
                    raise ProviderError("Too Many Requests", provider=self.name, status=status, rate_limited=True, retryable=True)
                if status in (401, 403):
                    raise ProviderError(f"HTTP {status} unauthorized", provider=self.name, status=status, auth_failure=True, retryable=True)
                if status >= 500:
                    raise ProviderError(f"HTTP {status}", provider=self.name, status=status, retryable=True)
                try:
                    payload = await resp.json(content_type=None)
                except ValueError:
                    text = await resp.text()
                    raise ProviderError(
                        f"HTTP {status}: {text[:200]}", provider=self.name, status=status,
                        range_exceeded=any(m in text.lower() for m in RANGE_ERROR_MARKERS),
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ProviderError(f"Network error: {e!r}", provider=self.name, retryable=True) from e

        if isinstance(payload, dict) and payload.get("error"):
            error = payload["error"]
            if not isinstance(error, dict):
                error = {"message": str(error)}
            raise _error_from_payload(self.name, error, status)
        if status >= 400:
            raise ProviderError(f"HTTP {status}", provider=self.name, status=status)
        return payload.get("result") if isinstance(payload, dict) else payload

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()


class ChainRpcClient:
    """All providers of one chain behind a single request interface.

    Retryable failures (network, timeout, 5xx, auth, exhausted rate limit)
    advance to the next provider. Business errors surface immediately: a
    second provider cannot fix them and may double submit.
    """

    def __init__(
        self,
        chain: ChainConfig,
        queue: Optional[RequestQueue] = None,
        providers: Optional[List[Any]] = None,
    ):
        self.chain = chain
        self.chain_code = chain.chain_code
        self.queue = queue
        if providers is None:
            providers = [JsonRpcProvider(d) for d in chain.providers]
        self.providers = providers

    def ordered(self, call_class: str = GENERAL) -> list:
        if call_class == GET_LOGS:
            eligible = [p for p in self.providers if p.descriptor.get_logs_priority is not None]
            return sorted(eligible, key=lambda p: p.descriptor.get_logs_priority)
        return sorted(self.providers, key=lambda p: p.descriptor.priority)

    def cap_for(self, provider=None) -> int:
        if provider is not None and provider.descriptor.blocks_range_limit:
            return provider.descriptor.blocks_range_limit
        return self.chain.blocks_range_limit

    def smallest_safe_span(self) -> int:
        caps = [p.descriptor.blocks_range_limit for p in self.providers if p.descriptor.blocks_range_limit]
        return min(caps + [self.chain.blocks_range_limit])

    async def _dispatch(self, provider, method: str, params: list, context: Dict[str, Any]):
        if self.queue is None:
            return await provider.request(method, params)
        return await self.queue.enqueue(
            lambda: provider.request(method, params),
            {"chain": self.chain_code, "provider": provider.name, "method": method, **context},
        )

    async def request(self, method: str, params: Optional[list] = None, *, call_class: str = GENERAL, **context) -> Any:
        providers = self.ordered(call_class)
        if not providers:
            raise ProviderError(f"{self.chain_code}: no provider configured for {call_class} calls")
        last_error: Optional[ProviderError] = None
        for provider in providers:
            try:
                return await self._dispatch(provider, method, params or [], context)
            except ProviderError as e:
                if not e.retryable:
                    raise
                last_error = e
                RPC_FALLBACKS.labels(self.chain_code).inc()
                log.warning(
                    "RPC_PROVIDER_FALLBACK",
                    chain=self.chain_code, provider=provider.name, method=method, error=str(e),
                )
        raise last_error

    # --- block ranges / logs ---

    def split_range_by_provider(self, from_block: int, to_block: int, provider=None) -> List[Tuple[int, int]]:
        if provider is None:
            ordered = self.ordered(GET_LOGS)
            provider = ordered[0] if ordered else None
        return split_block_range(from_block, to_block, self.cap_for(provider))

    async def get_logs(self, address: str, from_block: int, to_block: int, topics: Optional[list] = None) -> List[dict]:
        """All logs of ``address`` in [from_block, to_block], fetched window by window."""
        result: List[dict] = []
        for start, end in self.split_range_by_provider(from_block, to_block):
            result.extend(await self._get_logs_window(address, start, end, topics))
        return result

    async def _get_logs_window(self, address: str, start: int, end: int, topics: Optional[list]) -> List[dict]:
        flt: Dict[str, Any] = {"address": address, "fromBlock": hex(start), "toBlock": hex(end)}
        if topics:
            flt["topics"] = topics
        try:
            return await self.request("eth_getLogs", [flt], call_class=GET_LOGS, from_block=start, to_block=end) or []
        except ProviderError as e:
            if not is_range_error(e):
                raise
            width = end - start + 1
            span = self.smallest_safe_span()
            if width <= span:
                span = width // 2
            if span < 1:
                raise
            log.warning("GET_LOGS_RANGE_RESPLIT", chain=self.chain_code, from_block=start, to_block=end, span=span, error=str(e))
            logs: List[dict] = []
            for s, t in split_block_range(start, end, span):
                logs.extend(await self._get_logs_window(address, s, t, topics))
            return logs

    # --- convenience calls ---

    async def block_number(self) -> int:
        return int(await self.request("eth_blockNumber"), 16)

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        return int(await self.request("eth_getTransactionCount", [address, block]), 16)

    async def gas_price(self) -> int:
        return int(await self.request("eth_gasPrice"), 16)

    async def get_balance(self, address: str) -> int:
        return int(await self.request("eth_getBalance", [address, "latest"]), 16)

    async def send_raw_transaction(self, raw_tx: str) -> str:
        return await self.request("eth_sendRawTransaction", [raw_tx])

    async def get_transaction(self, tx_hash: str) -> Optional[dict]:
        return await self.request("eth_getTransactionByHash", [tx_hash])

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        return await self.request("eth_getTransactionReceipt", [tx_hash])

    async def get_block(self, number: int | str = "latest") -> Optional[dict]:
        tag = hex(number) if isinstance(number, int) else number
        return await self.request("eth_getBlockByNumber", [tag, False])

    async def call(self, tx: Dict[str, Any], block: int | str = "latest") -> str:
        tag = hex(block) if isinstance(block, int) else block
        return await self.request("eth_call", [tx, tag])

    async def close(self):
        for provider in self.providers:
            close = getattr(provider, "close", None)
            if close is not None:
                await close()
