# /fio_oracle/services/event_cache.py
# Recent contract events per chain, kept in memory and mirrored to disk.
import asyncio
from typing import Dict, Iterable, List, Optional, Tuple

from fio_oracle.core.config import settings
from fio_oracle.core.constants import EVENT_CACHE_LOCK_KEY
from fio_oracle.core.log_files import (
    LogPaths,
    append_lines,
    read_int,
    read_lines,
    write_int,
    write_text,
    LINE_DELIMITER,
)
from fio_oracle.core.logger import get_logger
from fio_oracle.core.models import CachedEvent, now_ms
from fio_oracle.core.registry import ChainContext, ChainRegistry

log = get_logger(__name__)

CacheKey = Tuple[str, str]


class EventCache:
    """
    Contract events of the last hour for every configured chain and asset type.

    The cache remembers which block span it has scanned. Range queries
    inside that span are answered from memory; anything outside it is read
    from the chain on demand, so callers never talk to ``eth_getLogs``
    themselves.
    """

    def __init__(self, registry: ChainRegistry, paths: Optional[LogPaths] = None, job_lock=None, retention_seconds: Optional[int] = None):
        self.registry = registry
        self.paths = paths or registry.paths
        self.job_lock = job_lock
        self.retention_ms = 1000 * (settings.EVENT_CACHE_RETENTION_SECONDS if retention_seconds is None else retention_seconds)
        self._events: Dict[CacheKey, List[CachedEvent]] = {}
        self._covered: Dict[CacheKey, Tuple[int, int]] = {}

    def _cutoff(self) -> int:
        return now_ms() - self.retention_ms

    async def load(self) -> int:
        """Restores events from disk, dropping entries past the retention window."""
        total = 0
        cutoff = self._cutoff()
        for ctx in self.registry.contexts():
            key = (ctx.chain_code, ctx.asset_type)
            events = [e for e in await self._read_disk(ctx) if e.added_at >= cutoff]
            self._events[key] = events
            total += len(events)
            marker = await read_int(self.paths.event_cache_block_number(*key))
            if marker is not None:
                # Nothing is trusted as scanned until the next refresh extends it.
                self._covered[key] = (marker + 1, marker)
        log.info("EVENT_CACHE_LOADED", events=total)
        return total

    async def _read_disk(self, ctx: ChainContext) -> List[CachedEvent]:
        events = []
        for line in await read_lines(self.paths.event_cache(ctx.chain_code, ctx.asset_type)):
            try:
                events.append(CachedEvent.from_json(line))
            except (ValueError, KeyError, TypeError) as e:
                log.warning("EVENT_CACHE_BAD_LINE", chain=ctx.chain_code, type=ctx.asset_type, error=str(e))
        return events

    async def _fetch(self, ctx: ChainContext, from_block: int, to_block: int) -> List[CachedEvent]:
        if from_block > to_block:
            return []
        raw_logs = await ctx.rpc.get_logs(ctx.contract_address, from_block, to_block)
        stamp = now_ms()
        events = []
        for raw in raw_logs:
            decoded = ctx.codec.decode_log(raw)
            if decoded is None:
                continue
            events.append(CachedEvent(
                event=decoded["event"],
                block_number=decoded["blockNumber"],
                transaction_hash=decoded["transactionHash"],
                log_index=decoded["logIndex"],
                return_values=decoded["returnValues"],
                timestamp=stamp,
                cache_added_at=stamp,
            ))
        return events

    async def refresh(self, chain_code: str, asset_type: str) -> int:
        """Scans blocks after the saved marker. Returns the number of new events."""
        ctx = self.registry.get(chain_code, asset_type)
        key = (ctx.chain_code, ctx.asset_type)
        marker_path = self.paths.event_cache_block_number(*key)
        last = await ctx.rpc.block_number() - ctx.config.blocks_offset
        saved = await read_int(marker_path)
        if saved is None or saved > last:
            await write_int(marker_path, last)
            self._covered[key] = (last + 1, last)
            log.info("EVENT_CACHE_MARKER_RESET", chain=chain_code, type=asset_type, block=last, previous=saved)
            return 0
        from_block = saved + 1
        if from_block > last:
            return 0

        events = await self._fetch(ctx, from_block, last)
        self._events.setdefault(key, []).extend(events)
        await append_lines(self.paths.event_cache(*key), [e.to_json() for e in events])
        await write_int(marker_path, last)
        start, _ = self._covered.get(key, (from_block, saved))
        self._covered[key] = (min(start, from_block), last)
        await self.prune(key)
        log.info("EVENT_CACHE_REFRESHED", chain=chain_code, type=asset_type, from_block=from_block, to_block=last, new_events=len(events))
        return len(events)

    async def refresh_all(self) -> int:
        token = None
        if self.job_lock is not None:
            token = await self.job_lock.acquire(EVENT_CACHE_LOCK_KEY)
            if not token:
                return 0
        total = 0
        try:
            contexts = self.registry.contexts()
            for i, ctx in enumerate(contexts):
                try:
                    total += await self.refresh(ctx.chain_code, ctx.asset_type)
                except Exception as e:
                    log.error("EVENT_CACHE_REFRESH_FAILED", chain=ctx.chain_code, type=ctx.asset_type, error=str(e))
                if i < len(contexts) - 1:
                    await asyncio.sleep(settings.CHAIN_DELAY_SECONDS)
            self.cleanup_stale_entries([(c.chain_code, c.asset_type) for c in contexts])
        finally:
            if self.job_lock is not None:
                await self.job_lock.release(EVENT_CACHE_LOCK_KEY, token)
        return total

    async def prune(self, key: Optional[CacheKey] = None) -> int:
        """Drops events older than the retention window from memory and disk.

        The disk file is filtered on its own, so entries that never made it
        into memory (expired or unreadable at load time) go as well.
        Returns the number of lines removed from disk.
        """
        cutoff = self._cutoff()
        keys = [key] if key else list(dict.fromkeys(
            list(self._events) + [(c.chain_code, c.asset_type) for c in self.registry.contexts()]
        ))
        removed = 0
        for k in keys:
            events = self._events.get(k, [])
            kept = [e for e in events if e.added_at >= cutoff]
            if len(kept) != len(events):
                self._events[k] = kept
                if k in self._covered:
                    # Pruned blocks are no longer answered from memory.
                    newest_pruned = max(e.block_number for e in events if e.added_at < cutoff)
                    start, end = self._covered[k]
                    self._covered[k] = (max(start, newest_pruned + 1), end)
            removed += await self._prune_disk(k, cutoff)
        return removed

    async def _prune_disk(self, key: CacheKey, cutoff: int) -> int:
        path = self.paths.event_cache(*key)
        lines = await read_lines(path)
        kept = []
        for line in lines:
            try:
                if CachedEvent.from_json(line).added_at >= cutoff:
                    kept.append(line)
            except (ValueError, KeyError, TypeError):
                log.warning("EVENT_CACHE_BAD_LINE_DROPPED", chain=key[0], type=key[1], line=line)
        if len(kept) != len(lines):
            await write_text(path, "".join(line + LINE_DELIMITER for line in kept))
        return len(lines) - len(kept)

    def cleanup_stale_entries(self, configured_keys: Iterable[CacheKey]) -> List[CacheKey]:
        configured = set(configured_keys)
        stale = [k for k in self._events if k not in configured]
        for k in stale:
            self._events.pop(k, None)
            self._covered.pop(k, None)
        if stale:
            log.info("EVENT_CACHE_STALE_KEYS_REMOVED", keys=[list(k) for k in stale])
        return stale

    def get_cached_events(
        self,
        chain_code: str,
        asset_type: str,
        event: Optional[str] = None,
        from_ts: Optional[int] = None,
        to_ts: Optional[int] = None,
    ) -> List[CachedEvent]:
        """In-memory events, optionally by name and ``timestamp`` window (ms)."""
        result = []
        for e in self._events.get((chain_code, asset_type), []):
            if event is not None and e.event != event:
                continue
            if from_ts is not None and e.timestamp < from_ts:
                continue
            if to_ts is not None and e.timestamp > to_ts:
                continue
            result.append(e)
        return result

    async def get_all_cached_events(self, chain_code: str, asset_type: str) -> List[CachedEvent]:
        """Everything still on disk, including what a restart left behind."""
        ctx = self.registry.get(chain_code, asset_type)
        return await self._read_disk(ctx)

    async def get_events_in_block_range(
        self, chain_code: str, asset_type: str, event: Optional[str], from_block: int, to_block: int,
    ) -> List[CachedEvent]:
        ctx = self.registry.get(chain_code, asset_type)
        key = (ctx.chain_code, ctx.asset_type)
        covered = self._covered.get(key)
        if covered is None or covered[0] > covered[1]:
            events = await self._fetch(ctx, from_block, to_block)
        else:
            start, end = covered
            events = [
                e for e in self._events.get(key, [])
                if max(from_block, start) <= e.block_number <= min(to_block, end)
            ]
            if from_block < start:
                events += await self._fetch(ctx, from_block, min(to_block, start - 1))
            if to_block > end:
                events += await self._fetch(ctx, max(from_block, end + 1), to_block)
        if event is not None:
            events = [e for e in events if e.event == event]
        return sorted(events, key=lambda e: (e.block_number, e.log_index))
