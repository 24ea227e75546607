# /fio_oracle/core/log_files.py
# Durable, line-oriented state files. Every mutation is either an append or a
# whole-file rewrite, serialized per path.
import asyncio
import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

import aiofiles

from fio_oracle.core.config import settings
from fio_oracle.core.constants import Action

LINE_DELIMITER = "\r\n"

_path_locks: Dict[str, asyncio.Lock] = {}


def _lock_for(path) -> asyncio.Lock:
    key = str(path)
    if key not in _path_locks:
        _path_locks[key] = asyncio.Lock()
    return _path_locks[key]


class LogPaths:
    """File layout under ``<base_dir>/logs-<mode>/``."""

    def __init__(self, base_dir: str, mode: str):
        self.root = Path(base_dir) / f"logs-{mode}"

    def _file(self, name: str) -> Path:
        return self.root / name

    def chain(self, chain_code: str, asset_type: str) -> Path:
        return self._file(f"{asset_type}-{chain_code}.log")

    def block_number(self, chain_code: str, asset_type: str) -> Path:
        return self._file(f"block-number-{asset_type}-{chain_code}.log")

    def nonce(self, chain_code: str) -> Path:
        return self._file(f"nonce-{chain_code}.log")

    def pending_transactions(self, chain_code: str) -> Path:
        return self._file(f"pending-transactions-{chain_code}.log")

    def queue(self, action: str, chain_code: str, asset_type: str) -> Path:
        if action == Action.BURN:
            return self._file(f"burnnfts-transactions-queue-{chain_code}.log")
        return self._file(f"{action}-{asset_type}-transactions-queue-{chain_code}.log")

    def error_queue(self, action: str, chain_code: str, asset_type: str) -> Path:
        if action == Action.BURN:
            return self._file(f"burnnfts-transactions-error-queue-{chain_code}.log")
        return self._file(f"{action}-{asset_type}-transactions-error-queue-{chain_code}.log")

    def event_cache(self, chain_code: str, asset_type: str) -> Path:
        return self._file(f"event-cache-{asset_type}-{chain_code}.log")

    def event_cache_block_number(self, chain_code: str, asset_type: str) -> Path:
        return self._file(f"event-cache-block-number-{asset_type}-{chain_code}.log")

    def fio(self) -> Path:
        return self._file("FIO.log")

    def fio_oracle_item_id(self) -> Path:
        return self._file("fioOracleItemId.log")

    def missing_actions(self) -> Path:
        return self._file("missing-actions.log")

    def errors(self) -> Path:
        return self._file("Error.log")

    def for_chain(self, chain_code: str, asset_type: str) -> List[Path]:
        paths = [
            self.chain(chain_code, asset_type),
            self.block_number(chain_code, asset_type),
            self.nonce(chain_code),
            self.pending_transactions(chain_code),
            self.event_cache(chain_code, asset_type),
            self.event_cache_block_number(chain_code, asset_type),
        ]
        for action in (Action.WRAP, Action.UNWRAP):
            paths.append(self.queue(action, chain_code, asset_type))
            paths.append(self.error_queue(action, chain_code, asset_type))
        if asset_type == "nfts":
            paths.append(self.queue(Action.BURN, chain_code, asset_type))
            paths.append(self.error_queue(Action.BURN, chain_code, asset_type))
        return paths


def get_log_paths() -> LogPaths:
    return LogPaths(settings.SESSION_DIR, settings.MODE)


async def prepare_log_file(path) -> None:
    """Creates the file (and its directory) if missing, never truncates."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if not path.exists():
        async with aiofiles.open(path, "a", encoding="utf-8"):
            pass


async def read_text(path) -> str:
    try:
        async with aiofiles.open(path, "r", encoding="utf-8", newline="") as f:
            return await f.read()
    except FileNotFoundError:
        return ""


async def read_lines(path) -> List[str]:
    return [line for line in (await read_text(path)).splitlines() if line.strip()]


async def _write_unlocked(path, content: str) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    tmp = f"{path}.tmp"
    async with aiofiles.open(tmp, "w", encoding="utf-8", newline="") as f:
        await f.write(content)
    os.replace(tmp, path)


async def write_text(path, content: str) -> None:
    async with _lock_for(path):
        await _write_unlocked(path, content)


async def append_line(path, line: str) -> None:
    async with _lock_for(path):
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(path, "a", encoding="utf-8", newline="") as f:
            await f.write(line.rstrip("\r\n") + LINE_DELIMITER)


async def append_lines(path, lines: List[str]) -> None:
    if not lines:
        return
    async with _lock_for(path):
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(path, "a", encoding="utf-8", newline="") as f:
            await f.write("".join(line.rstrip("\r\n") + LINE_DELIMITER for line in lines))


async def add_log_message(path, message, add_timestamp: bool = True) -> None:
    """Appends a human readable entry; dict messages are stored as JSON."""
    text = message if isinstance(message, str) else json.dumps(message, default=str, separators=(",", ":"))
    if add_timestamp:
        text = f"{datetime.now(timezone.utc).isoformat()} {text}"
    await append_line(path, text)


async def read_head_line(path) -> str:
    """The oldest queued line, '' when the queue is empty."""
    lines = await read_lines(path)
    return lines[0].strip() if lines else ""


async def pop_head_line(path) -> int:
    """Drops the oldest line and returns how many remain."""
    async with _lock_for(path):
        lines = [line for line in (await read_text(path)).splitlines() if line.strip()]
        remaining = lines[1:]
        await _write_unlocked(path, "".join(line + LINE_DELIMITER for line in remaining))
        return len(remaining)


async def remove_lines(path, predicate: Callable[[str], bool]) -> int:
    async with _lock_for(path):
        lines = [line for line in (await read_text(path)).splitlines() if line.strip()]
        kept = [line for line in lines if not predicate(line)]
        if len(kept) != len(lines):
            await _write_unlocked(path, "".join(line + LINE_DELIMITER for line in kept))
        return len(lines) - len(kept)


async def read_int(path) -> Optional[int]:
    text = (await read_text(path)).strip()
    if not text or not text.lstrip("-").isdigit():
        return None
    return int(text)


async def write_int(path, value: int) -> None:
    await write_text(path, str(int(value)))
