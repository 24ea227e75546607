# /fio_oracle/core/nonce_manager.py

import os, fcntl
from pathlib import Path
from typing import Optional

from fio_oracle.core.logger import get_logger

log = get_logger(__name__)


class NonceManager:
    """Durable per-chain nonce.

    The file holds the LAST nonce this process issued. The next nonce is
    ``max(last + 1, chain pending count)``: a lagging provider can
    under-report the pending count, so the chain is never trusted alone.
    The value is persisted after the broadcast is accepted (use, then
    persist).
    """

    def __init__(self, rpc, address: str, path):
        self.rpc = rpc
        self.address = address
        self.path = Path(path)
        self._fd = None
        self.last_issued: Optional[int] = None

    async def initialize(self):
        if self._fd is not None:
            return self.last_issued
        os.makedirs(self.path.parent, exist_ok=True)
        self._fd = open(self.path, "a+")
        fcntl.flock(self._fd, fcntl.LOCK_EX)
        self._fd.seek(0)
        data = self._fd.read().strip()
        if data.isdigit():
            self.last_issued = int(data)
            log.info("NONCE_LOADED", path=str(self.path), nonce=self.last_issued)
        else:
            log.info("NONCE_FILE_EMPTY", path=str(self.path))
        return self.last_issued

    async def resolve(self) -> int:
        await self.initialize()
        chain_pending = await self.rpc.get_transaction_count(self.address, "pending")
        if self.last_issued is None:
            nonce = chain_pending
        else:
            nonce = max(self.last_issued + 1, chain_pending)
        log.info("NONCE_RESOLVED", nonce=nonce, persisted=self.last_issued, chain_pending=chain_pending)
        return nonce

    async def commit(self, nonce: int):
        """Records ``nonce`` as issued. Lower values never move the counter back."""
        await self.initialize()
        if self.last_issued is not None and nonce <= self.last_issued:
            return
        self.last_issued = nonce
        await self._write()
        log.debug("NONCE_COMMITTED", nonce=nonce)

    async def latest_confirmed(self) -> int:
        return await self.rpc.get_transaction_count(self.address, "latest")

    async def _write(self):
        self._fd.seek(0)
        self._fd.truncate()
        self._fd.write(str(self.last_issued))
        self._fd.flush()

    def close(self):
        if self._fd:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
            self._fd.close()
            self._fd = None
            log.info("NONCE_LOCK_RELEASED", path=str(self.path))
