# /fio_oracle/core/registry.py
# Per-chain collaborators, built once at startup and looked up by key.
from typing import Callable, Dict, List, Optional, Tuple

from fio_oracle.core.config import ChainConfig
from fio_oracle.core.contracts import ContractCodec
from fio_oracle.core.log_files import LogPaths, get_log_paths
from fio_oracle.core.logger import get_logger
from fio_oracle.core.nonce_manager import NonceManager
from fio_oracle.core.request_queue import RequestQueue
from fio_oracle.core.rpc import ChainRpcClient

log = get_logger(__name__)

RegistryKey = Tuple[str, str, str]


class ChainContext:
    """Everything a pipeline needs to talk to one contract on one chain."""

    def __init__(self, config: ChainConfig, rpc, codec: ContractCodec, nonce_manager: NonceManager, address: str):
        self.config = config
        self.rpc = rpc
        self.codec = codec
        self.nonce_manager = nonce_manager
        self.address = address

    @property
    def chain_code(self) -> str:
        return self.config.chain_code

    @property
    def asset_type(self) -> str:
        return self.config.asset_type

    @property
    def contract_address(self) -> str:
        return self.config.contract_address

    @property
    def key(self) -> RegistryKey:
        return (self.chain_code, self.asset_type, self.contract_address.lower())


class ChainRegistry:
    """Contexts keyed by ``(chain_code, asset_type, contract_address)``.

    Contracts of the same chain share one nonce manager: they are signed by
    the same account, so their nonces come from one sequence.
    """

    def __init__(
        self,
        chains: List[ChainConfig],
        address: str,
        queue: Optional[RequestQueue] = None,
        paths: Optional[LogPaths] = None,
        rpc_factory: Optional[Callable[[ChainConfig], object]] = None,
    ):
        self.address = address
        self.paths = paths or get_log_paths()
        self._contexts: Dict[RegistryKey, ChainContext] = {}
        self._nonce_managers: Dict[str, NonceManager] = {}
        rpc_factory = rpc_factory or (lambda cfg: ChainRpcClient(cfg, queue=queue))
        for cfg in chains:
            rpc = rpc_factory(cfg)
            nonce_manager = self._nonce_managers.get(cfg.chain_code)
            if nonce_manager is None:
                nonce_manager = NonceManager(rpc, address, self.paths.nonce(cfg.chain_code))
                self._nonce_managers[cfg.chain_code] = nonce_manager
            ctx = ChainContext(cfg, rpc, ContractCodec.for_asset_type(cfg.asset_type), nonce_manager, address)
            if ctx.key in self._contexts:
                raise ValueError(f"Duplicate chain configuration: {ctx.key}")
            self._contexts[ctx.key] = ctx
        log.info("CHAIN_REGISTRY_READY", contexts=[list(k) for k in self._contexts])

    def get(self, chain_code: str, asset_type: str, contract_address: Optional[str] = None) -> ChainContext:
        for (code, kind, address), ctx in self._contexts.items():
            if code.upper() != chain_code.upper() or kind != asset_type:
                continue
            if contract_address is None or address == contract_address.lower():
                return ctx
        raise KeyError(f"No configuration for {chain_code} {asset_type}")

    def find(self, chain_code: str, asset_type: str) -> Optional[ChainContext]:
        try:
            return self.get(chain_code, asset_type)
        except KeyError:
            return None

    def contexts(self, asset_type: Optional[str] = None) -> List[ChainContext]:
        return [c for c in self._contexts.values() if asset_type is None or c.asset_type == asset_type]

    def chain_codes(self) -> List[str]:
        return list(dict.fromkeys(c.chain_code for c in self._contexts.values()))

    def rpc_clients(self) -> Dict[str, object]:
        """One client per chain code, used for chain-wide calls like gas price."""
        clients: Dict[str, object] = {}
        for ctx in self._contexts.values():
            clients.setdefault(ctx.chain_code, ctx.rpc)
        return clients

    def nonce_manager(self, chain_code: str) -> NonceManager:
        return self._nonce_managers[chain_code]

    async def close(self):
        for nonce_manager in self._nonce_managers.values():
            nonce_manager.close()
        for ctx in self._contexts.values():
            close = getattr(ctx.rpc, "close", None)
            if close is not None:
                await close()
