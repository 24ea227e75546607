# /fio_oracle/core/contracts.py
# ABI codec for the wrapped FIO contracts: call data in, decoded events out.
from typing import Any, Dict, List, Optional

from eth_abi import decode, encode
from web3 import Web3

from fio_oracle.abis import ABIS_BY_ASSET_TYPE
from fio_oracle.core.constants import Action, AssetType
from fio_oracle.core.logger import get_logger

log = get_logger(__name__)


def _signature(entry: dict) -> str:
    return f"{entry['name']}({','.join(i['type'] for i in entry['inputs'])})"


def _normalize(abi_type: str, value: Any) -> Any:
    """JSON friendly values: big ints as strings, bytes as hex, checksummed addresses."""
    if abi_type.endswith("]"):
        base = abi_type[: abi_type.rindex("[")]
        return [_normalize(base, v) for v in value]
    if abi_type == "address":
        return Web3.to_checksum_address(value)
    if abi_type.startswith(("uint", "int")):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return value


def _hex_to_bytes(value: str) -> bytes:
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


class ContractCodec:
    """Encodes contract calls and decodes logs for one asset type's ABI."""

    def __init__(self, abi: List[dict]):
        self.abi = abi
        self.functions = {e["name"]: e for e in abi if e.get("type") == "function"}
        self.events_by_topic: Dict[str, dict] = {}
        for entry in abi:
            if entry.get("type") == "event":
                topic = "0x" + bytes(Web3.keccak(text=_signature(entry))).hex()
                self.events_by_topic[topic.lower()] = entry

    @classmethod
    def for_asset_type(cls, asset_type: str) -> "ContractCodec":
        return cls(ABIS_BY_ASSET_TYPE[asset_type])

    def encode_call(self, name: str, *args) -> str:
        entry = self.functions[name]
        selector = bytes(Web3.keccak(text=_signature(entry)))[:4]
        types = [i["type"] for i in entry["inputs"]]
        return "0x" + (selector + encode(types, list(args))).hex()

    def decode_output(self, name: str, data: str) -> tuple:
        types = [o["type"] for o in self.functions[name]["outputs"]]
        return tuple(decode(types, _hex_to_bytes(data)))

    def encode_action(self, action: str, asset_type: str, params: Dict[str, Any]) -> str:
        """Call data for a relay action.

        ``params`` carries ``obtId`` plus ``pubaddress`` and ``amount`` (wrap
        tokens), ``pubaddress`` and ``nftName`` (wrap nfts), or ``tokenId``
        (burn).
        """
        obt_id = str(params["obtId"])
        if action == Action.WRAP and asset_type == AssetType.TOKENS:
            return self.encode_call("wrap", Web3.to_checksum_address(params["pubaddress"]), int(params["amount"]), obt_id)
        if action == Action.WRAP and asset_type == AssetType.NFTS:
            return self.encode_call("wrapnft", Web3.to_checksum_address(params["pubaddress"]), str(params["nftName"]), obt_id)
        if action == Action.BURN:
            return self.encode_call("burnnft", int(params["tokenId"]), obt_id)
        raise ValueError(f"No contract call for {action} {asset_type}")

    def decode_log(self, raw_log: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Decodes an ``eth_getLogs`` entry, None for logs of unknown events."""
        topics = raw_log.get("topics") or []
        if not topics:
            return None
        entry = self.events_by_topic.get(str(topics[0]).lower())
        if entry is None:
            return None

        indexed = [i for i in entry["inputs"] if i.get("indexed")]
        plain = [i for i in entry["inputs"] if not i.get("indexed")]
        values: Dict[str, Any] = {}
        for inp, topic in zip(indexed, topics[1:]):
            if inp["type"] in ("string", "bytes") or inp["type"].endswith("]"):
                values[inp["name"]] = topic  # only the hash is recoverable
            else:
                values[inp["name"]] = _normalize(inp["type"], decode([inp["type"]], _hex_to_bytes(topic))[0])
        data = raw_log.get("data") or "0x"
        if plain:
            decoded = decode([i["type"] for i in plain], _hex_to_bytes(data))
            for inp, value in zip(plain, decoded):
                values[inp["name"]] = _normalize(inp["type"], value)

        return {
            "event": entry["name"],
            "blockNumber": _to_int(raw_log.get("blockNumber")),
            "transactionHash": raw_log.get("transactionHash"),
            "logIndex": _to_int(raw_log.get("logIndex")),
            "returnValues": values,
        }


def _to_int(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)
