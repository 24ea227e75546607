# /fio_oracle/core/models.py
import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


def now_ms() -> int:
    return int(time.time() * 1000)


def to_seconds(value: Any) -> int:
    """Ledger timestamps arrive as seconds, milliseconds or ISO strings."""
    if value is None or value == "":
        return 0
    if isinstance(value, str) and not value.strip().isdigit():
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp())
    number = int(value)
    return number // 1000 if number > 10**12 else number


def split_line(line: str) -> tuple[str, str]:
    """Splits ``"<id> <json>"`` at the first space only."""
    key, sep, rest = line.strip().partition(" ")
    if not sep or not key:
        raise ValueError(f"Malformed log line: {line!r}")
    return key, rest


class QueueItem(BaseModel):
    """One relay action waiting in a queue file."""
    obt_id: str
    chain_code: str
    action: str
    asset_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        frozen = True

    @classmethod
    def from_line(cls, line: str, *, chain_code: str, action: str, asset_type: str) -> "QueueItem":
        obt_id, raw = split_line(line)
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise ValueError(f"Queue payload is not an object: {raw!r}")
        return cls(obt_id=obt_id, chain_code=chain_code, action=action, asset_type=asset_type, payload=payload)

    def to_line(self) -> str:
        return f"{self.obt_id} {json.dumps(self.payload, separators=(',', ':'))}"


class PendingTransactionRecord(BaseModel):
    tx_hash: str
    original_tx_hash: Optional[str] = None
    chain_code: str
    action: str
    asset_type: str
    contract_action_params: Dict[str, Any] = Field(default_factory=dict)
    nonce: int
    gas_price: int = 0
    timestamp: int = Field(default_factory=now_ms)
    is_replacement: bool = False
    replacement_attempt: int = 0

    class Config:
        frozen = True

    def to_line(self) -> str:
        data = {
            "action": self.action,
            "type": self.asset_type,
            "chainCode": self.chain_code,
            "contractActionParams": self.contract_action_params,
            "txNonce": self.nonce,
            "gasPrice": self.gas_price,
            "timestamp": self.timestamp,
            "isReplaceTx": self.is_replacement,
            "replacementAttempt": self.replacement_attempt,
        }
        if self.original_tx_hash:
            data["originalTxHash"] = self.original_tx_hash
        return f"{self.tx_hash} {json.dumps(data, separators=(',', ':'))}"

    @classmethod
    def from_line(cls, line: str) -> "PendingTransactionRecord":
        tx_hash, raw = split_line(line)
        data = json.loads(raw)
        return cls(
            tx_hash=tx_hash,
            original_tx_hash=data.get("originalTxHash"),
            chain_code=data["chainCode"],
            action=data["action"],
            asset_type=data["type"],
            contract_action_params=data.get("contractActionParams") or {},
            nonce=int(data["txNonce"]),
            gas_price=int(data.get("gasPrice") or 0),
            timestamp=int(data.get("timestamp") or 0),
            is_replacement=bool(data.get("isReplaceTx")),
            replacement_attempt=int(data.get("replacementAttempt") or 0),
        )


class CachedEvent(BaseModel):
    event: str
    block_number: int
    transaction_hash: str
    log_index: int = 0
    return_values: Dict[str, Any] = Field(default_factory=dict)
    timestamp: int = Field(default_factory=now_ms)
    cache_added_at: int = Field(default_factory=now_ms)

    class Config:
        frozen = True

    def to_json(self) -> str:
        return json.dumps({
            "event": self.event,
            "blockNumber": self.block_number,
            "transactionHash": self.transaction_hash,
            "logIndex": self.log_index,
            "returnValues": self.return_values,
            "timestamp": self.timestamp,
            "cacheAddedAt": self.cache_added_at,
        }, separators=(",", ":"), default=str)

    @classmethod
    def from_json(cls, raw: str) -> "CachedEvent":
        data = json.loads(raw)
        return cls(
            event=data["event"],
            block_number=int(data["blockNumber"]),
            transaction_hash=data["transactionHash"],
            log_index=int(data.get("logIndex") or 0),
            return_values=data.get("returnValues") or {},
            timestamp=int(data.get("timestamp") or 0),
            cache_added_at=int(data.get("cacheAddedAt") or data.get("timestamp") or 0),
        )

    @property
    def added_at(self) -> int:
        return self.cache_added_at or self.timestamp


class OracleLedgerItem(BaseModel):
    """A row of ``fio.oracle/oracleldgrs``: what should have been wrapped."""
    id: int
    chaincode: str
    pubaddress: str
    amount: Optional[int] = None
    nftname: Optional[str] = None
    timestamp: int = 0  # seconds

    class Config:
        frozen = True

    @field_validator("timestamp", mode="before")
    @classmethod
    def _to_seconds(cls, value):
        return to_seconds(value)

    @property
    def asset_type(self) -> str:
        return "tokens" if self.amount else "nfts"

    def queue_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"chaincode": self.chaincode, "pubaddress": self.pubaddress}
        if self.amount:
            payload["amount"] = self.amount
        if self.nftname:
            payload["nftname"] = self.nftname
        return payload


class SubmitRequest(BaseModel):
    action: str
    chain_code: str
    asset_type: str
    params: Dict[str, Any]
    nonce: Optional[int] = None
    is_replacement: bool = False
    original_tx_hash: Optional[str] = None
    replacement_attempt: int = 0
    original_gas_price: Optional[int] = None

    class Config:
        frozen = True


class TxStatus:
    MINED = "mined"
    PENDING = "pending"
    ALREADY_COMPLETED = "already_completed"


class TxOutcome(BaseModel):
    status: str
    tx_hash: Optional[str] = None
    nonce: Optional[int] = None
    receipt: Optional[Dict[str, Any]] = None

    class Config:
        frozen = True

    @property
    def succeeded(self) -> bool:
        return self.status in (TxStatus.MINED, TxStatus.ALREADY_COMPLETED, TxStatus.PENDING)
