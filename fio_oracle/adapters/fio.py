# /fio_oracle/adapters/fio.py
# FIO ledger access: server freshness, consensus table reads, history and pushes.
import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol

import aiohttp

from fio_oracle.core.config import settings
from fio_oracle.core.constants import (
    FIO_ADDRESS_ACCOUNT,
    FIO_CONTRACT_ACTIONS,
    FIO_DOMAINS_TABLE,
    FIO_HISTORY_PAGE_DELAY,
    FIO_ORACLE_ACCOUNT,
    FIO_ORACLE_LEDGER_TABLE,
    Action,
    AssetType,
)
from fio_oracle.core.decorators import retriable_network_call
from fio_oracle.core.errors import ConsensusError, FioServerUnavailable, FioTransactionError
from fio_oracle.core.logger import get_logger
from fio_oracle.core.models import OracleLedgerItem, to_seconds

log = get_logger(__name__)


class FioTransactionSigner(Protocol):
    """Packs and signs a FIO transaction.

    Returns the body accepted by ``/v1/chain/push_transaction``:
    ``{signatures, compression, packed_context_free_data, packed_trx}``.
    """

    async def sign(self, transaction: Dict[str, Any], chain_id: str, abis: Dict[str, Any]) -> Dict[str, Any]:
        ...


class RemoteFioSigner:
    """Delegates packing and signing to an HTTP signing service."""

    def __init__(self, url: str, session: Optional[aiohttp.ClientSession] = None, timeout: float = 15.0):
        self.url = url
        self._session = session
        self.timeout = timeout

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    @retriable_network_call
    async def sign(self, transaction: Dict[str, Any], chain_id: str, abis: Dict[str, Any]) -> Dict[str, Any]:
        body = {"transaction": transaction, "chain_id": chain_id, "abis": abis}
        async with self._get_session().post(self.url, json=body, timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
            resp.raise_for_status()
            return await resp.json(content_type=None)

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()


def parse_fio_time(value: str) -> datetime:
    """FIO timestamps are UTC without a zone suffix."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def pick_consensus(counts: Dict[str, int]) -> int:
    """The row count agreed on by at least two servers and a strict majority."""
    if not counts:
        raise ConsensusError("No FIO server answered the table query")
    tally = Counter(counts.values())
    value, votes = tally.most_common(1)[0]
    if votes < 2 or votes * 2 <= len(counts):
        raise ConsensusError(f"FIO servers disagree on row count: {counts}")
    return value


class FioLedgerClient:
    """Reads and writes the FIO chain through several API servers.

    Reads go to servers whose head block is recent; table reads that decide
    what the relay does must agree across servers (see ``pick_consensus``).
    """

    def __init__(
        self,
        server_urls: Optional[List[str]] = None,
        history_urls: Optional[List[str]] = None,
        signer: Optional[FioTransactionSigner] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.server_urls = [u.rstrip("/") for u in (server_urls if server_urls is not None else settings.FIO_SERVER_URLS)]
        self.history_urls = [u.rstrip("/") for u in (history_urls if history_urls is not None else settings.FIO_HISTORY_URLS)]
        self.signer = signer
        self._session = session

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    @retriable_network_call
    async def _post(self, base_url: str, path: str, body: Dict[str, Any]) -> Any:
        timeout = aiohttp.ClientTimeout(total=settings.FIO_REQUEST_TIMEOUT)
        async with self._get_session().post(f"{base_url}{path}", json=body, timeout=timeout) as resp:
            if resp.status >= 500 and path != "/v1/chain/push_transaction":
                resp.raise_for_status()
            return await resp.json(content_type=None)

    async def _post_with_fallback(self, urls: List[str], path: str, body: Dict[str, Any]) -> Any:
        last_error: Optional[Exception] = None
        for url in urls:
            try:
                return await self._post(url, path, body)
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                last_error = e
                log.warning("FIO_SERVER_FALLBACK", server=url, path=path, error=str(e))
        raise FioServerUnavailable(f"All FIO servers failed for {path}: {last_error}")

    # --- server health ---

    async def get_info(self, url: str) -> Dict[str, Any]:
        return await self._post(url, "/v1/chain/get_info", {})

    async def fresh_servers(self) -> List[str]:
        """Servers whose head block is recent, best first.

        When every server lags, those within the sync tolerance of the
        highest head are used instead.
        """
        results = await asyncio.gather(*(self.get_info(u) for u in self.server_urls), return_exceptions=True)
        infos = {}
        for url, info in zip(self.server_urls, results):
            if isinstance(info, BaseException) or not isinstance(info, dict) or "head_block_num" not in info:
                log.warning("FIO_SERVER_UNREACHABLE", server=url, error=str(info))
                continue
            infos[url] = info
        if not infos:
            raise FioServerUnavailable("No FIO server answered get_info")

        now = datetime.now(timezone.utc)
        fresh = []
        for url, info in infos.items():
            try:
                age = (now - parse_fio_time(info["head_block_time"])).total_seconds()
            except (KeyError, ValueError):
                continue
            if age <= settings.FIO_MAX_HEAD_BLOCK_AGE:
                fresh.append(url)
        if fresh:
            return sorted(fresh, key=lambda u: -int(infos[u]["head_block_num"]))

        max_head = max(int(i["head_block_num"]) for i in infos.values())
        synced = [u for u, i in infos.items() if max_head - int(i["head_block_num"]) <= settings.FIO_SYNC_TOLERANCE_BLOCKS]
        log.warning("FIO_ALL_SERVERS_STALE", max_head=max_head, using=synced)
        return sorted(synced, key=lambda u: -int(infos[u]["head_block_num"]))

    # --- tables ---

    async def _fetch_all_rows(self, url: str, params: Dict[str, Any]) -> List[dict]:
        rows: List[dict] = []
        body = {"json": True, "limit": settings.FIO_TABLE_ROWS_LIMIT, **params}
        while True:
            data = await self._post(url, "/v1/chain/get_table_rows", body)
            if not isinstance(data, dict) or "rows" not in data:
                raise ValueError(f"Unexpected get_table_rows answer from {url}: {str(data)[:200]}")
            rows.extend(data["rows"])
            next_key = data.get("next_key")
            if not data.get("more") or not next_key:
                return rows
            body = {**body, "lower_bound": next_key}

    async def get_table_rows_with_consensus(self, code: str, scope: str, table: str, **params) -> List[dict]:
        """Rows of a table, accepted only when the servers agree on their number."""
        servers = await self.fresh_servers()
        query = {"code": code, "scope": scope, "table": table, **params}
        results = await asyncio.gather(*(self._fetch_all_rows(u, query) for u in servers), return_exceptions=True)
        rows_by_server: Dict[str, List[dict]] = {}
        for url, rows in zip(servers, results):
            if isinstance(rows, BaseException):
                log.warning("FIO_TABLE_QUERY_FAILED", server=url, table=table, error=str(rows))
                continue
            rows_by_server[url] = rows
        counts = {url: len(rows) for url, rows in rows_by_server.items()}
        try:
            agreed = pick_consensus(counts)
        except ConsensusError:
            log.error("FIO_TABLE_CONSENSUS_FAILED", table=table, counts=counts)
            raise
        return next(rows for url, rows in rows_by_server.items() if len(rows) == agreed)

    async def get_oracle_items(self, lower_bound: Optional[int] = None) -> List[OracleLedgerItem]:
        params: Dict[str, Any] = {}
        if lower_bound is not None:
            params["lower_bound"] = str(lower_bound)
        rows = await self.get_table_rows_with_consensus(FIO_ORACLE_ACCOUNT, FIO_ORACLE_ACCOUNT, FIO_ORACLE_LEDGER_TABLE, **params)
        items = []
        for row in rows:
            try:
                items.append(OracleLedgerItem(**row))
            except ValueError as e:
                log.warning("FIO_ORACLE_ITEM_SKIPPED", row=row, error=str(e))
        return sorted(items, key=lambda i: i.id)

    async def get_domain_owners(self) -> Dict[str, str]:
        """Normalized domain name to owning account."""
        rows = await self.get_table_rows_with_consensus(FIO_ADDRESS_ACCOUNT, FIO_ADDRESS_ACCOUNT, FIO_DOMAINS_TABLE)
        return {str(r.get("name", "")).strip().lower(): r.get("account") for r in rows if r.get("name")}

    # --- history ---

    async def get_actions(self, account: str, start_ts: int, end_ts: Optional[int] = None) -> List[dict]:
        """Actions of ``account`` with ``start_ts <= block_time <= end_ts`` (seconds), newest first."""
        if not self.history_urls:
            raise FioServerUnavailable("No FIO history server configured")
        page = settings.FIO_HISTORY_OFFSET
        pos = -1
        seen = set()
        collected: List[dict] = []
        while True:
            data = await self._post_with_fallback(
                self.history_urls, "/v1/history/get_actions", {"account_name": account, "pos": pos, "offset": -page},
            )
            actions = data.get("actions") if isinstance(data, dict) else None
            if not actions:
                break
            actions = sorted(actions, key=lambda a: int(a.get("account_action_seq", 0)), reverse=True)
            reached_start = False
            for action in actions:
                seq = int(action.get("account_action_seq", 0))
                if seq in seen:
                    continue
                seen.add(seq)
                ts = to_seconds(action.get("block_time"))
                if end_ts is not None and ts > end_ts:
                    continue
                if ts < start_ts:
                    reached_start = True
                    break
                trace = action.get("action_trace") or {}
                act = trace.get("act") or action.get("act") or {}
                collected.append({
                    "seq": seq,
                    "block_time": ts,
                    "trx_id": trace.get("trx_id") or action.get("trx_id"),
                    "account": act.get("account"),
                    "name": act.get("name"),
                    "data": act.get("data") or {},
                })
            oldest = int(actions[-1].get("account_action_seq", 0))
            if reached_start or len(actions) < page or oldest <= 0:
                break
            pos = oldest - 1
            await asyncio.sleep(FIO_HISTORY_PAGE_DELAY)
        return collected

    async def get_unwrap_actions(self, start_ts: int, end_ts: Optional[int] = None) -> List[dict]:
        names = set(FIO_CONTRACT_ACTIONS[Action.UNWRAP].values())
        actions = await self.get_actions(FIO_ORACLE_ACCOUNT, start_ts, end_ts)
        return [a for a in actions if a["account"] == FIO_ORACLE_ACCOUNT and a["name"] in names]

    # --- transactions ---

    async def push_transaction(self, action: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Signs and pushes one ``fio.oracle`` action. Raises FioTransactionError on rejection."""
        if self.signer is None:
            raise FioTransactionError("No FIO transaction signer configured")
        servers = await self.fresh_servers()
        url = servers[0]
        info = await self.get_info(url)
        block = await self._post(url, "/v1/chain/get_block", {"block_num_or_id": info["last_irreversible_block_num"]})
        expiration = datetime.now(timezone.utc) + timedelta(seconds=settings.FIO_TX_EXPIRATION_SECONDS)
        transaction = {
            "expiration": expiration.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3],
            "ref_block_num": int(block["block_num"]) & 0xFFFF,
            "ref_block_prefix": block["ref_block_prefix"],
            "actions": [{
                "account": FIO_ORACLE_ACCOUNT,
                "name": action,
                "authorization": [{"actor": settings.FIO_ORACLE_ACCOUNT, "permission": settings.FIO_ORACLE_PERMISSION}],
                "data": data,
            }],
        }
        raw_abi = await self._post(url, "/v1/chain/get_raw_abi", {"account_name": FIO_ORACLE_ACCOUNT})
        signed = await self.signer.sign(transaction, info["chain_id"], {FIO_ORACLE_ACCOUNT: raw_abi})
        result = await self._post(url, "/v1/chain/push_transaction", signed)
        if not isinstance(result, dict) or "type" in result or "error" in result:
            log.error("FIO_PUSH_REJECTED", action=action, data=data, result=result)
            raise FioTransactionError(f"FIO rejected {action}", result=result)
        log.info("FIO_PUSH_ACCEPTED", action=action, transaction_id=result.get("transaction_id"))
        return result

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()


def unwrap_action_payload(asset_type: str, obt_id: str, fio_address: str, value: Any) -> tuple:
    """The ``fio.oracle`` action name and data for an unwrap."""
    data: Dict[str, Any] = {"fio_address": fio_address, "obt_id": obt_id}
    if asset_type == AssetType.TOKENS:
        data["amount"] = int(value)
    else:
        data["domain"] = str(value)
    data["actor"] = settings.FIO_ORACLE_ACCOUNT
    return FIO_CONTRACT_ACTIONS[Action.UNWRAP][asset_type], data
