# FILE: twinanchor/private_ledger.py
"""
Private-ledger hash publisher (MultiChain JSON-RPC over HTTP).

Anchors are published to a single keyed stream. Each item is keyed
"{entityType}:{entityId}" and carries the digest together with the full
canonical metadata, so the stream doubles as a recoverable backup of the
anchored record state.

Network, HTTP and RPC failures raise `PrivateLedgerError` subclasses and are
left to the caller (the auto-anchor queue retries them). A stream that
already exists is the `StreamSetup.ALREADY_EXISTS` result, not an error.
"""
from __future__ import annotations

import datetime as _dt
import itertools
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
from prometheus_client import Counter, Histogram

from .canonical import metadata_digest
from .entities import stream_key

logger = logging.getLogger(__name__)

# MultiChain RPC error codes
_ERR_ALREADY_EXISTS = -705
_ERR_ENTITY_NOT_FOUND = -708
_ERR_TX_NOT_FOUND = -5

_RPC_CALLS = Counter(
    "twinanchor_private_rpc_total",
    "Private-ledger JSON-RPC calls",
    ["method", "outcome"],
)
_RPC_LATENCY = Histogram(
    "twinanchor_private_rpc_latency_seconds",
    "Private-ledger JSON-RPC latency in seconds",
    ["method"],
)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class PrivateLedgerError(Exception):
    """Base error for private-ledger calls."""


class PrivateLedgerUnavailable(PrivateLedgerError):
    """Transport failure, timeout, or an HTTP error without an RPC error body."""


class PrivateLedgerRpcError(PrivateLedgerError):
    """The node answered with a JSON-RPC error object."""

    def __init__(self, method: str, code: Optional[int], message: str) -> None:
        super().__init__(f"{method}: [{code}] {message}")
        self.method = method
        self.code = code
        self.message = message

    @property
    def already_exists(self) -> bool:
        return self.code == _ERR_ALREADY_EXISTS or "already exists" in self.message.lower()

    @property
    def not_found(self) -> bool:
        msg = self.message.lower()
        return (
            self.code in (_ERR_ENTITY_NOT_FOUND, _ERR_TX_NOT_FOUND)
            or "not found" in msg
            or "no information available" in msg
        )


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class StreamSetup(str, Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"


@dataclass(frozen=True)
class PrivateLedgerConfig:
    url: str = "http://127.0.0.1:4798"
    user: str = "multichainrpc"
    password: str = ""
    chain_name: str = "dxerchain"
    stream_name: str = "dxer-anchors"
    timeout_s: float = 15.0
    health_timeout_s: float = 4.0
    # liststreamkeyitems returns only the last 10 items unless asked for more
    max_items: int = 1000

    @classmethod
    def from_settings(cls, settings: Any, *, password: str = "") -> "PrivateLedgerConfig":
        return cls(
            url=settings.private_rpc_url,
            user=settings.private_rpc_user,
            password=password,
            chain_name=settings.private_chain_name,
            stream_name=settings.private_stream_name,
            timeout_s=settings.private_rpc_timeout_s,
            health_timeout_s=settings.private_health_timeout_s,
        )


@dataclass(frozen=True)
class PublishedHash:
    hash: str
    txid: str
    stream_key: str


@dataclass(frozen=True)
class StreamItem:
    txid: str
    data: Dict[str, Any]
    blocktime: Optional[int] = None
    confirmations: int = 0
    publishers: List[str] = field(default_factory=list)
    # Set when the item payload could not be decoded as an anchor document
    raw: Any = None

    @property
    def hash(self) -> Optional[str]:
        v = self.data.get("hash")
        return v if isinstance(v, str) else None

    @property
    def full_metadata(self) -> Optional[str]:
        v = self.data.get("full_metadata")
        return v if isinstance(v, str) else None


@dataclass(frozen=True)
class PrivateTransaction:
    txid: str
    confirmations: int
    blocktime: Optional[int] = None
    blockhash: Optional[str] = None


@dataclass(frozen=True)
class PrivateLedgerHealth:
    connected: bool
    chain_name: Optional[str] = None
    blocks: Optional[int] = None
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "connected": self.connected,
            "chain_name": self.chain_name,
            "blocks": self.blocks,
        }
        if self.error:
            out["error"] = self.error
        return out


def _decode_hex_document(value: str) -> Dict[str, Any]:
    doc = json.loads(bytes.fromhex(value).decode("utf-8"))
    if not isinstance(doc, dict):
        raise ValueError("stream item is not a JSON object")
    return doc


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class PrivateLedgerClient:
    """
    Blocking JSON-RPC client for the private ledger.

    A single `httpx.Client` is shared by all calls; it is safe to use from
    the queue worker and request threads at the same time. Pass `transport`
    to route calls somewhere other than the network (tests use
    `httpx.MockTransport`).
    """

    def __init__(
        self,
        config: PrivateLedgerConfig,
        *,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.config = config
        self._client = httpx.Client(
            base_url=config.url,
            auth=(config.user, config.password),
            timeout=httpx.Timeout(config.timeout_s),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )
        self._ids = itertools.count(1)
        self._stream_lock = threading.Lock()
        self._stream_ready = False

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "PrivateLedgerClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ---- transport ---------------------------------------------------------

    def _rpc(self, method: str, params: List[Any], *, timeout: Optional[float] = None) -> Any:
        body = {"jsonrpc": "1.0", "id": next(self._ids), "method": method, "params": params}
        t0 = time.perf_counter()
        try:
            resp = self._client.post(
                "/",
                json=body,
                timeout=httpx.Timeout(timeout) if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.TimeoutException as e:
            _RPC_CALLS.labels(method, "timeout").inc()
            raise PrivateLedgerUnavailable(f"{method}: timed out") from e
        except httpx.HTTPError as e:
            _RPC_CALLS.labels(method, "transport_error").inc()
            raise PrivateLedgerUnavailable(f"{method}: {e}") from e
        finally:
            _RPC_LATENCY.labels(method).observe(time.perf_counter() - t0)

        # MultiChain answers RPC errors with HTTP 500 and a JSON error body
        try:
            payload = resp.json()
        except ValueError:
            payload = None

        if isinstance(payload, dict) and payload.get("error"):
            err = payload["error"]
            code = err.get("code") if isinstance(err, dict) else None
            message = err.get("message", "") if isinstance(err, dict) else str(err)
            _RPC_CALLS.labels(method, "rpc_error").inc()
            raise PrivateLedgerRpcError(method, code, str(message))

        if resp.status_code >= 400 or not isinstance(payload, dict):
            _RPC_CALLS.labels(method, "http_error").inc()
            raise PrivateLedgerUnavailable(f"{method}: HTTP {resp.status_code}")

        _RPC_CALLS.labels(method, "ok").inc()
        return payload.get("result")

    # ---- stream setup ------------------------------------------------------

    def _stream_exists(self) -> bool:
        try:
            streams = self._rpc("liststreams", [self.config.stream_name])
        except PrivateLedgerRpcError as e:
            if e.not_found:
                return False
            raise
        return bool(streams)

    def _create_stream(self) -> StreamSetup:
        try:
            self._rpc("create", ["stream", self.config.stream_name, True])
        except PrivateLedgerRpcError as e:
            if e.already_exists:
                return StreamSetup.ALREADY_EXISTS
            raise
        return StreamSetup.CREATED

    def ensure_stream(self) -> StreamSetup:
        """Create the anchor stream if absent, then subscribe to it. Idempotent."""
        setup = StreamSetup.ALREADY_EXISTS if self._stream_exists() else self._create_stream()
        self._rpc("subscribe", [self.config.stream_name])
        with self._stream_lock:
            self._stream_ready = True
        logger.info("private ledger stream %s ready (%s)", self.config.stream_name, setup.value)
        return setup

    def _ensure_ready(self) -> None:
        with self._stream_lock:
            if self._stream_ready:
                return
        self.ensure_stream()

    # ---- anchoring ---------------------------------------------------------

    def publish(self, canonical_metadata: str, entity_type: str, entity_id: str) -> PublishedHash:
        """Hash `canonical_metadata` and publish digest + metadata under the entity key."""
        self._ensure_ready()
        digest = metadata_digest(canonical_metadata)
        key = stream_key(entity_type, entity_id)
        document = {
            "hash": digest,
            "published_at": _dt.datetime.now(_dt.timezone.utc).isoformat(),
            "entity_type": str(getattr(entity_type, "value", entity_type)),
            "entity_id": str(entity_id),
            "metadata_length": len(canonical_metadata),
            "full_metadata": canonical_metadata,
        }
        data_hex = json.dumps(document, sort_keys=True, separators=(",", ":")).encode("utf-8").hex()
        txid = self._rpc("publish", [self.config.stream_name, key, data_hex])
        if not isinstance(txid, str) or not txid:
            raise PrivateLedgerUnavailable("publish: node returned no txid")
        logger.debug("published %s to %s as %s", digest, key, txid)
        return PublishedHash(hash=digest, txid=txid, stream_key=key)

    def _item_document(self, data: Any) -> Dict[str, Any]:
        if isinstance(data, str):
            return _decode_hex_document(data)
        if isinstance(data, dict):
            if isinstance(data.get("json"), dict):
                return data["json"]
            if isinstance(data.get("text"), str):
                doc = json.loads(data["text"])
                if isinstance(doc, dict):
                    return doc
                raise ValueError("stream item text is not a JSON object")
            if "txid" in data and "vout" in data:
                # Payload above the node's inline size limit
                return self._item_document(self._rpc("gettxoutdata", [data["txid"], data["vout"]]))
        raise ValueError(f"unrecognized stream item payload: {type(data).__name__}")

    def get_items_by_key(self, key: str) -> List[StreamItem]:
        """All stream items for `key`, oldest first."""
        self._ensure_ready()
        rows = self._rpc(
            "liststreamkeyitems",
            [self.config.stream_name, key, False, self.config.max_items],
        )
        items: List[StreamItem] = []
        for row in rows or []:
            raw = None
            try:
                doc = self._item_document(row.get("data"))
            except (ValueError, UnicodeDecodeError) as e:
                logger.warning("undecodable stream item %s under %s: %s", row.get("txid"), key, e)
                doc, raw = {}, row.get("data")
            items.append(
                StreamItem(
                    txid=str(row.get("txid", "")),
                    data=doc,
                    blocktime=row.get("blocktime"),
                    confirmations=int(row.get("confirmations") or 0),
                    publishers=list(row.get("publishers") or []),
                    raw=raw,
                )
            )
        return items

    def get_transaction(self, txid: str) -> Optional[PrivateTransaction]:
        """Look up a private-ledger transaction; None when the node does not know it."""
        try:
            tx = self._rpc("getrawtransaction", [txid, 1])
        except PrivateLedgerRpcError as e:
            if e.not_found:
                return None
            raise
        if not isinstance(tx, dict):
            return None
        return PrivateTransaction(
            txid=str(tx.get("txid", txid)),
            confirmations=int(tx.get("confirmations") or 0),
            blocktime=tx.get("blocktime"),
            blockhash=tx.get("blockhash"),
        )

    def health_check(self) -> PrivateLedgerHealth:
        try:
            info = self._rpc("getinfo", [], timeout=self.config.health_timeout_s)
        except PrivateLedgerError as e:
            logger.warning("private ledger health check failed: %s", e)
            return PrivateLedgerHealth(connected=False, error=str(e))
        info = info if isinstance(info, dict) else {}
        return PrivateLedgerHealth(
            connected=True,
            chain_name=info.get("chainname"),
            blocks=info.get("blocks"),
        )


__all__ = [
    "PrivateLedgerError",
    "PrivateLedgerUnavailable",
    "PrivateLedgerRpcError",
    "StreamSetup",
    "PrivateLedgerConfig",
    "PublishedHash",
    "StreamItem",
    "PrivateTransaction",
    "PrivateLedgerHealth",
    "PrivateLedgerClient",
]
