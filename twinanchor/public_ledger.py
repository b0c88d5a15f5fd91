# FILE: twinanchor/public_ledger.py
"""
Public-ledger anchor submitter for an EVM chain (web3 + eth_account).

An anchor is a zero-value transfer from the signing wallet to itself whose
input data is

    0x | hex("DXER") | sha256 hex (64 chars) | hex("|{entityType}|{entityId}|")

`encode_anchor_payload` / `decode_anchor_payload` are exact inverses for
every valid (hash, entityType, entityId).

"Transaction not found" is a normal outcome (`None`); RPC and transport
failures raise `PublicLedgerError`.
"""
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

from eth_account import Account
from prometheus_client import Counter, Histogram
from web3 import Web3
from web3.exceptions import TransactionNotFound, Web3Exception

from .utils import is_hex_string, strip_0x

logger = logging.getLogger(__name__)

ANCHOR_TAG = b"DXER"
_TAG_HEX = ANCHOR_TAG.hex()
_HASH_HEX_LEN = 64
_DELIM = "|"

_SUBMISSIONS = Counter(
    "twinanchor_public_submissions_total",
    "Public-ledger anchor submissions",
    ["outcome"],
)
_SUBMIT_LATENCY = Histogram(
    "twinanchor_public_submit_latency_seconds",
    "Time from signing to confirmed receipt, in seconds",
)


class PublicLedgerError(Exception):
    """Public-ledger submission or lookup failed (not a "not found")."""


# ---------------------------------------------------------------------------
# Payload codec
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DecodedAnchor:
    hash: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None


def encode_anchor_payload(hash_hex: str, entity_type: str, entity_id: str) -> str:
    """Transaction input data for an anchor, 0x-prefixed lowercase hex."""
    if not is_hex_string(hash_hex, min_len=_HASH_HEX_LEN, max_len=_HASH_HEX_LEN):
        raise ValueError("anchor hash must be 64 hex characters")
    t = str(getattr(entity_type, "value", entity_type))
    i = str(entity_id)
    for label, part in (("entity_type", t), ("entity_id", i)):
        if not part:
            raise ValueError(f"{label} must be non-empty")
        if _DELIM in part:
            raise ValueError(f"{label} must not contain {_DELIM!r}")
    marker = f"{_DELIM}{t}{_DELIM}{i}{_DELIM}".encode("utf-8").hex()
    return "0x" + _TAG_HEX + strip_0x(hash_hex).lower() + marker


def decode_anchor_payload(data: Union[str, bytes, None]) -> Optional[DecodedAnchor]:
    """Inverse of `encode_anchor_payload`; None when `data` is not an anchor payload."""
    if data is None:
        return None
    if isinstance(data, (bytes, bytearray)):
        hex_body = bytes(data).hex()
    else:
        hex_body = strip_0x(str(data)).lower()
    if not hex_body.startswith(_TAG_HEX):
        return None
    rest = hex_body[len(_TAG_HEX) :]
    digest = rest[:_HASH_HEX_LEN]
    if len(digest) != _HASH_HEX_LEN or not is_hex_string(digest):
        return None
    try:
        marker = bytes.fromhex(rest[_HASH_HEX_LEN:]).decode("utf-8")
    except ValueError:
        return DecodedAnchor(hash=digest)
    parts = [p for p in marker.split(_DELIM) if p]
    if len(parts) >= 2:
        return DecodedAnchor(hash=digest, entity_type=parts[0], entity_id=parts[1])
    return DecodedAnchor(hash=digest)


# ---------------------------------------------------------------------------
# Config / results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PublicLedgerConfig:
    network: str = "amoy"
    chain_id: int = 80002
    rpc_url: str = "https://rpc-amoy.polygon.technology"
    explorer_url: str = "https://amoy.polygonscan.com"
    currency_symbol: str = "POL"
    wallet_address: str = ""
    private_key_env: str = "TWINANCHOR_PUBLIC_PRIVATE_KEY"
    rpc_timeout_s: float = 30.0
    health_timeout_s: float = 5.0
    receipt_timeout_s: float = 120.0
    confirmations: int = 1
    poll_interval_s: float = 2.0

    @classmethod
    def from_settings(cls, settings: Any) -> "PublicLedgerConfig":
        return cls(
            network=settings.public_network,
            chain_id=settings.public_chain_id,
            rpc_url=settings.public_rpc_url,
            explorer_url=settings.public_explorer_url,
            currency_symbol=settings.public_currency_symbol,
            wallet_address=settings.public_wallet_address,
            private_key_env=settings.public_private_key_env,
            rpc_timeout_s=settings.public_rpc_timeout_s,
            health_timeout_s=settings.public_health_timeout_s,
            receipt_timeout_s=settings.public_receipt_timeout_s,
            confirmations=settings.public_confirmations,
        )


@dataclass(frozen=True)
class SubmittedAnchor:
    tx_hash: str
    block_number: int
    gas_used: int
    payload_hex: str
    explorer_url: str
    signer_address: str


@dataclass(frozen=True)
class PublicTransaction:
    tx_hash: str
    extracted_hash: Optional[str]
    extracted_entity_type: Optional[str]
    extracted_entity_id: Optional[str]
    block_number: Optional[int]
    timestamp: Optional[int]
    confirmations: int
    explorer_url: str
    from_address: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "extracted_hash": self.extracted_hash,
            "extracted_entity_type": self.extracted_entity_type,
            "extracted_entity_id": self.extracted_entity_id,
            "block_number": self.block_number,
            "timestamp": self.timestamp,
            "confirmations": self.confirmations,
            "explorer_url": self.explorer_url,
            "from_address": self.from_address,
        }


@dataclass(frozen=True)
class PublicLedgerHealth:
    connected: bool
    network: str
    block_number: Optional[int] = None
    balance: Optional[str] = None
    wallet_address: Optional[str] = None
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "connected": self.connected,
            "network": self.network,
            "block_number": self.block_number,
            "balance": self.balance,
            "wallet_address": self.wallet_address,
        }
        if self.error:
            out["error"] = self.error
        return out


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


def _http_web3(url: str, timeout_s: float) -> Web3:
    return Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": timeout_s}))


class PublicLedgerClient:
    """
    Submits anchors and reads them back.

    The master private key is read from the environment on every submission
    (`config.private_key_env`); a per-organization key passed to `submit`
    takes precedence. Neither is stored on the instance.
    """

    def __init__(
        self,
        config: PublicLedgerConfig,
        *,
        web3: Optional[Web3] = None,
        health_web3: Optional[Web3] = None,
        master_key_provider: Optional[Callable[[], Optional[str]]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self._w3 = web3 if web3 is not None else _http_web3(config.rpc_url, config.rpc_timeout_s)
        if health_web3 is not None:
            self._health_w3 = health_web3
        elif web3 is not None:
            self._health_w3 = web3
        else:
            self._health_w3 = _http_web3(config.rpc_url, config.health_timeout_s)
        self._master_key = master_key_provider or (lambda: os.environ.get(config.private_key_env))
        self._sleep = sleep

    def explorer_tx_url(self, tx_hash: str) -> str:
        return f"{self.config.explorer_url.rstrip('/')}/tx/{tx_hash}"

    @property
    def master_address(self) -> Optional[str]:
        key = self._master_key()
        if key:
            return Account.from_key(key).address
        return self.config.wallet_address or None

    def _account(self, signing_key: Optional[str]):
        key = signing_key or self._master_key()
        if not key:
            raise PublicLedgerError(
                f"no signing key: set {self.config.private_key_env} or provide an organization key"
            )
        try:
            return Account.from_key(key)
        except (ValueError, TypeError) as e:
            raise PublicLedgerError("signing key is not a valid private key") from e

    def _wait_for_confirmations(self, block_number: int) -> None:
        if self.config.confirmations <= 1:
            return
        deadline = time.monotonic() + self.config.receipt_timeout_s
        while self._w3.eth.block_number - block_number + 1 < self.config.confirmations:
            if time.monotonic() > deadline:
                raise PublicLedgerError(
                    f"block {block_number} did not reach {self.config.confirmations} confirmations"
                )
            self._sleep(self.config.poll_interval_s)

    def submit(
        self,
        hash_hex: str,
        entity_type: str,
        entity_id: str,
        signing_key: Optional[str] = None,
    ) -> SubmittedAnchor:
        """Send the anchor as a zero-value self-transfer and wait for its receipt."""
        payload = encode_anchor_payload(hash_hex, entity_type, entity_id)
        account = self._account(signing_key)
        w3 = self._w3
        t0 = time.perf_counter()
        try:
            tx: Dict[str, Any] = {
                "to": account.address,
                "value": 0,
                "data": payload,
                "nonce": w3.eth.get_transaction_count(account.address, "pending"),
                "chainId": self.config.chain_id,
                "gasPrice": w3.eth.gas_price,
            }
            tx["gas"] = w3.eth.estimate_gas(
                {"from": account.address, "to": account.address, "value": 0, "data": payload}
            )
            signed = account.sign_transaction(tx)
            sent = w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = w3.eth.wait_for_transaction_receipt(sent, timeout=self.config.receipt_timeout_s)
            if receipt.get("status", 1) == 0:
                raise PublicLedgerError(f"anchor transaction {Web3.to_hex(sent)} reverted")
            block_number = int(receipt["blockNumber"])
            self._wait_for_confirmations(block_number)
        except (Web3Exception, OSError, ValueError) as e:
            _SUBMISSIONS.labels("error").inc()
            raise PublicLedgerError(f"anchor submission failed: {e}") from e
        except PublicLedgerError:
            _SUBMISSIONS.labels("error").inc()
            raise
        _SUBMIT_LATENCY.observe(time.perf_counter() - t0)
        _SUBMISSIONS.labels("ok").inc()

        tx_hash = Web3.to_hex(receipt["transactionHash"])
        logger.info("anchored %s:%s in %s (block %d)", entity_type, entity_id, tx_hash, block_number)
        return SubmittedAnchor(
            tx_hash=tx_hash,
            block_number=block_number,
            gas_used=int(receipt.get("gasUsed", 0)),
            payload_hex=payload,
            explorer_url=self.explorer_tx_url(tx_hash),
            signer_address=account.address,
        )

    def get_transaction(self, tx_ref: str) -> Optional[PublicTransaction]:
        """Fetch a transaction and decode its anchor payload; None if unknown."""
        if not is_hex_string(tx_ref, min_len=64, max_len=64):
            return None
        tx_hash = "0x" + strip_0x(tx_ref).lower()
        w3 = self._w3
        try:
            try:
                tx = w3.eth.get_transaction(tx_hash)
            except TransactionNotFound:
                return None
            try:
                receipt = w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                receipt = None
            block_number = receipt["blockNumber"] if receipt else tx.get("blockNumber")
            timestamp = None
            confirmations = 0
            if block_number is not None:
                timestamp = int(w3.eth.get_block(block_number)["timestamp"])
                confirmations = max(0, int(w3.eth.block_number) - int(block_number) + 1)
        except (Web3Exception, OSError, ValueError) as e:
            raise PublicLedgerError(f"transaction lookup failed: {e}") from e

        decoded = decode_anchor_payload(Web3.to_hex(tx["input"]))
        return PublicTransaction(
            tx_hash=tx_hash,
            extracted_hash=decoded.hash if decoded else None,
            extracted_entity_type=decoded.entity_type if decoded else None,
            extracted_entity_id=decoded.entity_id if decoded else None,
            block_number=int(block_number) if block_number is not None else None,
            timestamp=timestamp,
            confirmations=confirmations,
            explorer_url=self.explorer_tx_url(tx_hash),
            from_address=tx.get("from"),
        )

    def health_check(self) -> PublicLedgerHealth:
        w3 = self._health_w3
        address = self.master_address
        try:
            if not w3.is_connected():
                return PublicLedgerHealth(connected=False, network=self.config.network, wallet_address=address)
            block_number = int(w3.eth.block_number)
            balance = None
            if address:
                wei = w3.eth.get_balance(address)
                balance = f"{Web3.from_wei(wei, 'ether')} {self.config.currency_symbol}"
        except (Web3Exception, OSError, ValueError) as e:
            logger.warning("public ledger health check failed: %s", e)
            return PublicLedgerHealth(
                connected=False,
                network=self.config.network,
                wallet_address=address,
                error=str(e),
            )
        return PublicLedgerHealth(
            connected=True,
            network=self.config.network,
            block_number=block_number,
            balance=balance,
            wallet_address=address,
        )


__all__ = [
    "ANCHOR_TAG",
    "PublicLedgerError",
    "DecodedAnchor",
    "encode_anchor_payload",
    "decode_anchor_payload",
    "PublicLedgerConfig",
    "SubmittedAnchor",
    "PublicTransaction",
    "PublicLedgerHealth",
    "PublicLedgerClient",
]
