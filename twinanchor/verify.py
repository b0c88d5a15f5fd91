# FILE: twinanchor/verify.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from prometheus_client import Counter

from .canonical import (
    CanonicalizationError,
    canonical_data,
    parse_canonical_metadata,
    serialize,
    metadata_digest,
)
from .entities import PUBLIC_TX_FIELD, EntityKind, UnknownEntityError, stream_key
from .pipeline import enrich_for_anchoring
from .private_ledger import PrivateLedgerClient, PrivateLedgerError, StreamItem
from .public_ledger import PublicLedgerClient, PublicTransaction
from .storage import AnchorDatastore
from .utils import first_nonempty, is_hex_string, secure_compare_hex

logger = logging.getLogger(__name__)

# User-facing verification errors
ERR_TX_NOT_FOUND = (
    "Transaction not found on the public ledger. The hash may be invalid, "
    "or the transaction has not been confirmed yet."
)
ERR_NOT_AN_ANCHOR = "Transaction does not carry an anchor payload."
ERR_NO_ENTITY = "Anchor payload does not name an entity and none was supplied."
ERR_RECORD_NOT_FOUND = (
    "Off-chain record not found in the datastore or the private ledger. Cannot verify integrity."
)
ERR_TAMPERED = (
    "INTEGRITY FAILURE: Recomputed hash does not match on-chain hash. "
    "Data may have been tampered with after anchoring."
)
ERR_NOT_ANCHORED = "No public-ledger transaction reference found. Record may not be anchored yet."

_VERIFICATIONS = Counter(
    "twinanchor_verifications_total",
    "Verification requests by outcome",
    ["outcome"],
)


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    on_chain_hash: Optional[str] = None
    recomputed_hash: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    recovered_from_blockchain: bool = False
    error: Optional[str] = None
    public_tx: Optional[PublicTransaction] = None
    private_ledger_txid: Optional[str] = None
    private_ledger_confirmations: Optional[int] = None
    ledger_drift: bool = False

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "verified": self.verified,
            "on_chain_hash": self.on_chain_hash,
            "recomputed_hash": self.recomputed_hash,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "metadata": self.metadata,
            "recovered_from_blockchain": self.recovered_from_blockchain,
            "error": self.error,
            "public_ledger": self.public_tx.as_dict() if self.public_tx else None,
            "private_ledger": None,
            "ledger_drift": self.ledger_drift,
        }
        if self.private_ledger_txid:
            out["private_ledger"] = {
                "txid": self.private_ledger_txid,
                "confirmations": self.private_ledger_confirmations,
            }
        return out


def _pick_stream_item(items: List[StreamItem], on_chain_hash: str) -> Optional[StreamItem]:
    """The item whose hash matches the anchor; otherwise the most recent one."""
    for item in reversed(items):
        if item.hash and secure_compare_hex(item.hash, on_chain_hash):
            return item
    return items[-1] if items else None


def _result(outcome: str, **kwargs: Any) -> VerificationResult:
    _VERIFICATIONS.labels(outcome).inc()
    return VerificationResult(**kwargs)


class TracebackVerifier:
    """
    Read-only traceback from a public-ledger anchor to the record it covers.

    Domain non-findings (unknown transaction, missing record, mismatched
    hash) come back as `VerificationResult(verified=False, error=...)`.
    Ledger infrastructure failures on the public side raise; the private
    ledger is optional evidence and its failures are logged and skipped.
    """

    def __init__(
        self,
        datastore: AnchorDatastore,
        private_ledger: PrivateLedgerClient,
        public_ledger: PublicLedgerClient,
    ) -> None:
        self._datastore = datastore
        self._private = private_ledger
        self._public = public_ledger

    def verify(
        self,
        public_tx_ref: Optional[str] = None,
        *,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        org_id: Optional[str] = None,
    ) -> VerificationResult:
        if public_tx_ref:
            return self.verify_transaction(
                public_tx_ref, entity_type=entity_type, entity_id=entity_id, org_id=org_id
            )
        if entity_type and entity_id:
            return self.verify_entity(entity_type, entity_id, org_id=org_id)
        raise ValueError("verify needs a public-ledger reference or an entity type and id")

    def verify_entity(
        self, entity_type: "str | EntityKind", entity_id: str, org_id: Optional[str] = None
    ) -> VerificationResult:
        """
        Verify an entity through the public-ledger reference stored on it.

        A deleted record is traced through its latest anchored audit row
        (tenant-scoped, so `org_id` is required for that path) and recovered
        from the private ledger.
        """
        kind = EntityKind.parse(entity_type)
        record = self._datastore.find_record(kind, str(entity_id), org_id)
        if record is None:
            audit = (
                self._datastore.find_most_recent_anchored_audit(org_id, kind.value, str(entity_id))
                if org_id
                else None
            )
            if audit is not None:
                return self.verify_transaction(
                    audit.public_ledger_txhash, entity_type=kind.value, entity_id=str(entity_id), org_id=org_id
                )
            return _result(
                "record_not_found",
                verified=False,
                entity_type=kind.value,
                entity_id=str(entity_id),
                error=ERR_RECORD_NOT_FOUND,
            )
        tx_ref = record.get(PUBLIC_TX_FIELD)
        if not tx_ref:
            return _result(
                "not_anchored",
                verified=False,
                entity_type=kind.value,
                entity_id=str(entity_id),
                error=ERR_NOT_ANCHORED,
            )
        return self.verify_transaction(tx_ref, entity_type=kind.value, entity_id=str(entity_id), org_id=org_id)

    def verify_transaction(
        self,
        tx_ref: str,
        *,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        org_id: Optional[str] = None,
    ) -> VerificationResult:
        # 1) public-ledger transaction
        tx = self._public.get_transaction(tx_ref)
        if tx is None:
            return _result("tx_not_found", verified=False, error=ERR_TX_NOT_FOUND)
        if not tx.extracted_hash:
            return _result("not_an_anchor", verified=False, public_tx=tx, error=ERR_NOT_AN_ANCHOR)
        on_chain = tx.extracted_hash

        # 2) entity identity: caller first, payload second
        etype = first_nonempty((entity_type, tx.extracted_entity_type))
        eid = first_nonempty((entity_id, tx.extracted_entity_id))
        base: Dict[str, Any] = dict(on_chain_hash=on_chain, public_tx=tx)
        if not etype or not eid:
            return _result("no_entity", verified=False, error=ERR_NO_ENTITY, **base)
        try:
            kind = EntityKind.parse(etype)
        except UnknownEntityError as e:
            return _result(
                "unknown_entity", verified=False, entity_type=str(etype), entity_id=str(eid), error=str(e), **base
            )
        eid = str(eid)
        base.update(entity_type=kind.value, entity_id=eid)

        # 3) private-ledger evidence
        item = self._private_item(kind, eid, on_chain)
        drift = bool(item and item.hash and not secure_compare_hex(item.hash, on_chain))
        if drift:
            logger.warning(
                "private ledger hash for %s:%s differs from public anchor %s",
                kind.value,
                eid,
                tx.tx_hash,
            )
        if item is not None:
            base.update(
                private_ledger_txid=item.txid,
                private_ledger_confirmations=item.confirmations,
                ledger_drift=drift,
            )

        # 4) record: datastore, else recovery from the private ledger
        try:
            recomputed, metadata, recovered = self._recompute(kind, eid, org_id, item)
        except CanonicalizationError as e:
            return _result(
                "canonicalization_error", verified=False, error=f"Record cannot be canonicalized: {e}", **base
            )
        if recomputed is None:
            return _result("record_not_found", verified=False, error=ERR_RECORD_NOT_FOUND, **base)

        # 5-6) compare
        ok = secure_compare_hex(recomputed, on_chain)
        return _result(
            "verified" if ok else "tampered",
            verified=ok,
            recomputed_hash=recomputed,
            metadata=metadata,
            recovered_from_blockchain=recovered,
            error=None if ok else ERR_TAMPERED,
            **base,
        )

    def _private_item(self, kind: EntityKind, entity_id: str, on_chain: str) -> Optional[StreamItem]:
        try:
            items = self._private.get_items_by_key(stream_key(kind, entity_id))
        except PrivateLedgerError as e:
            logger.warning("private ledger unavailable during verification: %s", e)
            return None
        return _pick_stream_item(items, on_chain)

    def _recompute(
        self,
        kind: EntityKind,
        entity_id: str,
        org_id: Optional[str],
        item: Optional[StreamItem],
    ) -> Tuple[Optional[str], Optional[Dict[str, Any]], bool]:
        record = self._datastore.find_record(kind, entity_id, org_id)
        if record is not None:
            snapshot = enrich_for_anchoring(self._datastore, kind, record)
            digest = metadata_digest(serialize(snapshot, kind, entity_id))
            return digest, canonical_data(snapshot), False

        if item is None or not item.full_metadata:
            return None, None, False
        try:
            doc = parse_canonical_metadata(item.full_metadata)
        except CanonicalizationError as e:
            logger.warning("stream item %s has unusable metadata: %s", item.txid, e)
            return None, None, False
        logger.info("recovered %s:%s from private ledger item %s", kind.value, entity_id, item.txid)
        recovered: Mapping[str, Any] = doc["data"]
        return metadata_digest(serialize(recovered, kind, entity_id)), dict(recovered), True

    # ------------------------------------------------------------------ #
    # Status / history
    # ------------------------------------------------------------------ #

    def check_anchor_status(self, tx_ref: str) -> Dict[str, Any]:
        """
        Quick existence check for a ledger reference.

        `0x` + 64 hex is a public-ledger transaction; anything else is
        looked up as a private-ledger txid.
        """
        if is_hex_string(tx_ref, min_len=64, max_len=64, prefixed=True):
            tx = self._public.get_transaction(tx_ref)
            if tx is None:
                return {"status": "not_found", "ledger": "public", "tx_ref": tx_ref}
            return {
                "status": "confirmed",
                "ledger": "public",
                "tx_ref": tx.tx_hash,
                "block_number": tx.block_number,
                "confirmations": tx.confirmations,
                "explorer_url": tx.explorer_url,
            }
        ptx = self._private.get_transaction(tx_ref)
        if ptx is None:
            return {"status": "not_found", "ledger": "private", "tx_ref": tx_ref}
        return {
            "status": "confirmed",
            "ledger": "private",
            "tx_ref": ptx.txid,
            "confirmations": ptx.confirmations,
            "blocktime": ptx.blocktime,
        }

    def recover_versions(self, entity_type: "str | EntityKind", entity_id: str) -> List[Dict[str, Any]]:
        """Every version of an entity published to the private ledger, oldest first."""
        kind = EntityKind.parse(entity_type)
        items = self._private.get_items_by_key(stream_key(kind, entity_id))
        versions: List[Dict[str, Any]] = []
        for n, item in enumerate(items, start=1):
            metadata = None
            if item.full_metadata:
                try:
                    metadata = parse_canonical_metadata(item.full_metadata)["data"]
                except CanonicalizationError:
                    logger.warning("stream item %s has unusable metadata", item.txid)
            versions.append(
                {
                    "version": n,
                    "hash": item.hash,
                    "published_at": item.data.get("published_at"),
                    "txid": item.txid,
                    "blocktime": item.blocktime,
                    "confirmations": item.confirmations,
                    "metadata": metadata,
                }
            )
        return versions


__all__ = [
    "ERR_TX_NOT_FOUND",
    "ERR_RECORD_NOT_FOUND",
    "ERR_TAMPERED",
    "ERR_NOT_ANCHORED",
    "VerificationResult",
    "TracebackVerifier",
]
