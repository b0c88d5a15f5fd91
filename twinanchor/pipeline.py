# FILE: twinanchor/pipeline.py
"""
Anchor pipeline: serialize -> publish to the private ledger -> submit to the
public ledger.

The pipeline never retries a step. A call either returns a complete
`AnchorResult` or raises; retrying is the auto-anchor queue's job. Running it
twice over the same record gives the same hash and two new transactions, so
callers guard against double-anchoring themselves.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from prometheus_client import Counter, Histogram

from .canonical import serialize
from .crypto import CryptoError, WalletKeyStore
from .entities import AnchorRefs, EntityKind
from .logging import log_security_event
from .private_ledger import PrivateLedgerClient
from .public_ledger import PublicLedgerClient
from .storage import AnchorDatastore

logger = logging.getLogger(__name__)

_ANCHORS = Counter(
    "twinanchor_anchors_total",
    "Anchor pipeline runs by entity type and outcome",
    ["entity_type", "outcome"],
)
_PIPELINE_LATENCY = Histogram(
    "twinanchor_pipeline_latency_seconds",
    "End-to-end anchor pipeline latency, in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

EMPLOYEE_WALLET_FIELD = "employee_wallet_address"
ORG_WALLET_FIELD = "org_wallet_address"


@dataclass(frozen=True)
class AnchorResult:
    private_ledger_hash: str
    private_ledger_txid: str
    public_ledger_txhash: str
    canonical_metadata: str
    block_number: int
    explorer_url: str
    signer_address: str

    @property
    def refs(self) -> AnchorRefs:
        return AnchorRefs(
            private_ledger_hash=self.private_ledger_hash,
            private_ledger_txid=self.private_ledger_txid,
            public_ledger_txhash=self.public_ledger_txhash,
        )

    def summary(self) -> Dict[str, Any]:
        """Result without the canonical metadata, for job records and API responses."""
        return {
            "private_ledger_hash": self.private_ledger_hash,
            "private_ledger_txid": self.private_ledger_txid,
            "public_ledger_txhash": self.public_ledger_txhash,
            "block_number": self.block_number,
            "explorer_url": self.explorer_url,
            "signer_address": self.signer_address,
        }


class AnchorPipeline:
    def __init__(self, private_ledger: PrivateLedgerClient, public_ledger: PublicLedgerClient) -> None:
        self.private_ledger = private_ledger
        self.public_ledger = public_ledger

    def anchor_record(
        self,
        record: Mapping[str, Any],
        entity_type: "str | EntityKind",
        entity_id: str,
        signing_key: Optional[str] = None,
    ) -> AnchorResult:
        kind = EntityKind.parse(entity_type)
        t0 = time.perf_counter()
        try:
            metadata = serialize(record, kind, entity_id)
            published = self.private_ledger.publish(metadata, kind.value, entity_id)
            submitted = self.public_ledger.submit(published.hash, kind.value, entity_id, signing_key)
        except Exception:
            _ANCHORS.labels(kind.value, "error").inc()
            raise
        _PIPELINE_LATENCY.observe(time.perf_counter() - t0)
        _ANCHORS.labels(kind.value, "ok").inc()
        return AnchorResult(
            private_ledger_hash=published.hash,
            private_ledger_txid=published.txid,
            public_ledger_txhash=submitted.tx_hash,
            canonical_metadata=metadata,
            block_number=submitted.block_number,
            explorer_url=submitted.explorer_url,
            signer_address=submitted.signer_address,
        )


# ---------------------------------------------------------------------------
# Record preparation
# ---------------------------------------------------------------------------


def enrich_payroll_entry(datastore: AnchorDatastore, record: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Inline the employee's and the paying organization's wallet addresses.

    The organization is taken from the parent payroll when it can be found,
    otherwise from the entry itself. Addresses that cannot be resolved are
    left out rather than set to null.
    """
    out = dict(record)
    org_id = record.get("org_id")

    employee_id = record.get("employee_id")
    if employee_id:
        employee = datastore.find_record(EntityKind.EMPLOYEE, str(employee_id))
        if employee and employee.get("wallet_address"):
            out[EMPLOYEE_WALLET_FIELD] = employee["wallet_address"]

    payroll_id = record.get("payroll_id")
    if payroll_id:
        payroll = datastore.find_record(EntityKind.PAYROLL, str(payroll_id))
        if payroll and payroll.get("org_id"):
            org_id = payroll["org_id"]
    if org_id:
        org = datastore.find_organization(str(org_id))
        if org is not None and org.wallet_address:
            out[ORG_WALLET_FIELD] = org.wallet_address
    return out


def enrich_for_anchoring(
    datastore: AnchorDatastore, kind: EntityKind, record: Mapping[str, Any]
) -> Dict[str, Any]:
    """Record snapshot as it is hashed, both at anchoring and at verification time."""
    if kind.links_wallet_parties:
        return enrich_payroll_entry(datastore, record)
    return dict(record)


def resolve_signing_key(
    datastore: AnchorDatastore, keystore: WalletKeyStore, org_id: Optional[str]
) -> Optional[str]:
    """
    The organization's decrypted signing key, or None for the master key.

    A key that cannot be decrypted is reported as a security event and the
    master key is used instead, so one tenant's bad key never blocks anchoring.
    """
    if not org_id:
        return None
    org = datastore.find_organization(org_id)
    if org is None or not org.wallet_private_key_enc:
        return None
    try:
        return keystore.decrypt_signing_key(org.wallet_private_key_enc)
    except CryptoError as e:
        log_security_event(
            logger,
            threat_label="signing_key_decrypt_failed",
            org_id=org_id,
            message="organization signing key unusable; falling back to master key",
            extra={"reason": type(e).__name__},
        )
        return None


__all__ = [
    "AnchorResult",
    "AnchorPipeline",
    "EMPLOYEE_WALLET_FIELD",
    "ORG_WALLET_FIELD",
    "enrich_payroll_entry",
    "enrich_for_anchoring",
    "resolve_signing_key",
]
