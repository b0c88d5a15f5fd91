# FILE: twinanchor/anchoring.py
"""
Anchoring service: the single object the API layer and business write paths
talk to.

It owns the ledger clients, the pipeline, the auto-anchor queue and the
verifier, all built once from `Settings` (or injected, for tests).
"""
from __future__ import annotations

import logging
import os
from typing import Any, Dict, Iterable, List, Optional

from .auto_anchor import AutoAnchorQueue, QueueStatus
from .config import Settings
from .crypto import WalletKeyStore
from .entities import AnchorRefs, EntityKind
from .logging import bind_anchor_context, log_anchor_event
from .pipeline import AnchorPipeline, AnchorResult, enrich_for_anchoring, resolve_signing_key
from .private_ledger import PrivateLedgerClient, PrivateLedgerConfig
from .public_ledger import PublicLedgerClient, PublicLedgerConfig
from .storage import JOB_COMPLETED, AnchorDatastore, AnchorJobRecord, make_datastore
from .verify import TracebackVerifier, VerificationResult

logger = logging.getLogger(__name__)

ANCHOR_ACTION = "anchor"


def detect_action(method: str, path: str) -> str:
    """Audit/anchor action implied by a write request."""
    p = (path or "").rstrip("/").lower()
    m = (method or "").upper()
    if p.endswith("/void"):
        return "void"
    if p.endswith("/status") or p.endswith("/complete"):
        return "status_change"
    if m == "POST":
        return "create"
    if m in ("PUT", "PATCH"):
        return "update"
    return "write"


class AnchoringService:
    def __init__(
        self,
        datastore: AnchorDatastore,
        private_ledger: PrivateLedgerClient,
        public_ledger: PublicLedgerClient,
        keystore: Optional[WalletKeyStore] = None,
        *,
        max_retries: int = 3,
        retry_base_s: float = 2.0,
        queue: Optional[AutoAnchorQueue] = None,
    ) -> None:
        self.datastore = datastore
        self.private_ledger = private_ledger
        self.public_ledger = public_ledger
        self.keystore = keystore or WalletKeyStore()
        self.pipeline = AnchorPipeline(private_ledger, public_ledger)
        self.queue = queue or AutoAnchorQueue(
            self.pipeline,
            datastore,
            self.keystore,
            max_retries=max_retries,
            retry_base_s=retry_base_s,
        )
        self.verifier = TracebackVerifier(datastore, private_ledger, public_ledger)

    @classmethod
    def from_settings(cls, settings: Settings) -> "AnchoringService":
        private = PrivateLedgerClient(
            PrivateLedgerConfig.from_settings(
                settings, password=os.environ.get(settings.private_rpc_password_env, "")
            )
        )
        public = PublicLedgerClient(PublicLedgerConfig.from_settings(settings))
        return cls(
            make_datastore(settings.datastore_dsn),
            private,
            public,
            WalletKeyStore(secret_env=settings.wallet_encryption_key_env),
            max_retries=settings.queue_max_retries,
            retry_base_s=settings.queue_retry_base_s,
        )

    def close(self) -> None:
        self.queue.stop()
        self.private_ledger.close()
        self.datastore.close()

    # ------------------------------------------------------------------ #
    # Anchoring
    # ------------------------------------------------------------------ #

    def enqueue_anchor(
        self,
        entity_type: "str | EntityKind",
        entity_id: str,
        org_id: str,
        user_id: Optional[str] = None,
        action: str = "write",
    ) -> None:
        self.queue.enqueue_anchor(entity_type, entity_id, org_id, user_id, action)

    def trigger_auto_anchor(
        self,
        *,
        entity_type: str,
        entity_id: str,
        org_id: str,
        user_id: Optional[str] = None,
        method: str = "POST",
        path: str = "",
    ) -> bool:
        """
        Hook for business write paths. Returns False instead of raising when
        the job could not be queued; the write itself must never fail because
        of anchoring.
        """
        try:
            kind = EntityKind.parse(entity_type)
        except ValueError as e:
            logger.warning("auto-anchor not triggered for %s:%s: %s", entity_type, entity_id, e)
            return False
        self.queue.enqueue_anchor(kind, entity_id, org_id, user_id, detect_action(method, path))
        return True

    def anchor_record(
        self,
        record: Dict[str, Any],
        entity_type: "str | EntityKind",
        entity_id: str,
        signing_key: Optional[str] = None,
    ) -> AnchorResult:
        return self.pipeline.anchor_record(record, entity_type, entity_id, signing_key)

    def anchor_entities(
        self,
        org_id: str,
        user_id: Optional[str],
        entity_type: "str | EntityKind",
        entity_ids: Iterable[str],
    ) -> List[Dict[str, Any]]:
        """
        Synchronous manual anchoring of several records of one kind.

        Each id reports "not_found", "already_anchored" or "anchored". Ledger
        failures propagate; records anchored before the failure keep their
        references.
        """
        kind = EntityKind.parse(entity_type)
        signing_key = resolve_signing_key(self.datastore, self.keystore, org_id)
        results: List[Dict[str, Any]] = []
        for raw_id in entity_ids:
            entity_id = str(raw_id)
            bind_anchor_context(
                org_id=org_id, user_id=user_id, entity_type=kind.value, entity_id=entity_id, action=ANCHOR_ACTION
            )
            record = self.datastore.find_record(kind, entity_id, org_id)
            if record is None:
                results.append({"entity_id": entity_id, "status": "not_found"})
                continue
            refs = AnchorRefs.from_record(record)
            if refs.is_complete:
                results.append({"entity_id": entity_id, "status": "already_anchored", **refs.as_fields()})
                continue

            snapshot = enrich_for_anchoring(self.datastore, kind, record)
            result = self.pipeline.anchor_record(snapshot, kind, entity_id, signing_key)
            self.datastore.update_anchor_fields(kind, entity_id, result.refs)
            payload = {
                "entity_type": kind.value,
                "entity_id": entity_id,
                "org_id": org_id,
                "user_id": user_id,
                "action": ANCHOR_ACTION,
            }
            self.datastore.create_anchor_job_record(
                org_id=org_id,
                entity_type=kind.value,
                entity_id=entity_id,
                status=JOB_COMPLETED,
                payload=payload,
                result=result.summary(),
            )
            self.datastore.record_audit(
                org_id=org_id,
                user_id=user_id,
                action=ANCHOR_ACTION,
                entity_type=kind.value,
                entity_id=entity_id,
                after_data=result.refs.as_fields(),
                refs=result.refs,
            )
            log_anchor_event(
                logger,
                outcome="anchored",
                entity_type=kind.value,
                entity_id=entity_id,
                private_tx=result.private_ledger_txid,
                public_tx=result.public_ledger_txhash,
                block_number=result.block_number,
            )
            results.append({"entity_id": entity_id, "status": "anchored", **result.summary()})
        return results

    # ------------------------------------------------------------------ #
    # Verification / explorer
    # ------------------------------------------------------------------ #

    def verify(
        self,
        public_tx_ref: Optional[str] = None,
        *,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        org_id: Optional[str] = None,
    ) -> VerificationResult:
        return self.verifier.verify(public_tx_ref, entity_type=entity_type, entity_id=entity_id, org_id=org_id)

    def check_anchor_status(self, tx_ref: str) -> Dict[str, Any]:
        return self.verifier.check_anchor_status(tx_ref)

    def recover(self, entity_type: str, entity_id: str) -> List[Dict[str, Any]]:
        return self.verifier.recover_versions(entity_type, entity_id)

    def lookup(self, identifier: str) -> List[Dict[str, Any]]:
        """Records whose id or any anchor reference is `identifier`."""
        out: List[Dict[str, Any]] = []
        for kind, record in self.datastore.find_records_by_reference(identifier):
            out.append(
                {
                    "entity_type": kind.value,
                    "entity_id": str(record.get("id")),
                    "org_id": record.get("org_id"),
                    **AnchorRefs.from_record(record).as_fields(),
                }
            )
        return out

    def list_jobs(self, org_id: Optional[str], limit: int = 50) -> List[AnchorJobRecord]:
        return self.datastore.list_anchor_job_records(org_id, limit=limit)

    # ------------------------------------------------------------------ #
    # Status
    # ------------------------------------------------------------------ #

    def get_queue_status(self) -> QueueStatus:
        return self.queue.get_queue_status()

    def chains_health_check(self) -> Dict[str, Any]:
        return {
            "private_ledger": self.private_ledger.health_check().as_dict(),
            "public_ledger": self.public_ledger.health_check().as_dict(),
        }


__all__ = ["ANCHOR_ACTION", "detect_action", "AnchoringService"]
