# FILE: twinanchor/auto_anchor.py
"""
In-process auto-anchor queue.

Business write paths call `enqueue` / `enqueue_anchor` and return at once;
a single daemon worker drains the queue FIFO and runs each job through the
anchor pipeline.

Job lifecycle:

    enqueued -> processing -> completed
                           -> retrying -> processing ...
                           -> failed (after `max_retries` retries)
                           -> skipped (unknown kind, missing record,
                                       create of an already anchored record)

A failed attempt goes back to the tail of the queue and the worker then
waits `retry_base_s * retry_count` seconds, so a later job for the same
entity may overtake a retried one. Retries cover the record lookup and the
pipeline only: once both ledgers hold the anchor, a failed reference
write-back is logged and noted on the completed job record instead of
anchoring again. The queue is not durable: jobs still queued at shutdown
are dropped and only terminal outcomes reach the job record table.
"""
from __future__ import annotations

import datetime as _dt
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional

from prometheus_client import Counter, Gauge

from .crypto import WalletKeyStore
from .entities import AnchorRefs, EntityKind, UnknownEntityError
from .logging import bind_anchor_context, log_anchor_event, reset
from .pipeline import AnchorPipeline, enrich_for_anchoring, resolve_signing_key
from .storage import JOB_COMPLETED, JOB_FAILED, AnchorDatastore, VersionChainEntry

logger = logging.getLogger(__name__)

_JOBS = Counter(
    "twinanchor_queue_jobs_total",
    "Auto-anchor jobs by outcome",
    ["outcome"],
)
_QUEUE_LEN = Gauge(
    "twinanchor_queue_length",
    "Jobs waiting in the auto-anchor queue",
)


class JobOutcome(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    RETRYING = "retrying"
    FAILED = "failed"


@dataclass(slots=True)
class AnchorJob:
    entity_type: str
    entity_id: str
    org_id: str
    user_id: Optional[str] = None
    action: str = "write"
    enqueued_at: _dt.datetime = field(default_factory=lambda: _dt.datetime.now(_dt.timezone.utc))
    retry_count: int = 0

    def as_payload(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "org_id": self.org_id,
            "user_id": self.user_id,
            "action": self.action,
            "enqueued_at": self.enqueued_at.isoformat(),
            "retry_count": self.retry_count,
        }


@dataclass(frozen=True)
class QueueStatus:
    queue_length: int
    processing: bool
    total_processed: int
    total_failed: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "queue_length": self.queue_length,
            "processing": self.processing,
            "total_processed": self.total_processed,
            "total_failed": self.total_failed,
        }


def next_chain_entry(datastore: AnchorDatastore, job: AnchorJob) -> VersionChainEntry:
    """Version-chain link for the anchor about to be made for `job`'s entity."""
    previous = datastore.find_most_recent_anchored_audit(job.org_id, job.entity_type, job.entity_id)
    if previous is None:
        return VersionChainEntry()
    return VersionChainEntry(
        version=(previous.version or 1) + 1,
        previous_hash=previous.private_ledger_hash,
        previous_public_txhash=previous.public_ledger_txhash,
        changed_fields=tuple(sorted((previous.after_data or {}).keys())),
    )


class AutoAnchorQueue:
    """
    Owned queue instance; construct one per process and inject it into the
    write paths that trigger anchoring.

    `sleep` is the backoff function used by the worker (tests pass a no-op).
    """

    def __init__(
        self,
        pipeline: AnchorPipeline,
        datastore: AnchorDatastore,
        keystore: WalletKeyStore,
        *,
        max_retries: int = 3,
        retry_base_s: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._pipeline = pipeline
        self._datastore = datastore
        self._keystore = keystore
        self._max_retries = max(0, int(max_retries))
        self._retry_base_s = max(0.0, float(retry_base_s))
        self._sleep = sleep

        self._lock = threading.Lock()
        self._queue: Deque[AnchorJob] = deque()
        self._processing = False
        self._stopped = False
        self._idle = threading.Event()
        self._idle.set()
        self._thread: Optional[threading.Thread] = None
        self._total_processed = 0
        self._total_failed = 0

    # ------------------------------------------------------------------ #
    # Producer side
    # ------------------------------------------------------------------ #

    def enqueue(self, job: AnchorJob) -> None:
        """Append `job` and make sure a worker is draining. Never blocks on anchoring."""
        with self._lock:
            if self._stopped:
                logger.warning("anchor queue stopped; dropping job for %s:%s", job.entity_type, job.entity_id)
                return
            self._queue.append(job)
            _QUEUE_LEN.set(len(self._queue))
            if self._processing:
                return
            self._processing = True
            self._idle.clear()
            self._thread = threading.Thread(
                target=self._drain,
                name="twinanchor-auto-anchor",
                daemon=True,
            )
            self._thread.start()

    def enqueue_anchor(
        self,
        entity_type: "str | EntityKind",
        entity_id: str,
        org_id: str,
        user_id: Optional[str] = None,
        action: str = "write",
    ) -> None:
        t = entity_type.value if isinstance(entity_type, EntityKind) else str(entity_type)
        self.enqueue(
            AnchorJob(entity_type=t, entity_id=str(entity_id), org_id=org_id, user_id=user_id, action=action)
        )

    def get_queue_status(self) -> QueueStatus:
        with self._lock:
            return QueueStatus(
                queue_length=len(self._queue),
                processing=self._processing,
                total_processed=self._total_processed,
                total_failed=self._total_failed,
            )

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until the worker has drained the queue; False on timeout."""
        return self._idle.wait(timeout)

    def stop(self, *, timeout: Optional[float] = 5.0) -> int:
        """Stop accepting jobs and drop whatever is still queued; returns the drop count."""
        with self._lock:
            self._stopped = True
            dropped = len(self._queue)
            self._queue.clear()
            _QUEUE_LEN.set(0)
            t = self._thread
        if dropped:
            logger.warning("anchor queue stopped with %d pending job(s) dropped", dropped)
        if t is not None and t is not threading.current_thread():
            t.join(timeout=timeout)
        return dropped

    # ------------------------------------------------------------------ #
    # Worker side
    # ------------------------------------------------------------------ #

    def _drain(self) -> None:
        while True:
            with self._lock:
                if not self._queue:
                    self._processing = False
                    self._idle.set()
                    return
                job = self._queue.popleft()
                _QUEUE_LEN.set(len(self._queue))
            try:
                outcome = self._process(job)
            except Exception:  # worker outlives any single job
                logger.exception("anchor job for %s:%s aborted", job.entity_type, job.entity_id)
                with self._lock:
                    self._total_failed += 1
                _JOBS.labels(JobOutcome.FAILED.value).inc()
                outcome = JobOutcome.FAILED
            finally:
                reset()
            if outcome is JobOutcome.RETRYING:
                self._sleep(self._retry_base_s * job.retry_count)

    def _process(self, job: AnchorJob) -> JobOutcome:
        bind_anchor_context(
            org_id=job.org_id,
            user_id=job.user_id,
            entity_type=job.entity_type,
            entity_id=job.entity_id,
            action=job.action,
        )
        try:
            kind = EntityKind.parse(job.entity_type)
        except UnknownEntityError:
            logger.warning("skipping anchor job for unknown entity type %r", job.entity_type)
            return self._finish_skipped()

        try:
            record = self._datastore.find_record(kind, job.entity_id, job.org_id)
        except Exception as e:  # datastore outages are retried like ledger ones
            return self._handle_failure(job, e)
        if record is None:
            logger.warning("skipping anchor job: %s:%s not found", job.entity_type, job.entity_id)
            return self._finish_skipped()
        if job.action == "create" and AnchorRefs.from_record(record).is_complete:
            logger.info("skipping anchor job: %s:%s already anchored", job.entity_type, job.entity_id)
            return self._finish_skipped()

        try:
            chain = next_chain_entry(self._datastore, job)
            snapshot = enrich_for_anchoring(self._datastore, kind, record)
            result = self._pipeline.anchor_record(
                snapshot,
                kind,
                job.entity_id,
                resolve_signing_key(self._datastore, self._keystore, job.org_id),
            )
        except Exception as e:  # queue is the retry boundary for every pipeline failure
            return self._handle_failure(job, e)

        # Both ledgers hold the anchor now; a write-back error must not re-anchor.
        write_back_error = self._write_back(job, kind, result.refs, chain)

        self._datastore.create_anchor_job_record(
            org_id=job.org_id,
            entity_type=kind.value,
            entity_id=job.entity_id,
            status=JOB_COMPLETED,
            payload={**job.as_payload(), **chain.as_dict()},
            result=result.summary(),
            error=write_back_error,
        )
        with self._lock:
            self._total_processed += 1
        _JOBS.labels(JobOutcome.COMPLETED.value).inc()
        log_anchor_event(
            logger,
            outcome=JobOutcome.COMPLETED.value,
            entity_type=kind.value,
            entity_id=job.entity_id,
            private_tx=result.private_ledger_txid,
            public_tx=result.public_ledger_txhash,
            block_number=result.block_number,
            retry=job.retry_count,
            extra={"version": chain.version},
        )
        return JobOutcome.COMPLETED

    def _write_back(
        self, job: AnchorJob, kind: EntityKind, refs: AnchorRefs, chain: VersionChainEntry
    ) -> Optional[str]:
        """Store the references on the record and its audit row; returns the error text on failure."""
        try:
            self._datastore.update_anchor_fields(kind, job.entity_id, refs)
            audit = self._datastore.find_latest_unanchored_audit(job.org_id, kind.value, job.entity_id)
            if audit is not None:
                self._datastore.update_audit_row_with_anchor(audit.id, refs, chain)
        except Exception as e:
            logger.error(
                "anchored %s:%s but could not store references (public tx %s): %s",
                kind.value,
                job.entity_id,
                refs.public_ledger_txhash,
                e,
                exc_info=True,
            )
            return f"reference write-back failed: {e}"
        return None

    def _finish_skipped(self) -> JobOutcome:
        with self._lock:
            self._total_processed += 1
        _JOBS.labels(JobOutcome.SKIPPED.value).inc()
        return JobOutcome.SKIPPED

    def _handle_failure(self, job: AnchorJob, error: Exception) -> JobOutcome:
        if job.retry_count < self._max_retries:
            job.retry_count += 1
            with self._lock:
                if not self._stopped:
                    self._queue.append(job)
                    _QUEUE_LEN.set(len(self._queue))
            _JOBS.labels(JobOutcome.RETRYING.value).inc()
            log_anchor_event(
                logger,
                outcome=JobOutcome.RETRYING.value,
                entity_type=job.entity_type,
                entity_id=job.entity_id,
                retry=job.retry_count,
                message=f"anchor attempt failed, retrying: {error}",
                level=logging.WARNING,
            )
            return JobOutcome.RETRYING

        self._datastore.create_anchor_job_record(
            org_id=job.org_id,
            entity_type=job.entity_type,
            entity_id=job.entity_id,
            status=JOB_FAILED,
            payload=job.as_payload(),
            error=str(error) or type(error).__name__,
        )
        with self._lock:
            self._total_failed += 1
        _JOBS.labels(JobOutcome.FAILED.value).inc()
        log_anchor_event(
            logger,
            outcome=JobOutcome.FAILED.value,
            entity_type=job.entity_type,
            entity_id=job.entity_id,
            retry=job.retry_count,
            message=f"anchor job failed permanently: {error}",
            level=logging.ERROR,
        )
        return JobOutcome.FAILED


__all__ = [
    "JobOutcome",
    "AnchorJob",
    "QueueStatus",
    "next_chain_entry",
    "AutoAnchorQueue",
]
