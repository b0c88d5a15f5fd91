# FILE: twinanchor/storage.py
"""
Primary datastore backends for anchoring:

  - Records:
      Anchorable business records, one `RecordGateway` per `EntityKind`.
      Anchoring only reads records and writes the three anchor-reference
      fields back.

  - Audit rows:
      Append-only mutation history (before/after snapshots). The auto-anchor
      worker links the latest un-anchored row of an entity to its anchor and
      records the version-chain fields on it.

  - Anchor job records:
      Append-only terminal state of every anchoring attempt
      (status "completed" or "failed"), the durability backstop for the
      volatile in-process queue.

  - Organizations:
      Wallet address and encrypted per-organization signing key.

Two backends are provided, in-memory (tests, local runs) and SQLite, with
`make_datastore(dsn)` choosing between them.
"""
from __future__ import annotations

import datetime as _dt
import json
import logging
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .entities import (
    ANCHOR_FIELDS,
    AnchorRefs,
    EntityKind,
    PRIVATE_HASH_FIELD,
    PRIVATE_TX_FIELD,
    PUBLIC_TX_FIELD,
    RecordGateway,
)

logger = logging.getLogger(__name__)

JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

# ------------------------------
# Data model
# ------------------------------


def _utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True, slots=True)
class VersionChainEntry:
    """
    Link from one anchored version of an entity to the previous one.

    Version 1 has no predecessor; version N points at version N-1's
    private-ledger hash and public-ledger transaction.
    """

    version: int = 1
    previous_hash: Optional[str] = None
    previous_public_txhash: Optional[str] = None
    changed_fields: Tuple[str, ...] = ()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "previous_hash": self.previous_hash,
            "previous_public_txhash": self.previous_public_txhash,
            "changed_fields": list(self.changed_fields),
        }


@dataclass(frozen=True, slots=True)
class AuditRow:
    id: str
    org_id: str
    user_id: Optional[str]
    action: str
    entity_type: str
    entity_id: str
    before_data: Optional[Dict[str, Any]] = None
    after_data: Optional[Dict[str, Any]] = None
    created_at: _dt.datetime = field(default_factory=_utcnow)
    private_ledger_hash: Optional[str] = None
    private_ledger_txid: Optional[str] = None
    public_ledger_txhash: Optional[str] = None
    version: Optional[int] = None
    previous_hash: Optional[str] = None
    previous_public_txhash: Optional[str] = None
    changed_fields: Tuple[str, ...] = ()

    @property
    def refs(self) -> AnchorRefs:
        return AnchorRefs(
            private_ledger_hash=self.private_ledger_hash,
            private_ledger_txid=self.private_ledger_txid,
            public_ledger_txhash=self.public_ledger_txhash,
        )

    def as_record(self) -> Dict[str, Any]:
        """Audit row viewed as an anchorable record of kind `audit_log`."""
        return {
            "id": self.id,
            "org_id": self.org_id,
            "user_id": self.user_id,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "before_data": self.before_data,
            "after_data": self.after_data,
            "created_at": self.created_at,
            PRIVATE_HASH_FIELD: self.private_ledger_hash,
            PRIVATE_TX_FIELD: self.private_ledger_txid,
            PUBLIC_TX_FIELD: self.public_ledger_txhash,
        }


@dataclass(frozen=True, slots=True)
class AnchorJobRecord:
    id: str
    org_id: str
    entity_type: str
    entity_id: str
    status: str
    payload: Dict[str, Any]
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: _dt.datetime = field(default_factory=_utcnow)


@dataclass(frozen=True, slots=True)
class Organization:
    id: str
    name: str = ""
    wallet_address: Optional[str] = None
    wallet_private_key_enc: Optional[str] = None


# ------------------------------
# Abstract interface
# ------------------------------


class AnchorDatastore(ABC):
    """
    Collaborator contract consumed by the anchoring subsystem.

    Record access goes through the per-kind gateways returned by
    `gateway()`; `find_record` / `update_anchor_fields` are conveniences
    over them.
    """

    @abstractmethod
    def gateway(self, kind: EntityKind) -> RecordGateway:
        ...

    def find_record(
        self, kind: EntityKind, entity_id: str, org_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        return self.gateway(kind).fetch(entity_id, org_id)

    def update_anchor_fields(self, kind: EntityKind, entity_id: str, refs: AnchorRefs) -> bool:
        return self.gateway(kind).update_anchor_fields(entity_id, refs)

    # ---- records (business layer side) ----

    @abstractmethod
    def put_record(self, kind: EntityKind, record: Mapping[str, Any], *, org_id: str) -> Dict[str, Any]:
        """Insert or replace a record; returns the stored copy."""

    @abstractmethod
    def delete_record(self, kind: EntityKind, entity_id: str) -> bool:
        ...

    @abstractmethod
    def find_records_by_reference(self, identifier: str) -> List[Tuple[EntityKind, Dict[str, Any]]]:
        """Records whose id or any anchor reference equals `identifier`."""

    # ---- audit rows ----

    @abstractmethod
    def record_audit(
        self,
        *,
        org_id: str,
        user_id: Optional[str],
        action: str,
        entity_type: str,
        entity_id: str,
        before_data: Optional[Mapping[str, Any]] = None,
        after_data: Optional[Mapping[str, Any]] = None,
        refs: Optional[AnchorRefs] = None,
    ) -> AuditRow:
        ...

    @abstractmethod
    def list_audit_rows(self, org_id: str, entity_type: str, entity_id: str) -> List[AuditRow]:
        """Audit rows for one entity, oldest first."""

    @abstractmethod
    def find_most_recent_anchored_audit(
        self, org_id: str, entity_type: str, entity_id: str
    ) -> Optional[AuditRow]:
        ...

    @abstractmethod
    def find_latest_unanchored_audit(
        self, org_id: str, entity_type: str, entity_id: str
    ) -> Optional[AuditRow]:
        ...

    @abstractmethod
    def update_audit_row_with_anchor(
        self, row_id: str, refs: AnchorRefs, chain: Optional[VersionChainEntry] = None
    ) -> bool:
        ...

    # ---- anchor job records ----

    @abstractmethod
    def create_anchor_job_record(
        self,
        *,
        org_id: str,
        entity_type: str,
        entity_id: str,
        status: str,
        payload: Mapping[str, Any],
        result: Optional[Mapping[str, Any]] = None,
        error: Optional[str] = None,
    ) -> AnchorJobRecord:
        ...

    @abstractmethod
    def list_anchor_job_records(
        self,
        org_id: Optional[str] = None,
        *,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[AnchorJobRecord]:
        """Newest first."""

    # ---- organizations ----

    @abstractmethod
    def put_organization(self, org: Organization) -> Organization:
        ...

    @abstractmethod
    def find_organization(self, org_id: str) -> Optional[Organization]:
        ...

    def close(self) -> None:
        return None


def _org_matches(record: Mapping[str, Any], org_id: Optional[str]) -> bool:
    return org_id is None or record.get("org_id") in (None, org_id)


def _prepare_record(record: Mapping[str, Any], org_id: str, existing: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    rec = dict(record)
    rec.setdefault("id", _new_id())
    rec["id"] = str(rec["id"])
    rec.setdefault("org_id", org_id)
    now = _utcnow()
    rec.setdefault("created_at", existing.get("created_at") if existing else now)
    rec["updated_at"] = now
    for name in ANCHOR_FIELDS:
        if name not in rec:
            rec[name] = existing.get(name) if existing else None
    return rec


# ------------------------------
# In-memory implementation
# ------------------------------


class _MemRecordGateway:
    def __init__(self, store: "InMemoryAnchorDatastore", kind: EntityKind):
        self.kind = kind
        self._store = store

    def fetch(self, entity_id: str, org_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        with self._store._lock:
            rec = self._store._records[self.kind].get(str(entity_id))
            if rec is None or not _org_matches(rec, org_id):
                return None
            return dict(rec)

    def update_anchor_fields(self, entity_id: str, refs: AnchorRefs) -> bool:
        with self._store._lock:
            rec = self._store._records[self.kind].get(str(entity_id))
            if rec is None:
                return False
            rec.update(refs.as_fields())
            return True


class _MemAuditGateway:
    kind = EntityKind.AUDIT_LOG

    def __init__(self, store: "InMemoryAnchorDatastore"):
        self._store = store

    def fetch(self, entity_id: str, org_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        with self._store._lock:
            row = self._store._audit_by_id.get(str(entity_id))
            if row is None or (org_id is not None and row.org_id != org_id):
                return None
            return row.as_record()

    def update_anchor_fields(self, entity_id: str, refs: AnchorRefs) -> bool:
        return self._store.update_audit_row_with_anchor(str(entity_id), refs)


class InMemoryAnchorDatastore(AnchorDatastore):
    """
    Process-local datastore guarded by one re-entrant lock.

    Suitable for tests and single-process development only.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._records: Dict[EntityKind, Dict[str, Dict[str, Any]]] = {k: {} for k in EntityKind}
        self._audit: List[AuditRow] = []
        self._audit_by_id: Dict[str, AuditRow] = {}
        self._jobs: List[AnchorJobRecord] = []
        self._orgs: Dict[str, Organization] = {}
        self._gateways: Dict[EntityKind, RecordGateway] = {
            k: (_MemAuditGateway(self) if k is EntityKind.AUDIT_LOG else _MemRecordGateway(self, k))
            for k in EntityKind
        }

    def gateway(self, kind: EntityKind) -> RecordGateway:
        return self._gateways[kind]

    def put_record(self, kind: EntityKind, record: Mapping[str, Any], *, org_id: str) -> Dict[str, Any]:
        if kind is EntityKind.AUDIT_LOG:
            raise ValueError("audit rows are written through record_audit()")
        with self._lock:
            existing = self._records[kind].get(str(record.get("id", "")))
            rec = _prepare_record(record, org_id, existing)
            self._records[kind][rec["id"]] = rec
            return dict(rec)

    def delete_record(self, kind: EntityKind, entity_id: str) -> bool:
        with self._lock:
            return self._records[kind].pop(str(entity_id), None) is not None

    def find_records_by_reference(self, identifier: str) -> List[Tuple[EntityKind, Dict[str, Any]]]:
        out: List[Tuple[EntityKind, Dict[str, Any]]] = []
        with self._lock:
            for kind, table in self._records.items():
                for rec in table.values():
                    if identifier == rec.get("id") or identifier in (rec.get(f) for f in ANCHOR_FIELDS):
                        out.append((kind, dict(rec)))
            for row in self._audit:
                if identifier == row.id or identifier in (
                    row.private_ledger_hash,
                    row.private_ledger_txid,
                    row.public_ledger_txhash,
                ):
                    out.append((EntityKind.AUDIT_LOG, row.as_record()))
        return out

    def record_audit(
        self,
        *,
        org_id: str,
        user_id: Optional[str],
        action: str,
        entity_type: str,
        entity_id: str,
        before_data: Optional[Mapping[str, Any]] = None,
        after_data: Optional[Mapping[str, Any]] = None,
        refs: Optional[AnchorRefs] = None,
    ) -> AuditRow:
        refs = refs or AnchorRefs()
        row = AuditRow(
            id=_new_id(),
            org_id=org_id,
            user_id=user_id,
            action=action,
            entity_type=str(entity_type),
            entity_id=str(entity_id),
            before_data=dict(before_data) if before_data is not None else None,
            after_data=dict(after_data) if after_data is not None else None,
            private_ledger_hash=refs.private_ledger_hash,
            private_ledger_txid=refs.private_ledger_txid,
            public_ledger_txhash=refs.public_ledger_txhash,
        )
        with self._lock:
            self._audit.append(row)
            self._audit_by_id[row.id] = row
        return row

    def list_audit_rows(self, org_id: str, entity_type: str, entity_id: str) -> List[AuditRow]:
        with self._lock:
            return [
                r
                for r in self._audit
                if r.org_id == org_id and r.entity_type == str(entity_type) and r.entity_id == str(entity_id)
            ]

    def find_most_recent_anchored_audit(
        self, org_id: str, entity_type: str, entity_id: str
    ) -> Optional[AuditRow]:
        for row in reversed(self.list_audit_rows(org_id, entity_type, entity_id)):
            if row.public_ledger_txhash:
                return row
        return None

    def find_latest_unanchored_audit(
        self, org_id: str, entity_type: str, entity_id: str
    ) -> Optional[AuditRow]:
        for row in reversed(self.list_audit_rows(org_id, entity_type, entity_id)):
            if not row.public_ledger_txhash:
                return row
        return None

    def update_audit_row_with_anchor(
        self, row_id: str, refs: AnchorRefs, chain: Optional[VersionChainEntry] = None
    ) -> bool:
        with self._lock:
            row = self._audit_by_id.get(row_id)
            if row is None:
                return False
            changes: Dict[str, Any] = refs.as_fields()
            if chain is not None:
                changes.update(
                    version=chain.version,
                    previous_hash=chain.previous_hash,
                    previous_public_txhash=chain.previous_public_txhash,
                    changed_fields=tuple(chain.changed_fields),
                )
            updated = replace(row, **changes)
            self._audit_by_id[row_id] = updated
            self._audit[self._audit.index(row)] = updated
            return True

    def create_anchor_job_record(
        self,
        *,
        org_id: str,
        entity_type: str,
        entity_id: str,
        status: str,
        payload: Mapping[str, Any],
        result: Optional[Mapping[str, Any]] = None,
        error: Optional[str] = None,
    ) -> AnchorJobRecord:
        rec = AnchorJobRecord(
            id=_new_id(),
            org_id=org_id,
            entity_type=str(entity_type),
            entity_id=str(entity_id),
            status=status,
            payload=dict(payload),
            result=dict(result) if result is not None else None,
            error=error,
        )
        with self._lock:
            self._jobs.append(rec)
        return rec

    def list_anchor_job_records(
        self,
        org_id: Optional[str] = None,
        *,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[AnchorJobRecord]:
        with self._lock:
            rows = [
                j
                for j in reversed(self._jobs)
                if (org_id is None or j.org_id == org_id)
                and (entity_type is None or j.entity_type == str(entity_type))
                and (entity_id is None or j.entity_id == str(entity_id))
            ]
        return rows[: max(0, int(limit))]

    def put_organization(self, org: Organization) -> Organization:
        with self._lock:
            self._orgs[org.id] = org
        return org

    def find_organization(self, org_id: str) -> Optional[Organization]:
        with self._lock:
            return self._orgs.get(org_id)


# ------------------------------
# SQLite implementation
# ------------------------------

_SQL_SCHEMA = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS records (
  kind TEXT NOT NULL,
  id TEXT NOT NULL,
  org_id TEXT,
  data_json TEXT NOT NULL,
  private_ledger_hash TEXT,
  private_ledger_txid TEXT,
  public_ledger_txhash TEXT,
  PRIMARY KEY (kind, id)
);
CREATE INDEX IF NOT EXISTS idx_records_private_hash ON records(private_ledger_hash);
CREATE INDEX IF NOT EXISTS idx_records_private_tx ON records(private_ledger_txid);
CREATE INDEX IF NOT EXISTS idx_records_public_tx ON records(public_ledger_txhash);

CREATE TABLE IF NOT EXISTS audit_rows (
  id TEXT PRIMARY KEY,
  org_id TEXT NOT NULL,
  user_id TEXT,
  action TEXT NOT NULL,
  entity_type TEXT NOT NULL,
  entity_id TEXT NOT NULL,
  before_json TEXT,
  after_json TEXT,
  created_at TEXT NOT NULL,
  private_ledger_hash TEXT,
  private_ledger_txid TEXT,
  public_ledger_txhash TEXT,
  version INTEGER,
  previous_hash TEXT,
  previous_public_txhash TEXT,
  changed_fields_json TEXT DEFAULT '[]'
);
CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_rows(org_id, entity_type, entity_id);

CREATE TABLE IF NOT EXISTS anchor_jobs (
  id TEXT PRIMARY KEY,
  org_id TEXT NOT NULL,
  entity_type TEXT NOT NULL,
  entity_id TEXT NOT NULL,
  status TEXT NOT NULL,
  payload_json TEXT NOT NULL,
  result_json TEXT,
  error TEXT,
  created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_jobs_org_created ON anchor_jobs(org_id, created_at DESC);

CREATE TABLE IF NOT EXISTS organizations (
  id TEXT PRIMARY KEY,
  name TEXT DEFAULT '',
  wallet_address TEXT,
  wallet_private_key_enc TEXT
);
"""


def _json_default(obj: Any) -> Any:
    # Tagged encoding so record field types survive a round trip.
    if isinstance(obj, _dt.datetime):
        return {"__datetime__": obj.isoformat()}
    if isinstance(obj, _dt.date):
        return {"__date__": obj.isoformat()}
    if isinstance(obj, Decimal):
        return {"__decimal__": str(obj)}
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    raise TypeError(f"cannot store value of type {type(obj).__name__}")


def _json_object_hook(obj: Dict[str, Any]) -> Any:
    if len(obj) == 1:
        if "__datetime__" in obj:
            return _dt.datetime.fromisoformat(obj["__datetime__"])
        if "__date__" in obj:
            return _dt.date.fromisoformat(obj["__date__"])
        if "__decimal__" in obj:
            return Decimal(obj["__decimal__"])
    return obj


def _dumps(obj: Any) -> str:
    return json.dumps(obj, default=_json_default, separators=(",", ":"), allow_nan=False)


def _loads(s: Optional[str]) -> Any:
    if s is None:
        return None
    return json.loads(s, object_hook=_json_object_hook)


class _SQLite:
    """
    Small wrapper around sqlite3 to centralize connection & transactions.

      - Single shared connection (check_same_thread=False) guarded by a
        re-entrant lock.
      - IMMEDIATE transactions to avoid write skew.
      - WAL mode and busy_timeout.
    """

    def __init__(self, path: str):
        self._path = path
        self._g = threading.RLock()
        self._conn = sqlite3.connect(
            self._path,
            check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout=30000;")
        self._conn.executescript(_SQL_SCHEMA)

    def tx(self):
        """
        Context manager for IMMEDIATE transactions.

        Usage:
            with db.tx() as conn:
                conn.execute(...)
        """
        outer = self

        class _Tx:
            def __enter__(self):
                outer._g.acquire()
                outer._conn.execute("BEGIN IMMEDIATE;")
                return outer._conn

            def __exit__(self, exc_type, exc, tb):
                try:
                    if exc_type is None:
                        outer._conn.execute("COMMIT;")
                    else:
                        outer._conn.execute("ROLLBACK;")
                finally:
                    outer._g.release()

        return _Tx()

    def close(self) -> None:
        with self._g:
            self._conn.close()


def _row_to_record(row: sqlite3.Row) -> Dict[str, Any]:
    rec = _loads(row["data_json"])
    rec[PRIVATE_HASH_FIELD] = row["private_ledger_hash"]
    rec[PRIVATE_TX_FIELD] = row["private_ledger_txid"]
    rec[PUBLIC_TX_FIELD] = row["public_ledger_txhash"]
    return rec


def _row_to_audit(row: sqlite3.Row) -> AuditRow:
    return AuditRow(
        id=row["id"],
        org_id=row["org_id"],
        user_id=row["user_id"],
        action=row["action"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        before_data=_loads(row["before_json"]),
        after_data=_loads(row["after_json"]),
        created_at=_dt.datetime.fromisoformat(row["created_at"]),
        private_ledger_hash=row["private_ledger_hash"],
        private_ledger_txid=row["private_ledger_txid"],
        public_ledger_txhash=row["public_ledger_txhash"],
        version=row["version"],
        previous_hash=row["previous_hash"],
        previous_public_txhash=row["previous_public_txhash"],
        changed_fields=tuple(json.loads(row["changed_fields_json"] or "[]")),
    )


def _row_to_job(row: sqlite3.Row) -> AnchorJobRecord:
    return AnchorJobRecord(
        id=row["id"],
        org_id=row["org_id"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        status=row["status"],
        payload=_loads(row["payload_json"]) or {},
        result=_loads(row["result_json"]),
        error=row["error"],
        created_at=_dt.datetime.fromisoformat(row["created_at"]),
    )


_AUDIT_COLS = (
    "id, org_id, user_id, action, entity_type, entity_id, before_json, after_json, created_at, "
    "private_ledger_hash, private_ledger_txid, public_ledger_txhash, "
    "version, previous_hash, previous_public_txhash, changed_fields_json"
)


class _SQLiteRecordGateway:
    def __init__(self, db: _SQLite, kind: EntityKind):
        self.kind = kind
        self._db = db

    def fetch(self, entity_id: str, org_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        with self._db.tx() as conn:
            row = conn.execute(
                "SELECT data_json, private_ledger_hash, private_ledger_txid, public_ledger_txhash, org_id "
                "FROM records WHERE kind=? AND id=?",
                (self.kind.value, str(entity_id)),
            ).fetchone()
        if row is None:
            return None
        rec = _row_to_record(row)
        return rec if _org_matches(rec, org_id) else None

    def update_anchor_fields(self, entity_id: str, refs: AnchorRefs) -> bool:
        with self._db.tx() as conn:
            cur = conn.execute(
                "UPDATE records SET private_ledger_hash=?, private_ledger_txid=?, public_ledger_txhash=? "
                "WHERE kind=? AND id=?",
                (
                    refs.private_ledger_hash,
                    refs.private_ledger_txid,
                    refs.public_ledger_txhash,
                    self.kind.value,
                    str(entity_id),
                ),
            )
            return cur.rowcount > 0


class _SQLiteAuditGateway:
    kind = EntityKind.AUDIT_LOG

    def __init__(self, store: "SQLiteAnchorDatastore"):
        self._store = store

    def fetch(self, entity_id: str, org_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        row = self._store._get_audit_row(str(entity_id))
        if row is None or (org_id is not None and row.org_id != org_id):
            return None
        return row.as_record()

    def update_anchor_fields(self, entity_id: str, refs: AnchorRefs) -> bool:
        return self._store.update_audit_row_with_anchor(str(entity_id), refs)


class SQLiteAnchorDatastore(AnchorDatastore):
    """
    SQLite-backed datastore.

    Records of every kind share one table keyed by (kind, id); field values
    are stored as tagged JSON so datetimes and decimals come back with the
    same types they were written with.
    """

    def __init__(self, path: str = "twinanchor.db"):
        self._db = _SQLite(path)
        self._gateways: Dict[EntityKind, RecordGateway] = {
            k: (_SQLiteAuditGateway(self) if k is EntityKind.AUDIT_LOG else _SQLiteRecordGateway(self._db, k))
            for k in EntityKind
        }

    def gateway(self, kind: EntityKind) -> RecordGateway:
        return self._gateways[kind]

    def put_record(self, kind: EntityKind, record: Mapping[str, Any], *, org_id: str) -> Dict[str, Any]:
        if kind is EntityKind.AUDIT_LOG:
            raise ValueError("audit rows are written through record_audit()")
        existing = None
        if record.get("id") is not None:
            existing = self.gateway(kind).fetch(str(record["id"]))
        rec = _prepare_record(record, org_id, existing)
        data = {k: v for k, v in rec.items() if k not in ANCHOR_FIELDS}
        with self._db.tx() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO records("
                "kind, id, org_id, data_json, private_ledger_hash, private_ledger_txid, public_ledger_txhash"
                ") VALUES(?,?,?,?,?,?,?)",
                (
                    kind.value,
                    rec["id"],
                    rec.get("org_id"),
                    _dumps(data),
                    rec.get(PRIVATE_HASH_FIELD),
                    rec.get(PRIVATE_TX_FIELD),
                    rec.get(PUBLIC_TX_FIELD),
                ),
            )
        return rec

    def delete_record(self, kind: EntityKind, entity_id: str) -> bool:
        with self._db.tx() as conn:
            cur = conn.execute("DELETE FROM records WHERE kind=? AND id=?", (kind.value, str(entity_id)))
            return cur.rowcount > 0

    def find_records_by_reference(self, identifier: str) -> List[Tuple[EntityKind, Dict[str, Any]]]:
        with self._db.tx() as conn:
            rows = conn.execute(
                "SELECT kind, data_json, private_ledger_hash, private_ledger_txid, public_ledger_txhash "
                "FROM records WHERE id=? OR private_ledger_hash=? OR private_ledger_txid=? "
                "OR public_ledger_txhash=?",
                (identifier,) * 4,
            ).fetchall()
            audit_rows = conn.execute(
                f"SELECT {_AUDIT_COLS} FROM audit_rows WHERE id=? OR private_ledger_hash=? "
                "OR private_ledger_txid=? OR public_ledger_txhash=?",
                (identifier,) * 4,
            ).fetchall()
        out: List[Tuple[EntityKind, Dict[str, Any]]] = [
            (EntityKind(r["kind"]), _row_to_record(r)) for r in rows
        ]
        out.extend((EntityKind.AUDIT_LOG, _row_to_audit(r).as_record()) for r in audit_rows)
        return out

    def record_audit(
        self,
        *,
        org_id: str,
        user_id: Optional[str],
        action: str,
        entity_type: str,
        entity_id: str,
        before_data: Optional[Mapping[str, Any]] = None,
        after_data: Optional[Mapping[str, Any]] = None,
        refs: Optional[AnchorRefs] = None,
    ) -> AuditRow:
        refs = refs or AnchorRefs()
        row = AuditRow(
            id=_new_id(),
            org_id=org_id,
            user_id=user_id,
            action=action,
            entity_type=str(entity_type),
            entity_id=str(entity_id),
            before_data=dict(before_data) if before_data is not None else None,
            after_data=dict(after_data) if after_data is not None else None,
            private_ledger_hash=refs.private_ledger_hash,
            private_ledger_txid=refs.private_ledger_txid,
            public_ledger_txhash=refs.public_ledger_txhash,
        )
        with self._db.tx() as conn:
            conn.execute(
                f"INSERT INTO audit_rows({_AUDIT_COLS}) VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (
                    row.id,
                    row.org_id,
                    row.user_id,
                    row.action,
                    row.entity_type,
                    row.entity_id,
                    _dumps(row.before_data) if row.before_data is not None else None,
                    _dumps(row.after_data) if row.after_data is not None else None,
                    row.created_at.isoformat(),
                    row.private_ledger_hash,
                    row.private_ledger_txid,
                    row.public_ledger_txhash,
                    None,
                    None,
                    None,
                    "[]",
                ),
            )
        return row

    def _get_audit_row(self, row_id: str) -> Optional[AuditRow]:
        with self._db.tx() as conn:
            row = conn.execute(f"SELECT {_AUDIT_COLS} FROM audit_rows WHERE id=?", (row_id,)).fetchone()
        return _row_to_audit(row) if row else None

    def list_audit_rows(self, org_id: str, entity_type: str, entity_id: str) -> List[AuditRow]:
        with self._db.tx() as conn:
            rows = conn.execute(
                f"SELECT {_AUDIT_COLS} FROM audit_rows "
                "WHERE org_id=? AND entity_type=? AND entity_id=? ORDER BY created_at ASC, rowid ASC",
                (org_id, str(entity_type), str(entity_id)),
            ).fetchall()
        return [_row_to_audit(r) for r in rows]

    def _latest_audit(self, org_id: str, entity_type: str, entity_id: str, *, anchored: bool) -> Optional[AuditRow]:
        cond = "public_ledger_txhash IS NOT NULL" if anchored else "public_ledger_txhash IS NULL"
        with self._db.tx() as conn:
            row = conn.execute(
                f"SELECT {_AUDIT_COLS} FROM audit_rows "
                f"WHERE org_id=? AND entity_type=? AND entity_id=? AND {cond} "
                "ORDER BY created_at DESC, rowid DESC LIMIT 1",
                (org_id, str(entity_type), str(entity_id)),
            ).fetchone()
        return _row_to_audit(row) if row else None

    def find_most_recent_anchored_audit(
        self, org_id: str, entity_type: str, entity_id: str
    ) -> Optional[AuditRow]:
        return self._latest_audit(org_id, entity_type, entity_id, anchored=True)

    def find_latest_unanchored_audit(
        self, org_id: str, entity_type: str, entity_id: str
    ) -> Optional[AuditRow]:
        return self._latest_audit(org_id, entity_type, entity_id, anchored=False)

    def update_audit_row_with_anchor(
        self, row_id: str, refs: AnchorRefs, chain: Optional[VersionChainEntry] = None
    ) -> bool:
        sets = ["private_ledger_hash=?", "private_ledger_txid=?", "public_ledger_txhash=?"]
        params: List[Any] = [refs.private_ledger_hash, refs.private_ledger_txid, refs.public_ledger_txhash]
        if chain is not None:
            sets += ["version=?", "previous_hash=?", "previous_public_txhash=?", "changed_fields_json=?"]
            params += [
                chain.version,
                chain.previous_hash,
                chain.previous_public_txhash,
                json.dumps(list(chain.changed_fields)),
            ]
        params.append(row_id)
        with self._db.tx() as conn:
            cur = conn.execute(f"UPDATE audit_rows SET {', '.join(sets)} WHERE id=?", params)
            return cur.rowcount > 0

    def create_anchor_job_record(
        self,
        *,
        org_id: str,
        entity_type: str,
        entity_id: str,
        status: str,
        payload: Mapping[str, Any],
        result: Optional[Mapping[str, Any]] = None,
        error: Optional[str] = None,
    ) -> AnchorJobRecord:
        rec = AnchorJobRecord(
            id=_new_id(),
            org_id=org_id,
            entity_type=str(entity_type),
            entity_id=str(entity_id),
            status=status,
            payload=dict(payload),
            result=dict(result) if result is not None else None,
            error=error,
        )
        with self._db.tx() as conn:
            conn.execute(
                "INSERT INTO anchor_jobs(id, org_id, entity_type, entity_id, status, payload_json, "
                "result_json, error, created_at) VALUES(?,?,?,?,?,?,?,?,?)",
                (
                    rec.id,
                    rec.org_id,
                    rec.entity_type,
                    rec.entity_id,
                    rec.status,
                    _dumps(rec.payload),
                    _dumps(rec.result) if rec.result is not None else None,
                    rec.error,
                    rec.created_at.isoformat(),
                ),
            )
        return rec

    def list_anchor_job_records(
        self,
        org_id: Optional[str] = None,
        *,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[AnchorJobRecord]:
        where: List[str] = []
        params: List[Any] = []
        for col, val in (("org_id", org_id), ("entity_type", entity_type), ("entity_id", entity_id)):
            if val is not None:
                where.append(f"{col}=?")
                params.append(str(val))
        sql = "SELECT * FROM anchor_jobs"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(max(0, int(limit)))
        with self._db.tx() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_job(r) for r in rows]

    def put_organization(self, org: Organization) -> Organization:
        with self._db.tx() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO organizations(id, name, wallet_address, wallet_private_key_enc) "
                "VALUES(?,?,?,?)",
                (org.id, org.name, org.wallet_address, org.wallet_private_key_enc),
            )
        return org

    def find_organization(self, org_id: str) -> Optional[Organization]:
        with self._db.tx() as conn:
            row = conn.execute(
                "SELECT id, name, wallet_address, wallet_private_key_enc FROM organizations WHERE id=?",
                (org_id,),
            ).fetchone()
        if row is None:
            return None
        return Organization(
            id=row["id"],
            name=row["name"] or "",
            wallet_address=row["wallet_address"],
            wallet_private_key_enc=row["wallet_private_key_enc"],
        )

    def close(self) -> None:
        self._db.close()


# ------------------------------
# Factory
# ------------------------------


def make_datastore(dsn: Optional[str]) -> AnchorDatastore:
    """
    Factory for datastore backends.

    Accepted DSNs:
      - None or "mem://"            -> InMemoryAnchorDatastore
      - "sqlite:///:memory:"        -> SQLiteAnchorDatastore(":memory:")
      - "sqlite:///path/to/file.db" -> SQLiteAnchorDatastore("path/to/file.db")
    """
    if not dsn or dsn.strip().lower().startswith("mem://"):
        return InMemoryAnchorDatastore()
    dsn = dsn.strip()
    if dsn.lower().startswith("sqlite:///"):
        path = dsn[len("sqlite:///") :]
        if path in (":memory:", ":mem:"):
            path = ":memory:"
        logger.info("using sqlite datastore at %s", path)
        return SQLiteAnchorDatastore(path=path)
    raise ValueError(f"Unsupported datastore dsn: {dsn}")


__all__ = [
    "JOB_COMPLETED",
    "JOB_FAILED",
    "VersionChainEntry",
    "AuditRow",
    "AnchorJobRecord",
    "Organization",
    "AnchorDatastore",
    "InMemoryAnchorDatastore",
    "SQLiteAnchorDatastore",
    "make_datastore",
]
