# FILE: twinanchor/entities.py
"""
Anchorable entity kinds and the record gateway they are reached through.

Every kind is a closed enum member. A datastore resolves one `RecordGateway`
per kind when it is constructed, so anchoring code never dispatches on raw
entity-type strings.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Protocol, runtime_checkable

# Anchor-reference columns carried by every anchorable record.
PRIVATE_HASH_FIELD = "private_ledger_hash"
PRIVATE_TX_FIELD = "private_ledger_txid"
PUBLIC_TX_FIELD = "public_ledger_txhash"
ANCHOR_FIELDS = (PRIVATE_HASH_FIELD, PRIVATE_TX_FIELD, PUBLIC_TX_FIELD)


class UnknownEntityError(ValueError):
    """Raised when a string does not name an anchorable entity kind."""


class EntityKind(str, Enum):
    EXPENSE = "expense"
    INVOICE = "invoice"
    PAYROLL = "payroll"
    PAYROLL_ENTRY = "payroll_entry"
    PRODUCTION_BATCH = "production_batch"
    PRODUCTION_EVENT = "production_event"
    EMPLOYEE = "employee"
    CUSTOMER = "customer"
    ORGANIZATION_MEMBER = "organization_member"
    AUDIT_LOG = "audit_log"

    @classmethod
    def parse(cls, value: "str | EntityKind") -> "EntityKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise UnknownEntityError(f"unknown entity type: {value!r}") from None

    @property
    def table(self) -> str:
        return _TABLES[self]

    @property
    def links_wallet_parties(self) -> bool:
        """Records of this kind get both counterparties' wallet addresses inlined."""
        return self is EntityKind.PAYROLL_ENTRY


_TABLES: Dict[EntityKind, str] = {
    EntityKind.EXPENSE: "expenses",
    EntityKind.INVOICE: "invoices",
    EntityKind.PAYROLL: "payrolls",
    EntityKind.PAYROLL_ENTRY: "payroll_entries",
    EntityKind.PRODUCTION_BATCH: "production_batches",
    EntityKind.PRODUCTION_EVENT: "production_events",
    EntityKind.EMPLOYEE: "employees",
    EntityKind.CUSTOMER: "customers",
    EntityKind.ORGANIZATION_MEMBER: "organization_members",
    EntityKind.AUDIT_LOG: "audit_logs",
}


def stream_key(entity_type: "str | EntityKind", entity_id: str) -> str:
    """Private-ledger stream key for an entity: "{entityType}:{entityId}"."""
    t = entity_type.value if isinstance(entity_type, EntityKind) else str(entity_type)
    return f"{t}:{entity_id}"


@dataclass(frozen=True, slots=True)
class AnchorRefs:
    """The three anchor-reference fields written back to a record."""

    private_ledger_hash: Optional[str] = None
    private_ledger_txid: Optional[str] = None
    public_ledger_txhash: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return bool(self.private_ledger_txid) and bool(self.public_ledger_txhash)

    def as_fields(self) -> Dict[str, Optional[str]]:
        return {
            PRIVATE_HASH_FIELD: self.private_ledger_hash,
            PRIVATE_TX_FIELD: self.private_ledger_txid,
            PUBLIC_TX_FIELD: self.public_ledger_txhash,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "AnchorRefs":
        return cls(
            private_ledger_hash=record.get(PRIVATE_HASH_FIELD),
            private_ledger_txid=record.get(PRIVATE_TX_FIELD),
            public_ledger_txhash=record.get(PUBLIC_TX_FIELD),
        )


@runtime_checkable
class RecordGateway(Protocol):
    """Fetch/update capability pair for one entity kind."""

    kind: EntityKind

    def fetch(self, entity_id: str, org_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        ...

    def update_anchor_fields(self, entity_id: str, refs: AnchorRefs) -> bool:
        ...


__all__ = [
    "ANCHOR_FIELDS",
    "PRIVATE_HASH_FIELD",
    "PRIVATE_TX_FIELD",
    "PUBLIC_TX_FIELD",
    "UnknownEntityError",
    "EntityKind",
    "stream_key",
    "AnchorRefs",
    "RecordGateway",
]
