# twinanchor/tests/test_storage.py
import datetime as dt
from decimal import Decimal

import pytest

from twinanchor.canonical import canonical_digest
from twinanchor.entities import AnchorRefs, EntityKind, RecordGateway
from twinanchor.storage import (
    JOB_COMPLETED,
    JOB_FAILED,
    InMemoryAnchorDatastore,
    Organization,
    SQLiteAnchorDatastore,
    VersionChainEntry,
    make_datastore,
)

REFS = AnchorRefs("aa" * 32, "bb" * 32, "0x" + "cc" * 32)


@pytest.fixture(params=["mem", "sqlite"])
def store(request, tmp_path):
    s = InMemoryAnchorDatastore() if request.param == "mem" else SQLiteAnchorDatastore(str(tmp_path / "t.db"))
    yield s
    s.close()


def test_every_kind_has_a_gateway(store):
    for kind in EntityKind:
        gw = store.gateway(kind)
        assert isinstance(gw, RecordGateway)
        assert gw.kind is kind


def test_put_and_find_record(store):
    stored = store.put_record(EntityKind.EXPENSE, {"id": "e1", "amount": Decimal("45.99")}, org_id="org1")
    assert stored["org_id"] == "org1"
    assert stored["private_ledger_hash"] is None

    rec = store.find_record(EntityKind.EXPENSE, "e1")
    assert rec["amount"] == Decimal("45.99")
    assert isinstance(rec["created_at"], dt.datetime)
    assert store.find_record(EntityKind.EXPENSE, "e1", "org2") is None
    assert store.find_record(EntityKind.INVOICE, "e1") is None


def test_anchor_fields_survive_updates(store):
    store.put_record(EntityKind.EXPENSE, {"id": "e1", "amount": 1}, org_id="org1")
    assert store.update_anchor_fields(EntityKind.EXPENSE, "e1", REFS)
    store.put_record(EntityKind.EXPENSE, {"id": "e1", "amount": 2}, org_id="org1")

    rec = store.find_record(EntityKind.EXPENSE, "e1")
    assert AnchorRefs.from_record(rec) == REFS
    assert rec["amount"] == 2
    assert store.update_anchor_fields(EntityKind.EXPENSE, "missing", REFS) is False


def test_stored_record_hashes_like_the_original(store):
    original = {"id": "b1", "qty": Decimal("12.50"), "made_on": dt.date(2024, 5, 1), "lot": 2**60}
    store.put_record(EntityKind.PRODUCTION_BATCH, original, org_id="org1")
    rec = store.find_record(EntityKind.PRODUCTION_BATCH, "b1")
    assert canonical_digest(rec, "production_batch", "b1") == canonical_digest(
        dict(original, org_id="org1"), "production_batch", "b1"
    )


def test_delete_record(store):
    store.put_record(EntityKind.CUSTOMER, {"id": "c1"}, org_id="org1")
    assert store.delete_record(EntityKind.CUSTOMER, "c1") is True
    assert store.find_record(EntityKind.CUSTOMER, "c1") is None
    assert store.delete_record(EntityKind.CUSTOMER, "c1") is False


def test_audit_rows_and_chain_fields(store):
    first = store.record_audit(
        org_id="org1", user_id="u1", action="create", entity_type="expense", entity_id="e1", after_data={"a": 1}
    )
    second = store.record_audit(
        org_id="org1", user_id="u1", action="update", entity_type="expense", entity_id="e1", after_data={"a": 2}
    )
    assert store.find_most_recent_anchored_audit("org1", "expense", "e1") is None
    assert store.find_latest_unanchored_audit("org1", "expense", "e1").id == second.id

    chain = VersionChainEntry(version=1)
    assert store.update_audit_row_with_anchor(first.id, REFS, chain)
    anchored = store.find_most_recent_anchored_audit("org1", "expense", "e1")
    assert anchored.id == first.id and anchored.version == 1 and anchored.refs == REFS

    link = VersionChainEntry(2, REFS.private_ledger_hash, REFS.public_ledger_txhash, ("a",))
    store.update_audit_row_with_anchor(second.id, AnchorRefs("dd" * 32, "ee" * 32, "0x" + "ff" * 32), link)
    rows = store.list_audit_rows("org1", "expense", "e1")
    assert [r.id for r in rows] == [first.id, second.id]
    assert rows[1].previous_hash == REFS.private_ledger_hash
    assert rows[1].changed_fields == ("a",)
    assert store.find_latest_unanchored_audit("org1", "expense", "e1") is None


def test_audit_row_is_an_anchorable_record(store):
    row = store.record_audit(
        org_id="org1", user_id="u1", action="void", entity_type="invoice", entity_id="i1", before_data={"s": "open"}
    )
    rec = store.find_record(EntityKind.AUDIT_LOG, row.id)
    assert rec["action"] == "void" and rec["before_data"] == {"s": "open"}
    assert store.update_anchor_fields(EntityKind.AUDIT_LOG, row.id, REFS)
    assert store.find_record(EntityKind.AUDIT_LOG, row.id)["public_ledger_txhash"] == REFS.public_ledger_txhash


def test_job_records_newest_first(store):
    for n in range(3):
        store.create_anchor_job_record(
            org_id="org1",
            entity_type="expense",
            entity_id=f"e{n}",
            status=JOB_COMPLETED if n < 2 else JOB_FAILED,
            payload={"n": n},
            error="boom" if n == 2 else None,
        )
    store.create_anchor_job_record(org_id="org2", entity_type="expense", entity_id="x", status=JOB_COMPLETED, payload={})

    jobs = store.list_anchor_job_records("org1")
    assert [j.entity_id for j in jobs] == ["e2", "e1", "e0"]
    assert jobs[0].status == JOB_FAILED and jobs[0].error == "boom"
    assert len(store.list_anchor_job_records("org1", limit=2)) == 2
    assert [j.entity_id for j in store.list_anchor_job_records("org1", entity_id="e1")] == ["e1"]
    assert len(store.list_anchor_job_records()) == 4


def test_find_records_by_reference(store):
    store.put_record(EntityKind.INVOICE, {"id": "i1"}, org_id="org1")
    store.update_anchor_fields(EntityKind.INVOICE, "i1", REFS)
    for ident in ("i1", REFS.private_ledger_hash, REFS.private_ledger_txid, REFS.public_ledger_txhash):
        [(kind, rec)] = store.find_records_by_reference(ident)
        assert kind is EntityKind.INVOICE and rec["id"] == "i1"
    assert store.find_records_by_reference("nothing") == []


def test_organizations(store):
    assert store.find_organization("org1") is None
    store.put_organization(Organization(id="org1", name="Acme", wallet_address="0xabc", wallet_private_key_enc="enc"))
    org = store.find_organization("org1")
    assert (org.name, org.wallet_address, org.wallet_private_key_enc) == ("Acme", "0xabc", "enc")


def test_audit_rows_cannot_be_put_directly(store):
    with pytest.raises(ValueError):
        store.put_record(EntityKind.AUDIT_LOG, {"id": "a1"}, org_id="org1")


def test_make_datastore():
    assert isinstance(make_datastore(None), InMemoryAnchorDatastore)
    assert isinstance(make_datastore("mem://"), InMemoryAnchorDatastore)
    sq = make_datastore("sqlite:///:memory:")
    assert isinstance(sq, SQLiteAnchorDatastore)
    sq.close()
    with pytest.raises(ValueError):
        make_datastore("postgres://db")
