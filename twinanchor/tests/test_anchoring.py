# twinanchor/tests/test_anchoring.py
import pytest

from twinanchor.anchoring import detect_action
from twinanchor.entities import EntityKind, UnknownEntityError
from twinanchor.storage import JOB_COMPLETED


@pytest.mark.parametrize(
    "method,path,action",
    [
        ("POST", "/v1/expenses", "create"),
        ("PUT", "/v1/expenses/e1", "update"),
        ("PATCH", "/v1/expenses/e1", "update"),
        ("POST", "/v1/invoices/i1/void", "void"),
        ("POST", "/v1/payroll/p1/complete/", "status_change"),
        ("PATCH", "/v1/invoices/i1/status", "status_change"),
        ("DELETE", "/v1/expenses/e1", "write"),
    ],
)
def test_detect_action(method, path, action):
    assert detect_action(method, path) == action


def test_trigger_auto_anchor(service, datastore):
    datastore.put_record(EntityKind.INVOICE, {"id": "i1", "total": 10}, org_id="org1")
    assert service.trigger_auto_anchor(
        entity_type="Invoice", entity_id="i1", org_id="org1", user_id="u1", method="PUT", path="/v1/invoices/i1"
    )
    assert service.queue.wait_idle(timeout=5.0)
    stored = datastore.find_record(EntityKind.INVOICE, "i1")
    assert stored["public_ledger_txhash"]
    [job] = service.list_jobs("org1")
    assert job.payload["action"] == "update"


def test_trigger_auto_anchor_unknown_type(service):
    assert service.trigger_auto_anchor(entity_type="spaceship", entity_id="x", org_id="org1") is False
    assert service.get_queue_status().queue_length == 0


def test_anchor_entities(service, datastore):
    datastore.put_record(EntityKind.EXPENSE, {"id": "e1", "amount": 5}, org_id="org1")
    datastore.put_record(EntityKind.EXPENSE, {"id": "e2", "amount": 6}, org_id="org1")
    rows = service.anchor_entities("org1", "u1", "expense", ["e1", "e2", "e3"])
    assert [r["status"] for r in rows] == ["anchored", "anchored", "not_found"]
    assert rows[0]["public_ledger_txhash"] != rows[1]["public_ledger_txhash"]
    assert "canonical_metadata" not in rows[0]

    again = service.anchor_entities("org1", "u1", "expense", ["e1"])
    assert again[0]["status"] == "already_anchored"
    assert again[0]["public_ledger_txhash"] == rows[0]["public_ledger_txhash"]

    jobs = service.list_jobs("org1")
    assert [j.status for j in jobs] == [JOB_COMPLETED, JOB_COMPLETED]
    [audit] = datastore.list_audit_rows("org1", "expense", "e1")
    assert audit.action == "anchor"
    assert audit.public_ledger_txhash == rows[0]["public_ledger_txhash"]


def test_anchor_entities_other_tenant_is_not_found(service, datastore):
    datastore.put_record(EntityKind.EXPENSE, {"id": "e1", "amount": 5}, org_id="org1")
    [row] = service.anchor_entities("org2", None, "expense", ["e1"])
    assert row["status"] == "not_found"


def test_anchor_entities_unknown_type(service):
    with pytest.raises(UnknownEntityError):
        service.anchor_entities("org1", None, "spaceship", ["x"])


def test_lookup(service, datastore):
    datastore.put_record(EntityKind.EXPENSE, {"id": "e1", "amount": 5}, org_id="org1")
    [row] = service.anchor_entities("org1", None, "expense", ["e1"])
    by_id = service.lookup("e1")
    assert by_id == [
        {
            "entity_type": "expense",
            "entity_id": "e1",
            "org_id": "org1",
            "private_ledger_hash": row["private_ledger_hash"],
            "private_ledger_txid": row["private_ledger_txid"],
            "public_ledger_txhash": row["public_ledger_txhash"],
        }
    ]
    assert service.lookup("unknown") == []


def test_chains_health(service, node):
    health = service.chains_health_check()
    assert health["private_ledger"]["blocks"] == 42
    assert health["public_ledger"]["network"] == "amoy"
    node.down = True
    assert service.chains_health_check()["private_ledger"]["connected"] is False
