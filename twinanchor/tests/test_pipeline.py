# twinanchor/tests/test_pipeline.py
import pytest
from eth_account import Account

from twinanchor.canonical import CanonicalizationError, canonical_digest
from twinanchor.crypto import WalletKeyStore
from twinanchor.entities import EntityKind
from twinanchor.pipeline import (
    AnchorPipeline,
    enrich_for_anchoring,
    enrich_payroll_entry,
    resolve_signing_key,
)
from twinanchor.private_ledger import PrivateLedgerUnavailable
from twinanchor.storage import Organization
from twinanchor.verify import ERR_TAMPERED, TracebackVerifier


def test_expense_scenario(datastore, private_ledger, public_ledger):
    datastore.put_record(EntityKind.EXPENSE, {"id": "e1", "amount": 45.99, "category": "supplies"}, org_id="org1")
    record = datastore.find_record(EntityKind.EXPENSE, "e1")

    result = AnchorPipeline(private_ledger, public_ledger).anchor_record(record, "expense", "e1")
    assert len(result.private_ledger_hash) == 64
    assert result.private_ledger_txid
    assert result.public_ledger_txhash.startswith("0x")
    assert result.private_ledger_hash == canonical_digest(record, "expense", "e1")

    verifier = TracebackVerifier(datastore, private_ledger, public_ledger)
    ok = verifier.verify(result.public_ledger_txhash)
    assert ok.verified is True
    assert ok.recomputed_hash == ok.on_chain_hash == result.private_ledger_hash
    assert ok.private_ledger_txid == result.private_ledger_txid

    datastore.put_record(EntityKind.EXPENSE, dict(record, amount=99.99), org_id="org1")
    bad = verifier.verify(result.public_ledger_txhash)
    assert bad.verified is False
    assert bad.error == ERR_TAMPERED


def test_pipeline_stops_at_first_failure(datastore, private_ledger, public_ledger, node, fake_web3):
    node.down = True
    with pytest.raises(PrivateLedgerUnavailable):
        AnchorPipeline(private_ledger, public_ledger).anchor_record({"id": "e1"}, "expense", "e1")
    assert fake_web3.eth.sent == []


def test_canonicalization_error_publishes_nothing(private_ledger, public_ledger, node):
    with pytest.raises(CanonicalizationError):
        AnchorPipeline(private_ledger, public_ledger).anchor_record({"id": "e1", "x": float("nan")}, "expense", "e1")
    assert "publish" not in node.calls


def test_same_record_same_hash_new_transactions(private_ledger, public_ledger):
    pipeline = AnchorPipeline(private_ledger, public_ledger)
    a = pipeline.anchor_record({"id": "c1", "name": "Acme"}, "customer", "c1")
    b = pipeline.anchor_record({"name": "Acme", "id": "c1"}, "customer", "c1")
    assert a.private_ledger_hash == b.private_ledger_hash
    assert a.private_ledger_txid != b.private_ledger_txid
    assert a.public_ledger_txhash != b.public_ledger_txhash


def test_payroll_entry_enrichment(datastore):
    datastore.put_organization(Organization(id="org1", name="Acme", wallet_address="0xOrgWallet"))
    datastore.put_record(EntityKind.EMPLOYEE, {"id": "emp1", "wallet_address": "0xEmpWallet"}, org_id="org1")
    datastore.put_record(EntityKind.PAYROLL, {"id": "p1"}, org_id="org1")
    entry = {"id": "pe1", "payroll_id": "p1", "employee_id": "emp1", "org_id": "org1", "net": 1000}

    enriched = enrich_payroll_entry(datastore, entry)
    assert enriched["employee_wallet_address"] == "0xEmpWallet"
    assert enriched["org_wallet_address"] == "0xOrgWallet"
    assert "employee_wallet_address" not in entry


def test_enrichment_skips_unknown_parties(datastore):
    entry = {"id": "pe1", "employee_id": "ghost", "org_id": "nobody"}
    assert enrich_for_anchoring(datastore, EntityKind.PAYROLL_ENTRY, entry) == entry
    assert enrich_for_anchoring(datastore, EntityKind.EXPENSE, {"id": "e1"}) == {"id": "e1"}


def test_resolve_signing_key(datastore, keystore, org_key):
    assert resolve_signing_key(datastore, keystore, "org1") is None

    datastore.put_organization(
        Organization(
            id="org1",
            wallet_address=Account.from_key(org_key).address,
            wallet_private_key_enc=keystore.encrypt_signing_key(org_key),
        )
    )
    assert resolve_signing_key(datastore, keystore, "org1") == org_key


def test_undecryptable_org_key_falls_back_to_master(datastore, keystore, org_key):
    datastore.put_organization(
        Organization(id="org1", wallet_private_key_enc=keystore.encrypt_signing_key(org_key))
    )
    broken = WalletKeyStore(secret_provider=lambda: "wrong-secret")
    assert resolve_signing_key(datastore, broken, "org1") is None
