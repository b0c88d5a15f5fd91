# twinanchor/tests/test_canonical.py
import datetime as dt
import enum
import uuid
from decimal import Decimal

import pytest

from twinanchor.canonical import (
    CanonicalizationError,
    canonical_digest,
    metadata_digest,
    normalize_value,
    parse_canonical_metadata,
    serialize,
)
from twinanchor.entities import EntityKind


def test_expense_serialization_is_exact():
    out = serialize({"id": "e1", "amount": 45.99, "category": "supplies"}, "expense", "e1")
    assert out == '{"data":{"amount":45.99,"category":"supplies","id":"e1"},"entityId":"e1","entityType":"expense"}'


def test_key_order_does_not_matter():
    a = {"id": "e1", "amount": 45.99, "meta": {"z": 1, "a": [1, {"y": 2, "b": 3}]}}
    b = {"meta": {"a": [1, {"b": 3, "y": 2}], "z": 1}, "amount": 45.99, "id": "e1"}
    assert serialize(a, "expense", "e1") == serialize(b, EntityKind.EXPENSE, "e1")


def test_volatile_and_secret_fields_are_stripped():
    record = {
        "id": "o1",
        "name": "Acme",
        "created_at": dt.datetime(2024, 1, 1),
        "updated_at": dt.datetime(2024, 2, 1),
        "private_ledger_hash": "ab" * 32,
        "private_ledger_txid": "cd" * 32,
        "public_ledger_txhash": "0x" + "ef" * 32,
        "wallet_private_key_enc": "c2VjcmV0",
        "api_token_encrypted": "xyz",
        "ssn_enc": "abc",
    }
    doc = parse_canonical_metadata(serialize(record, "customer", "o1"))
    assert doc["data"] == {"id": "o1", "name": "Acme"}


def test_anchor_fields_do_not_change_the_hash():
    base = {"id": "e1", "amount": 10}
    anchored = dict(base, private_ledger_hash="aa" * 32, public_ledger_txhash="0x" + "bb" * 32)
    assert canonical_digest(base, "expense", "e1") == canonical_digest(anchored, "expense", "e1")


def test_datetime_and_date_normalization():
    aware = dt.datetime(2024, 3, 1, 12, 30, 5, 678901, tzinfo=dt.timezone(dt.timedelta(hours=2)))
    assert normalize_value(aware) == "2024-03-01T10:30:05.678Z"
    assert normalize_value(dt.datetime(2024, 3, 1, 10, 30, 5)) == "2024-03-01T10:30:05.000Z"
    assert normalize_value(dt.date(2024, 3, 1)) == "2024-03-01T00:00:00.000Z"


def test_decimal_normalization():
    assert normalize_value(Decimal("45.99")) == 45.99
    assert normalize_value(Decimal("100")) == 100.0
    assert normalize_value(Decimal("0.10000000000000000000001")) == "0.10000000000000000000001"
    with pytest.raises(CanonicalizationError):
        normalize_value(Decimal("NaN"))


def test_big_integers_become_strings():
    assert normalize_value(2**53 - 1) == 2**53 - 1
    assert normalize_value(2**53) == str(2**53)
    assert normalize_value(-(2**60)) == str(-(2**60))


def test_uuid_and_enum_values():
    class Status(enum.Enum):
        PAID = "paid"

    u = uuid.UUID("12345678-1234-5678-1234-567812345678")
    assert normalize_value(u) == "12345678-1234-5678-1234-567812345678"
    assert normalize_value(Status.PAID) == "paid"
    assert normalize_value((1, 2)) == [1, 2]


@pytest.mark.parametrize("bad", [float("nan"), float("inf"), {1, 2}, b"raw", object()])
def test_unnormalizable_values_fail_loudly(bad):
    with pytest.raises(CanonicalizationError):
        serialize({"id": "x", "value": bad}, "expense", "x")


def test_non_string_keys_fail():
    with pytest.raises(CanonicalizationError):
        serialize({"id": "x", "nested": {1: "a"}}, "expense", "x")


def test_entity_identity_required():
    with pytest.raises(CanonicalizationError):
        serialize({"id": "x"}, "", "x")
    with pytest.raises(CanonicalizationError):
        serialize({"id": "x"}, "expense", "")


def test_recovered_metadata_reserializes_identically():
    record = {
        "id": "b1",
        "qty": Decimal("12.5"),
        "big": 2**70,
        "when": dt.datetime(2024, 5, 6, 7, 8, 9, tzinfo=dt.timezone.utc),
        "tags": ("a", "b"),
    }
    first = serialize(record, "production_batch", "b1")
    doc = parse_canonical_metadata(first)
    assert serialize(doc["data"], doc["entityType"], doc["entityId"]) == first
    assert metadata_digest(first) == canonical_digest(record, "production_batch", "b1")


def test_digest_is_sha256_hex():
    d = canonical_digest({"id": "e1"}, "expense", "e1")
    assert len(d) == 64
    assert int(d, 16) >= 0


def test_parse_rejects_non_metadata():
    with pytest.raises(CanonicalizationError):
        parse_canonical_metadata("not json")
    with pytest.raises(CanonicalizationError):
        parse_canonical_metadata('{"data": 1}')
