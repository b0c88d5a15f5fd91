# FILE: twinanchor/canonical.py
from __future__ import annotations

"""
Canonical metadata for anchoring.

A record is reduced to the string

    {"data":{...},"entityId":"...","entityType":"..."}

with every key sorted, volatile and secret fields removed, and values
normalized to a single representation:

  - datetime -> "YYYY-MM-DDTHH:MM:SS.mmmZ" (UTC, naive treated as UTC);
  - date -> midnight UTC in the same form;
  - Decimal -> JSON number when a float carries it exactly, else its string;
  - int outside +/-(2**53 - 1) -> decimal string;
  - UUID -> str, Enum -> its value, tuple -> list.

The output is hashed and published permanently, so anything that cannot be
normalized (NaN, infinity, non-string keys, bytes, sets, arbitrary objects)
raises `CanonicalizationError` instead of being coerced.

Normalization is idempotent: re-serializing data recovered from the JSON
output yields the same bytes, which is what lets verification recompute a
hash from metadata recovered from the private ledger.
"""

import datetime as _dt
import enum
import json
import math
import uuid
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Mapping, Tuple

from .utils import canonical_json_dumps, sha256_hex

# Audit timestamps and anchor references change after anchoring; secrets must
# never be hashed into a public commitment.
STRIPPED_FIELDS: FrozenSet[str] = frozenset(
    {
        "created_at",
        "updated_at",
        "private_ledger_hash",
        "private_ledger_txid",
        "public_ledger_txhash",
        "wallet_private_key_enc",
        "private_key",
        "password_hash",
    }
)

# Any field with one of these suffixes holds encrypted material.
STRIPPED_SUFFIXES: Tuple[str, ...] = ("_enc", "_encrypted")

_MAX_SAFE_INT = 2**53 - 1
_MAX_DEPTH = 32


class CanonicalizationError(ValueError):
    """A record field cannot be normalized into canonical form."""


def is_stripped_field(name: str) -> bool:
    return name in STRIPPED_FIELDS or name.endswith(STRIPPED_SUFFIXES)


def _iso_utc(value: _dt.datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=_dt.timezone.utc)
    value = value.astimezone(_dt.timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def _normalize_decimal(value: Decimal, path: str) -> Any:
    if not value.is_finite():
        raise CanonicalizationError(f"non-finite decimal at {path}")
    f = float(value)
    if Decimal(repr(f)) == value:
        return f
    return format(value.normalize(), "f")


def normalize_value(value: Any, *, path: str = "data", _depth: int = 0) -> Any:
    """Map one field value to its canonical JSON-compatible form."""
    if _depth > _MAX_DEPTH:
        raise CanonicalizationError(f"nesting too deep at {path}")

    if value is None or isinstance(value, (str, bool)):
        return value

    if isinstance(value, enum.Enum):
        return normalize_value(value.value, path=path, _depth=_depth + 1)

    if isinstance(value, int):
        if -_MAX_SAFE_INT <= value <= _MAX_SAFE_INT:
            return value
        return str(value)

    if isinstance(value, float):
        if not math.isfinite(value):
            raise CanonicalizationError(f"non-finite float at {path}")
        return value

    if isinstance(value, Decimal):
        return _normalize_decimal(value, path)

    if isinstance(value, _dt.datetime):
        return _iso_utc(value)

    if isinstance(value, _dt.date):
        return _iso_utc(_dt.datetime(value.year, value.month, value.day))

    if isinstance(value, uuid.UUID):
        return str(value)

    if isinstance(value, Mapping):
        out: Dict[str, Any] = {}
        for k, v in value.items():
            if not isinstance(k, str):
                raise CanonicalizationError(f"non-string key {k!r} at {path}")
            out[k] = normalize_value(v, path=f"{path}.{k}", _depth=_depth + 1)
        return out

    if isinstance(value, (list, tuple)):
        return [
            normalize_value(v, path=f"{path}[{i}]", _depth=_depth + 1)
            for i, v in enumerate(value)
        ]

    raise CanonicalizationError(
        f"unsupported value of type {type(value).__name__} at {path}"
    )


def canonical_data(record: Mapping[str, Any]) -> Dict[str, Any]:
    """Record fields minus stripped ones, normalized."""
    if not isinstance(record, Mapping):
        raise CanonicalizationError(f"record must be a mapping, got {type(record).__name__}")
    data: Dict[str, Any] = {}
    for k, v in record.items():
        if not isinstance(k, str):
            raise CanonicalizationError(f"non-string field name {k!r}")
        if is_stripped_field(k):
            continue
        data[k] = normalize_value(v, path=f"data.{k}")
    return data


def serialize(record: Mapping[str, Any], entity_type: Any, entity_id: Any) -> str:
    """
    Canonical metadata string for `record` under (entity_type, entity_id).

    Pure; equal logical record state always gives byte-identical output.
    """
    t = entity_type.value if isinstance(entity_type, enum.Enum) else entity_type
    if not isinstance(t, str) or not t:
        raise CanonicalizationError("entity_type must be a non-empty string")
    if entity_id is None or entity_id == "":
        raise CanonicalizationError("entity_id must be non-empty")
    wrapped = {
        "data": canonical_data(record),
        "entityId": str(entity_id),
        "entityType": t,
    }
    try:
        return canonical_json_dumps(wrapped)
    except (TypeError, ValueError) as e:
        raise CanonicalizationError(str(e)) from e


def metadata_digest(canonical_metadata: str) -> str:
    """SHA-256 hex digest (64 chars) of a canonical metadata string."""
    return sha256_hex(canonical_metadata)


def canonical_digest(record: Mapping[str, Any], entity_type: Any, entity_id: Any) -> str:
    return metadata_digest(serialize(record, entity_type, entity_id))


def parse_canonical_metadata(canonical_metadata: str) -> Dict[str, Any]:
    """
    Inverse view of `serialize`: returns {"data", "entityType", "entityId"}.

    Raises CanonicalizationError for strings that are not canonical metadata.
    """
    try:
        doc = json.loads(canonical_metadata)
    except (TypeError, ValueError) as e:
        raise CanonicalizationError("metadata is not valid JSON") from e
    if not isinstance(doc, dict) or not isinstance(doc.get("data"), dict):
        raise CanonicalizationError("metadata has no data object")
    if not isinstance(doc.get("entityType"), str) or not isinstance(doc.get("entityId"), str):
        raise CanonicalizationError("metadata has no entity identity")
    return doc


__all__ = [
    "STRIPPED_FIELDS",
    "CanonicalizationError",
    "is_stripped_field",
    "normalize_value",
    "canonical_data",
    "serialize",
    "metadata_digest",
    "canonical_digest",
    "parse_canonical_metadata",
]
