# FILE: twinanchor/utils.py
from __future__ import annotations

import hashlib
import hmac
import json
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

# ---------------------------------------------------------------------------
# Log metadata sanitization helpers
# ---------------------------------------------------------------------------

_SANITIZE_MAX_DEPTH = 8
_SANITIZE_MAX_LIST_LEN = 256
_SANITIZE_MAX_STR_LEN = 2048

_HEX_RE = re.compile(r"^(0x)?[0-9a-fA-F]*$")

# Keys that look like secret material (checked case-insensitively, by substring)
_SECRET_KEY_MARKERS = (
    "private_key",
    "privatekey",
    "password",
    "secret",
    "token",
    "authorization",
    "_enc",
)


def sanitize_floats(obj: Any, *, default: Optional[float] = None, _depth: int = 0) -> Any:
    """
    Recursively replace NaN / +/-inf inside a nested structure.

    Non-finite floats become `default` (None unless given). Depth is bounded
    by `_SANITIZE_MAX_DEPTH`; deeper branches are returned unchanged.
    """
    if _depth > _SANITIZE_MAX_DEPTH:
        return obj

    if isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            return default
        return obj

    if isinstance(obj, Mapping):
        return {k: sanitize_floats(v, default=default, _depth=_depth + 1) for k, v in obj.items()}

    if isinstance(obj, (list, tuple)):
        seq = [sanitize_floats(x, default=default, _depth=_depth + 1) for x in obj]
        return tuple(seq) if isinstance(obj, tuple) else seq

    return obj


def prune_large_values(
    obj: Any,
    *,
    max_depth: int = _SANITIZE_MAX_DEPTH,
    max_list_len: int = _SANITIZE_MAX_LIST_LEN,
    max_str_len: int = _SANITIZE_MAX_STR_LEN,
    _depth: int = 0,
) -> Any:
    """
    Recursively prune overly large structures to keep log lines compact.

      - Strings longer than `max_str_len` are truncated and suffixed with "…".
      - Lists / tuples longer than `max_list_len` are truncated.
      - Branches deeper than `max_depth` are replaced by a small marker.
    """
    if _depth > max_depth:
        return {"_truncated": True, "_depth": _depth}

    if isinstance(obj, str):
        if len(obj) > max_str_len:
            return obj[: max_str_len - 1] + "…"
        return obj

    if isinstance(obj, (int, float, bool)) or obj is None:
        return obj

    if isinstance(obj, Mapping):
        return {
            k: prune_large_values(
                v,
                max_depth=max_depth,
                max_list_len=max_list_len,
                max_str_len=max_str_len,
                _depth=_depth + 1,
            )
            for k, v in obj.items()
        }

    if isinstance(obj, (list, tuple)):
        seq = list(obj)[:max_list_len]
        pruned = [
            prune_large_values(
                x,
                max_depth=max_depth,
                max_list_len=max_list_len,
                max_str_len=max_str_len,
                _depth=_depth + 1,
            )
            for x in seq
        ]
        return tuple(pruned) if isinstance(obj, tuple) else pruned

    return obj


def is_secret_key(key: str) -> bool:
    k = str(key).lower()
    return any(marker in k for marker in _SECRET_KEY_MARKERS)


def redact_secrets(obj: Any, *, _depth: int = 0) -> Any:
    """
    Replace values stored under secret-looking keys with "***".

    Signing keys, RPC passwords and encrypted wallet blobs must never reach a
    log line, even in encrypted form.
    """
    if _depth > _SANITIZE_MAX_DEPTH:
        return obj
    if isinstance(obj, Mapping):
        out: Dict[Any, Any] = {}
        for k, v in obj.items():
            if is_secret_key(k):
                out[k] = "***"
            else:
                out[k] = redact_secrets(v, _depth=_depth + 1)
        return out
    if isinstance(obj, (list, tuple)):
        seq = [redact_secrets(x, _depth=_depth + 1) for x in obj]
        return tuple(seq) if isinstance(obj, tuple) else seq
    return obj


@dataclass(frozen=True)
class SanitizeConfig:
    """Knobs for `sanitize_log_metadata`."""

    max_depth: int = _SANITIZE_MAX_DEPTH
    max_list_len: int = _SANITIZE_MAX_LIST_LEN
    max_str_len: int = _SANITIZE_MAX_STR_LEN
    sanitize_nan: bool = True
    prune_large: bool = True
    redact: bool = True
    forbid_keys: Sequence[str] = tuple()


def sanitize_log_metadata(obj: Any, *, config: SanitizeConfig | None = None) -> Any:
    """
    One-shot sanitization for structured log extras.

    Pipeline:
      1) replace NaN/Inf;
      2) prune deep / large structures;
      3) redact secret-looking keys;
      4) drop forbidden top-level keys.

    Never mutates the original object.
    """
    cfg = config or SanitizeConfig()

    data = obj
    if cfg.sanitize_nan:
        data = sanitize_floats(data)
    if cfg.prune_large:
        data = prune_large_values(
            data,
            max_depth=cfg.max_depth,
            max_list_len=cfg.max_list_len,
            max_str_len=cfg.max_str_len,
        )
    if cfg.redact:
        data = redact_secrets(data)
    if cfg.forbid_keys and isinstance(data, Mapping):
        forbidden = {k.lower() for k in cfg.forbid_keys}
        data = {k: v for k, v in data.items() if str(k).lower() not in forbidden}
    return data


# ---------------------------------------------------------------------------
# Canonical JSON + hashing helpers
# ---------------------------------------------------------------------------


def canonical_json_dumps(obj: Any, *, ensure_ascii: bool = False) -> str:
    """
    Serialize `obj` to compact JSON with lexicographically sorted keys.

    NaN / infinity are rejected (ValueError) rather than written as the
    non-standard `NaN` token; callers hashing the result rely on it being
    valid, reproducible JSON.
    """
    return json.dumps(
        obj,
        ensure_ascii=ensure_ascii,
        sort_keys=True,
        separators=(",", ":"),
        allow_nan=False,
    )


def sha256_hex(data: str | bytes) -> str:
    """SHA-256 of `data` (UTF-8 for str) as 64 lowercase hex chars."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def is_hex_string(s: Any, *, min_len: int = 1, max_len: Optional[int] = None, prefixed: bool = False) -> bool:
    """
    Return True if `s` is a hex string (optionally `0x`-prefixed).

    Length bounds apply to the digits only, not to the prefix.
    """
    if not isinstance(s, str) or not _HEX_RE.match(s):
        return False
    has_prefix = s[:2] in ("0x", "0X")
    if prefixed and not has_prefix:
        return False
    digits = s[2:] if has_prefix else s
    if len(digits) < min_len:
        return False
    if max_len is not None and len(digits) > max_len:
        return False
    return True


def strip_0x(s: str) -> str:
    return s[2:] if s[:2] in ("0x", "0X") else s


def secure_compare_hex(a: str, b: str) -> bool:
    """
    Constant-time comparison of two hex strings.

    Case and an optional `0x` prefix are normalized first.
    """
    if not isinstance(a, str) or not isinstance(b, str):
        return False
    return hmac.compare_digest(strip_0x(a).lower(), strip_0x(b).lower())


def first_nonempty(values: Iterable[Any]) -> Any:
    for v in values:
        if v not in (None, ""):
            return v
    return None


__all__ = [
    "SanitizeConfig",
    "sanitize_floats",
    "prune_large_values",
    "redact_secrets",
    "is_secret_key",
    "sanitize_log_metadata",
    "canonical_json_dumps",
    "sha256_hex",
    "is_hex_string",
    "strip_0x",
    "secure_compare_hex",
    "first_nonempty",
]
