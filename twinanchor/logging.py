# FILE: twinanchor/logging.py
from __future__ import annotations

import contextvars
import datetime as _dt
import json
import logging
import os
import sys
import time
import traceback
import uuid
from typing import Any, Dict, Mapping, Optional, Set

from .utils import SanitizeConfig, redact_secrets, sanitize_log_metadata

# ---------- Module-level config (env-driven, safe defaults) ----------
_LOG_SCHEMA = os.environ.get("TWINANCHOR_LOG_SCHEMA", "twinanchor.log.v1")
_LOG_SERVICE = os.environ.get("TWINANCHOR_SERVICE", "twinanchor")
_LOG_VERSION = os.environ.get(
    "TWINANCHOR_BUILD_VERSION", os.environ.get("TWINANCHOR_VERSION", "0.0.0")
)
_LOG_ENV = os.environ.get("TWINANCHOR_ENV", os.environ.get("ENV", "dev"))
_LOG_INSTANCE = os.environ.get(
    "TWINANCHOR_INSTANCE", os.uname().nodename if hasattr(os, "uname") else "unknown"
)

# Max chars per string field
try:
    _MAX_FIELD = int(os.environ.get("TWINANCHOR_LOG_MAX_FIELD", "8192"))
    _MAX_FIELD = max(512, _MAX_FIELD)
except ValueError:
    _MAX_FIELD = 8192

_INCLUDE_STACK = os.environ.get("TWINANCHOR_LOG_INCLUDE_STACK", "1") == "1"

# Redaction keys for headers (case-insensitive)
_DEFAULT_REDACT = {
    "authorization",
    "proxy-authorization",
    "cookie",
    "set-cookie",
    "x-api-key",
    "x-auth-token",
}
_REDACT_KEYS = {
    k.strip().lower()
    for k in os.environ.get("TWINANCHOR_LOG_REDACT", "").split(",")
    if k.strip()
} or _DEFAULT_REDACT

# Record snapshots must never be copied into log lines
_FORBIDDEN_META_KEYS = {
    "record",
    "metadata",
    "full_metadata",
    "before_data",
    "after_data",
    "body",
}

# Standard LogRecord attributes that are not treated as dynamic meta
_LOG_RECORD_STD_ATTRS: Set[str] = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
}

# Anchoring envelope fields, promoted to top level when bound or passed via extra=
_ENVELOPE_FIELDS = (
    "req_id",
    "org_id",
    "user_id",
    "entity_type",
    "entity_id",
    "action",
    "retry",
    "version",
    "stream_key",
    "private_tx",
    "public_tx",
    "block_number",
    "signer",
    "outcome",
    "path",
    "method",
    "status",
    "latency_ms",
    "threat_label",
)

# ---------- Context management ----------
_log_ctx: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "twinanchor_log_ctx", default={}
)


def bind(**fields: Any) -> None:
    """Merge fields into the current logging context (per-thread / per-coroutine)."""
    cur = dict(_log_ctx.get())
    for k, v in fields.items():
        if v is None:
            continue
        cur[str(k)] = v
    _log_ctx.set(cur)


def unbind(*keys: str) -> None:
    cur = dict(_log_ctx.get())
    for k in keys:
        cur.pop(k, None)
    _log_ctx.set(cur)


def reset() -> None:
    _log_ctx.set({})


def context() -> Dict[str, Any]:
    return dict(_log_ctx.get())


# ---------- Helpers ----------
def _ts_iso() -> str:
    # RFC3339 with milliseconds, UTC Z
    now = _dt.datetime.now(_dt.timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def _compact_json(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def _truncate(v: Any) -> Any:
    if isinstance(v, str) and len(v) > _MAX_FIELD:
        return v[:_MAX_FIELD] + "...<truncated>"
    return v


def _redact_key(k: str) -> bool:
    return k.lower() in _REDACT_KEYS


def scrub_dict(d: Dict[str, Any]) -> Dict[str, Any]:
    """
    Scrub obvious secrets from a dict (typically HTTP headers).

    Keys listed in `_REDACT_KEYS` get replaced by "***". Nested dictionaries
    are scrubbed recursively.
    """
    out: Dict[str, Any] = {}
    for k, v in (d or {}).items():
        if _redact_key(k):
            out[k] = "***"
        else:
            out[k] = v if not isinstance(v, dict) else scrub_dict(v)
    return out


def _meta_from_record(
    record: logging.LogRecord, evt_keys: Set[str]
) -> Optional[Dict[str, Any]]:
    """
    Collect non-standard LogRecord attributes into a sanitized `meta` dict.

    Forbidden keys (record snapshots) are dropped, secret-looking keys are
    redacted, large values pruned.
    """
    raw_meta: Dict[str, Any] = {}
    for k, v in record.__dict__.items():
        if k in _LOG_RECORD_STD_ATTRS or k in evt_keys:
            continue
        if k.startswith("_") or k == "message":
            continue
        if k.lower() in _FORBIDDEN_META_KEYS:
            continue
        raw_meta[k] = v

    if not raw_meta:
        return None

    meta = sanitize_log_metadata(
        raw_meta,
        config=SanitizeConfig(forbid_keys=tuple(_FORBIDDEN_META_KEYS)),
    )
    return {k: _truncate(v) for k, v in meta.items()} or None


# ---------- JSON formatter ----------
def _merge_optional(dst: Dict[str, Any], picks: Mapping[str, Any]) -> None:
    for k, v in picks.items():
        if v is None:
            continue
        if isinstance(v, float) and (v != v or v in (float("inf"), float("-inf"))):
            continue
        dst[k] = _truncate(v)


class JSONFormatter(logging.Formatter):
    """
    JSON formatter with a stable envelope.

    Envelope fields:
      - schema, service, version, env, instance
      - ts, lvl, msg, logger
      - req_id, org_id, user_id
      - entity_type, entity_id, action, retry, version
      - stream_key, private_tx, public_tx, block_number, signer, outcome
      - path, method, status, latency_ms

    Anything else passed via `extra=` lands in a sanitized `meta` object.
    """

    def __init__(self, *, include_stack: bool = True):
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        ctx = context()

        evt: Dict[str, Any] = {
            "schema": _LOG_SCHEMA,
            "service": _LOG_SERVICE,
            "version": _LOG_VERSION,
            "env": _LOG_ENV,
            "instance": _LOG_INSTANCE,
            "ts": _ts_iso(),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": str(record.getMessage()),
        }

        # Prefer record.<attr> (explicit extra=) over bound context
        picks: Dict[str, Any] = {}
        for name in _ENVELOPE_FIELDS:
            v = getattr(record, name, None)
            if v is None:
                v = ctx.get(name)
            picks[name] = v
        # "version" in the envelope is the build version; anchoring version goes elsewhere
        anchor_version = picks.pop("version", None)
        if anchor_version is not None:
            picks["anchor_version"] = anchor_version
        _merge_optional(evt, picks)

        if record.exc_info and self.include_stack:
            exc_type, exc_val, exc_tb = record.exc_info
            evt["exc_type"] = getattr(exc_type, "__name__", str(exc_type))
            evt["exc_message"] = str(exc_val)[:_MAX_FIELD]
            evt["stack"] = "".join(
                traceback.format_exception(exc_type, exc_val, exc_tb)
            )[:_MAX_FIELD]

        meta = _meta_from_record(record, evt_keys=set(_ENVELOPE_FIELDS))
        if meta:
            evt["meta"] = meta

        return _compact_json(evt)


# ---------- Root / uvicorn integration ----------
def _clear_handlers(logger: logging.Logger) -> None:
    for h in list(logger.handlers):
        logger.removeHandler(h)


def configure_json_logging(
    level: str = "INFO",
    *,
    include_uvicorn: bool = True,
    stream: Any = None,
    include_stack: bool = _INCLUDE_STACK,
) -> logging.Logger:
    """Configure root (+ optionally uvicorn) for JSON output."""
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    stream = stream or sys.stderr

    h = logging.StreamHandler(stream=stream)
    h.setFormatter(JSONFormatter(include_stack=include_stack))
    h.setLevel(lvl)

    root = logging.getLogger()
    root.setLevel(lvl)
    _clear_handlers(root)
    root.addHandler(h)

    if include_uvicorn:
        for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
            lg = logging.getLogger(name)
            lg.setLevel(lvl)
            _clear_handlers(lg)
            lg.addHandler(h)
            lg.propagate = False

    return root


# ---------- Request helpers ----------
def ensure_request_id(headers: Optional[Dict[str, str]] = None) -> str:
    """Get or create a request id and bind it into the logging context."""
    rid = None
    if headers:
        for k in ("x-request-id", "x-amzn-trace-id"):
            if k in headers:
                rid = headers[k]
                break
    if not rid:
        rid = uuid.uuid4().hex[:16]
    bind(req_id=rid)
    return rid


def bind_anchor_context(
    *,
    org_id: Optional[str] = None,
    user_id: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    action: Optional[str] = None,
) -> None:
    """Bind the identity of the entity being anchored or verified."""
    bind(
        org_id=org_id,
        user_id=user_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
    )


def log_anchor_event(
    logger: logging.Logger,
    *,
    outcome: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    private_tx: Optional[str] = None,
    public_tx: Optional[str] = None,
    block_number: Optional[int] = None,
    retry: Optional[int] = None,
    message: str = "anchor",
    extra: Optional[Dict[str, Any]] = None,
    level: int = logging.INFO,
) -> None:
    """
    Structured line for anchoring lifecycle events.

    Only identifiers and ledger references are logged, never record contents.
    """
    extra_dict: Dict[str, Any] = {
        "outcome": outcome,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "private_tx": private_tx,
        "public_tx": public_tx,
        "block_number": block_number,
        "retry": retry,
    }
    if extra:
        for k, v in extra.items():
            if v is None or str(k).lower() in _FORBIDDEN_META_KEYS:
                continue
            extra_dict[str(k)] = _truncate(v)
    logger.log(level, message, extra=redact_secrets(extra_dict))


def log_security_event(
    logger: logging.Logger,
    *,
    threat_label: str,
    org_id: Optional[str] = None,
    message: str = "security_event",
    extra: Optional[Dict[str, Any]] = None,
    level: int = logging.WARNING,
) -> None:
    """
    Security-relevant events (key decryption failures, fallbacks to the
    master signing key, rejected tokens). Never carries key material.
    """
    extra_dict: Dict[str, Any] = {"threat_label": threat_label, "org_id": org_id}
    if extra:
        for k, v in extra.items():
            if v is None or str(k).lower() in _FORBIDDEN_META_KEYS:
                continue
            extra_dict[str(k)] = _truncate(v)
    logger.log(level, message, extra=redact_secrets(extra_dict))


# ---------- ASGI middleware (structured request logs) ----------
class RequestLogMiddleware:
    """
    ASGI middleware that emits JSON `http.start` / `http.finish` lines with
    req_id, method, path, status and latency_ms. Bodies are never logged.

    Usage:
        app.add_middleware(RequestLogMiddleware, log_headers=False)
    """

    def __init__(
        self,
        app,
        *,
        logger_name: str = "twinanchor.http",
        log_headers: bool = False,
    ):
        self.app = app
        self.log = logging.getLogger(logger_name)
        self.log_headers = bool(log_headers)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return await self.app(scope, receive, send)

        method = scope.get("method", "")
        path = scope.get("path", "")
        headers = {
            k.decode("latin1").lower(): v.decode("latin1")
            for k, v in (scope.get("headers") or [])
        }
        rid = ensure_request_id(headers)
        bind(
            path=path,
            method=method,
            org_id=headers.get("x-org-id"),
            user_id=headers.get("x-user-id"),
        )

        if self.log_headers:
            self.log.info("http.start", extra={"headers": scrub_dict(headers)})
        else:
            self.log.debug("http.start")

        t0 = time.perf_counter()
        status_holder: Dict[str, Any] = {"code": None}

        async def _send_wrapper(message):
            if message["type"] == "http.response.start":
                status_holder["code"] = message.get("status")
                raw_headers = list(message.get("headers") or [])
                raw_headers.append((b"x-request-id", rid.encode("latin1")))
                message = dict(message, headers=raw_headers)
            await send(message)

        try:
            await self.app(scope, receive, _send_wrapper)
        finally:
            dt_ms = (time.perf_counter() - t0) * 1000.0
            self.log.info(
                "http.finish",
                extra={
                    "req_id": rid,
                    "path": path,
                    "method": method,
                    "status": status_holder["code"],
                    "latency_ms": round(dt_ms, 3),
                },
            )
            unbind("req_id", "path", "method", "org_id", "user_id")


# ---------- Convenience: module-level logger ----------
_configured = False


def get_logger(name: str = "twinanchor") -> logging.Logger:
    """
    Return a logger; the first call installs the JSON handler on root
    (+ uvicorn) at TWINANCHOR_LOG_LEVEL.
    """
    global _configured
    if not _configured:
        configure_json_logging(level=os.environ.get("TWINANCHOR_LOG_LEVEL", "INFO"))
        _configured = True
    return logging.getLogger(name)


__all__ = [
    "bind",
    "unbind",
    "reset",
    "context",
    "configure_json_logging",
    "get_logger",
    "ensure_request_id",
    "bind_anchor_context",
    "log_anchor_event",
    "log_security_event",
    "JSONFormatter",
    "RequestLogMiddleware",
    "scrub_dict",
]
