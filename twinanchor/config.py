# twinanchor/config.py
from __future__ import annotations

import hashlib
import logging
import os
import threading
from typing import Any, Dict, FrozenSet, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict

from .utils import canonical_json_dumps


_log = logging.getLogger(__name__)

ENV_PREFIX = "TWINANCHOR_"


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        _log.warning("ignoring non-numeric %s=%r", name, raw)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        _log.warning("ignoring non-integer %s=%r", name, raw)
        return default


def _env_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip()


def _load_yaml_mapping(path: str) -> Dict[str, Any]:
    """
    Load a flat top-level mapping from YAML.

      - Missing path -> empty mapping.
      - Only a dict at top level is accepted.
      - Non-scalar values are ignored (Settings has scalar fields only,
        except the CORS origin list which may be given as a list).
    """
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except (OSError, yaml.YAMLError):
        _log.warning("failed to load YAML config from %s", path, exc_info=True)
        return {}
    if not isinstance(doc, dict):
        return {}
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if isinstance(v, (str, int, float, bool)) or v is None:
            out[str(k)] = v
        elif isinstance(v, list) and all(isinstance(x, str) for x in v):
            out[str(k)] = tuple(v)
        else:
            _log.warning("ignoring non-scalar config key %s", k)
    return out


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class Settings(BaseModel):
    """
    Process configuration snapshot.

    Secrets (RPC password, master signing key, wallet encryption secret) are
    not part of Settings; the components that need them read them from the
    environment variables named here.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    # --- Core / identity --------------------------------------------------

    debug: bool = False
    version: str = "dev"
    app_name: str = "twinanchor"
    config_origin: str = "defaults"
    log_level: str = "INFO"

    # --- Primary datastore ------------------------------------------------

    # "mem://" or "sqlite:///path/to/file.db"
    datastore_dsn: str = "mem://"

    # --- Private ledger (MultiChain JSON-RPC) ------------------------------

    private_rpc_host: str = "127.0.0.1"
    private_rpc_port: int = 4798
    private_rpc_user: str = "multichainrpc"
    private_rpc_password_env: str = "TWINANCHOR_PRIVATE_RPC_PASSWORD"
    private_chain_name: str = "dxerchain"
    private_stream_name: str = "dxer-anchors"
    private_rpc_timeout_s: float = 15.0
    private_health_timeout_s: float = 4.0

    # --- Public ledger (EVM chain) ------------------------------------------

    public_network: str = "amoy"
    public_chain_id: int = 80002
    public_rpc_url: str = "https://rpc-amoy.polygon.technology"
    public_explorer_url: str = "https://amoy.polygonscan.com"
    public_currency_symbol: str = "POL"
    public_private_key_env: str = "TWINANCHOR_PUBLIC_PRIVATE_KEY"
    public_wallet_address: str = ""
    public_rpc_timeout_s: float = 30.0
    public_health_timeout_s: float = 5.0
    public_receipt_timeout_s: float = 120.0
    public_confirmations: int = 1

    # --- Auto-anchor queue --------------------------------------------------

    queue_max_retries: int = 3
    queue_retry_base_s: float = 2.0

    # --- Key store ----------------------------------------------------------

    wallet_encryption_key_env: str = "TWINANCHOR_WALLET_ENCRYPTION_KEY"

    # --- HTTP surface -------------------------------------------------------

    cors_origins: Tuple[str, ...] = ()
    # Name of the env var holding an optional static bearer token for the API.
    service_token_env: str = "TWINANCHOR_SERVICE_TOKEN"
    prom_http_enable: bool = True

    # --- Runtime overrides --------------------------------------------------

    allow_runtime_override: bool = True
    # Fields that stay fixed for the life of the process.
    immutable_fields: FrozenSet[str] = frozenset(
        {
            "datastore_dsn",
            "private_stream_name",
            "public_chain_id",
        }
    )

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #

    @property
    def private_rpc_url(self) -> str:
        return f"http://{self.private_rpc_host}:{self.private_rpc_port}"

    def config_hash(self) -> str:
        """Stable hash of the current settings, safe to log."""
        payload = self.model_dump(mode="json")
        payload["immutable_fields"] = sorted(self.immutable_fields)
        return hashlib.sha256(canonical_json_dumps(payload).encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------

# (env suffix, settings field, parser)
_ENV_FIELDS = (
    ("DEBUG", "debug", _env_bool),
    ("VERSION", "version", _env_str),
    ("LOG_LEVEL", "log_level", _env_str),
    ("DATASTORE_DSN", "datastore_dsn", _env_str),
    ("PRIVATE_RPC_HOST", "private_rpc_host", _env_str),
    ("PRIVATE_RPC_PORT", "private_rpc_port", _env_int),
    ("PRIVATE_RPC_USER", "private_rpc_user", _env_str),
    ("PRIVATE_CHAIN_NAME", "private_chain_name", _env_str),
    ("PRIVATE_STREAM_NAME", "private_stream_name", _env_str),
    ("PRIVATE_RPC_TIMEOUT_S", "private_rpc_timeout_s", _env_float),
    ("PRIVATE_HEALTH_TIMEOUT_S", "private_health_timeout_s", _env_float),
    ("PUBLIC_NETWORK", "public_network", _env_str),
    ("PUBLIC_CHAIN_ID", "public_chain_id", _env_int),
    ("PUBLIC_RPC_URL", "public_rpc_url", _env_str),
    ("PUBLIC_EXPLORER_URL", "public_explorer_url", _env_str),
    ("PUBLIC_CURRENCY_SYMBOL", "public_currency_symbol", _env_str),
    ("PUBLIC_WALLET_ADDRESS", "public_wallet_address", _env_str),
    ("PUBLIC_RPC_TIMEOUT_S", "public_rpc_timeout_s", _env_float),
    ("PUBLIC_HEALTH_TIMEOUT_S", "public_health_timeout_s", _env_float),
    ("PUBLIC_RECEIPT_TIMEOUT_S", "public_receipt_timeout_s", _env_float),
    ("PUBLIC_CONFIRMATIONS", "public_confirmations", _env_int),
    ("QUEUE_MAX_RETRIES", "queue_max_retries", _env_int),
    ("QUEUE_RETRY_BASE_S", "queue_retry_base_s", _env_float),
    ("PROM_HTTP_ENABLE", "prom_http_enable", _env_bool),
    ("ALLOW_RUNTIME_OVERRIDE", "allow_runtime_override", _env_bool),
)

# Bounds applied to numeric env overrides; out-of-range values are ignored.
_ENV_BOUNDS: Dict[str, Tuple[float, float]] = {
    "private_rpc_port": (1, 65535),
    "private_rpc_timeout_s": (0.1, 600.0),
    "private_health_timeout_s": (0.1, 60.0),
    "public_chain_id": (1, 2**63),
    "public_rpc_timeout_s": (0.1, 600.0),
    "public_health_timeout_s": (0.1, 60.0),
    "public_receipt_timeout_s": (1.0, 3600.0),
    "public_confirmations": (1, 64),
    "queue_max_retries": (0, 20),
    "queue_retry_base_s": (0.0, 300.0),
}


def _load_settings() -> Settings:
    """
    Load Settings from defaults, optional YAML, and environment variables.

    Priority:
      1. Settings defaults (in-code).
      2. YAML file pointed to by TWINANCHOR_CONFIG_PATH.
      3. Environment variables (TWINANCHOR_*), bounds-checked.
    """
    merged: Dict[str, Any] = Settings().model_dump()
    origin = "defaults"

    # 1) YAML overlay
    yaml_path = os.environ.get(ENV_PREFIX + "CONFIG_PATH", "").strip()
    yaml_doc = _load_yaml_mapping(yaml_path)
    if yaml_doc:
        tmp = dict(merged)
        tmp.update(yaml_doc)
        merged = Settings(**tmp).model_dump()  # enforces extra="forbid"
        origin = "yaml"

    # 2) Environment overrides
    env_seen = False
    for suffix, key, parser in _ENV_FIELDS:
        name = ENV_PREFIX + suffix
        if name not in os.environ:
            continue
        new = parser(name, merged[key])
        bounds = _ENV_BOUNDS.get(key)
        if bounds is not None and isinstance(new, (int, float)):
            lo, hi = bounds
            if new < lo or new > hi:
                _log.warning("ignoring out-of-range %s=%r", name, new)
                continue
        merged[key] = new
        env_seen = True

    cors_raw = os.environ.get(ENV_PREFIX + "CORS_ORIGINS")
    if cors_raw is not None:
        merged["cors_origins"] = tuple(o.strip() for o in cors_raw.split(",") if o.strip())
        env_seen = True

    if env_seen:
        origin = origin + "+env" if origin != "defaults" else "env"
    merged["config_origin"] = origin

    return Settings(**merged)


# ---------------------------------------------------------------------------
# Reloadable wrapper
# ---------------------------------------------------------------------------


class ReloadableSettings:
    """
    Thread-safe wrapper around Settings.

      - get(): returns the current immutable snapshot.
      - refresh(): reloads from YAML/env, preserving immutable_fields.
      - set(): in-memory overrides (ignored when allow_runtime_override is off).
    """

    def __init__(self, initial: Optional[Settings] = None) -> None:
        self._lock = threading.RLock()
        self._settings = initial or _load_settings()

    def get(self) -> Settings:
        with self._lock:
            return self._settings

    def refresh(self) -> Settings:
        with self._lock:
            old = self._settings
            new_data = _load_settings().model_dump()
            old_data = old.model_dump()
            for key in old.immutable_fields:
                if key in old_data:
                    new_data[key] = old_data[key]
            new_data["immutable_fields"] = old_data["immutable_fields"]
            updated = Settings(**new_data)
            if updated.config_hash() != old.config_hash():
                _log.info("settings refreshed (origin=%s)", updated.config_origin)
            self._settings = updated
            return updated

    def set(self, **overrides: Any) -> Settings:
        with self._lock:
            current = self._settings
            if not current.allow_runtime_override:
                return current
            data = current.model_dump()
            for key, value in overrides.items():
                if key not in data:
                    raise KeyError(f"unknown setting: {key}")
                if key in current.immutable_fields or key == "immutable_fields":
                    _log.warning("refusing runtime override of immutable setting %s", key)
                    continue
                data[key] = value
            self._settings = Settings(**data)
            return self._settings


def load_settings() -> Settings:
    return _load_settings()


def make_reloadable_settings() -> ReloadableSettings:
    return ReloadableSettings(_load_settings())
