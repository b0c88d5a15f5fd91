# twinanchor/tests/test_config.py
import pytest
from pydantic import ValidationError

from twinanchor.config import ReloadableSettings, Settings, load_settings


def test_defaults(clean_env):
    s = load_settings()
    assert s.config_origin == "defaults"
    assert s.private_rpc_url == "http://127.0.0.1:4798"
    assert (s.private_chain_name, s.private_stream_name) == ("dxerchain", "dxer-anchors")
    assert (s.public_network, s.public_chain_id) == ("amoy", 80002)
    assert s.public_explorer_url == "https://amoy.polygonscan.com"
    assert (s.queue_max_retries, s.queue_retry_base_s) == (3, 2.0)
    assert s.datastore_dsn == "mem://"


def test_env_overrides_and_bounds(clean_env):
    clean_env.setenv("TWINANCHOR_PRIVATE_RPC_PORT", "9000")
    clean_env.setenv("TWINANCHOR_QUEUE_MAX_RETRIES", "500")
    clean_env.setenv("TWINANCHOR_PUBLIC_CONFIRMATIONS", "abc")
    clean_env.setenv("TWINANCHOR_CORS_ORIGINS", "http://a.example, http://b.example")
    s = load_settings()
    assert s.private_rpc_port == 9000
    assert s.queue_max_retries == 3
    assert s.public_confirmations == 1
    assert s.cors_origins == ("http://a.example", "http://b.example")
    assert s.config_origin == "env"


def test_yaml_then_env(clean_env, tmp_path):
    path = tmp_path / "twinanchor.yaml"
    path.write_text("private_stream_name: custom-stream\npublic_network: polygon\ncors_origins: [http://x]\n")
    clean_env.setenv("TWINANCHOR_CONFIG_PATH", str(path))
    clean_env.setenv("TWINANCHOR_PUBLIC_NETWORK", "sepolia")
    s = load_settings()
    assert s.private_stream_name == "custom-stream"
    assert s.public_network == "sepolia"
    assert s.cors_origins == ("http://x",)
    assert s.config_origin == "yaml+env"


def test_yaml_unknown_key_rejected(clean_env, tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("no_such_setting: 1\n")
    clean_env.setenv("TWINANCHOR_CONFIG_PATH", str(path))
    with pytest.raises(ValidationError):
        load_settings()


def test_secrets_are_not_settings():
    fields = set(Settings.model_fields)
    assert "private_rpc_password_env" in fields
    assert not {"private_rpc_password", "public_private_key", "wallet_encryption_key"} & fields


def test_config_hash_is_stable():
    assert Settings().config_hash() == Settings().config_hash()
    assert Settings().config_hash() != Settings(public_network="polygon").config_hash()


def test_runtime_overrides_respect_immutable_fields(clean_env):
    rs = ReloadableSettings(Settings())
    updated = rs.set(public_network="polygon", datastore_dsn="sqlite:///x.db")
    assert updated.public_network == "polygon"
    assert updated.datastore_dsn == "mem://"
    with pytest.raises(KeyError):
        rs.set(nonsense=1)

    clean_env.setenv("TWINANCHOR_PRIVATE_STREAM_NAME", "other")
    clean_env.setenv("TWINANCHOR_PUBLIC_NETWORK", "mainnet")
    refreshed = rs.refresh()
    assert refreshed.private_stream_name == "dxer-anchors"
    assert refreshed.public_network == "mainnet"


def test_runtime_override_disabled():
    rs = ReloadableSettings(Settings(allow_runtime_override=False))
    assert rs.set(public_network="polygon").public_network == "amoy"
