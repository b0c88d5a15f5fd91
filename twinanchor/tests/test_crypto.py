# twinanchor/tests/test_crypto.py
import base64

import pytest

from twinanchor.crypto import DecryptionError, MissingSecretError, WalletKeyStore

KEY = "0x" + "ab" * 32


def test_round_trip(keystore):
    token = keystore.encrypt_signing_key(KEY)
    assert KEY not in token
    assert keystore.decrypt_signing_key(token) == KEY


def test_token_layout_and_fresh_iv(keystore):
    a = keystore.encrypt_signing_key(KEY)
    b = keystore.encrypt_signing_key(KEY)
    assert a != b
    raw = base64.b64decode(a)
    assert len(raw) == 12 + 16 + len(KEY)


def test_wrong_secret_fails(keystore):
    token = keystore.encrypt_signing_key(KEY)
    other = WalletKeyStore(secret_provider=lambda: "another-secret")
    with pytest.raises(DecryptionError):
        other.decrypt_signing_key(token)


def test_tampered_token_fails(keystore):
    raw = bytearray(base64.b64decode(keystore.encrypt_signing_key(KEY)))
    raw[-1] ^= 0x01
    with pytest.raises(DecryptionError):
        keystore.decrypt_signing_key(base64.b64encode(bytes(raw)).decode())


@pytest.mark.parametrize("token", ["", "***not base64***", base64.b64encode(b"short").decode()])
def test_malformed_tokens_fail(keystore, token):
    with pytest.raises(DecryptionError):
        keystore.decrypt_signing_key(token)


def test_missing_secret_fails_at_use(clean_env):
    store = WalletKeyStore()
    assert store.configured is False
    with pytest.raises(MissingSecretError):
        store.encrypt_signing_key(KEY)
    with pytest.raises(MissingSecretError):
        store.decrypt_signing_key("AAAA")


def test_secret_is_read_on_every_call(clean_env):
    clean_env.setenv("TWINANCHOR_WALLET_ENCRYPTION_KEY", "first")
    store = WalletKeyStore()
    token = store.encrypt_signing_key(KEY)
    clean_env.setenv("TWINANCHOR_WALLET_ENCRYPTION_KEY", "rotated")
    with pytest.raises(DecryptionError):
        store.decrypt_signing_key(token)
