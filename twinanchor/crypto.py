from __future__ import annotations

import base64
import binascii
import hashlib
import os
from typing import Callable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


DEFAULT_SECRET_ENV = "TWINANCHOR_WALLET_ENCRYPTION_KEY"

# Token layout: base64(iv | tag | ciphertext)
_IV_LEN = 12
_TAG_LEN = 16


class CryptoError(Exception):
    """Base crypto error for twinanchor."""


class MissingSecretError(CryptoError):
    """The wallet encryption secret is not configured."""


class DecryptionError(CryptoError):
    """Ciphertext is malformed, truncated, or fails authentication."""


def _derive_key(secret: str) -> bytes:
    # AES-256 key = SHA-256 of the configured secret
    return hashlib.sha256(secret.encode("utf-8")).digest()


class WalletKeyStore:
    """
    AES-256-GCM envelope for per-organization signing keys.

    The secret is looked up on every call, never cached, so a rotated or
    removed secret takes effect immediately and a missing secret fails at
    the point of use. Plaintext keys are returned to the caller and not
    retained here.
    """

    def __init__(
        self,
        *,
        secret_env: str = DEFAULT_SECRET_ENV,
        secret_provider: Optional[Callable[[], Optional[str]]] = None,
    ) -> None:
        self._secret_env = secret_env
        self._secret_provider = secret_provider or (lambda: os.environ.get(secret_env))

    @property
    def configured(self) -> bool:
        return bool(self._secret_provider())

    def _key(self) -> bytes:
        secret = self._secret_provider()
        if not secret:
            raise MissingSecretError(f"{self._secret_env} is not set; cannot handle wallet keys")
        return _derive_key(secret)

    def encrypt_signing_key(self, plaintext: str) -> str:
        if not isinstance(plaintext, str) or not plaintext:
            raise CryptoError("signing key must be a non-empty string")
        iv = os.urandom(_IV_LEN)
        sealed = AESGCM(self._key()).encrypt(iv, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag; store it ahead of the ciphertext
        ciphertext, tag = sealed[:-_TAG_LEN], sealed[-_TAG_LEN:]
        return base64.b64encode(iv + tag + ciphertext).decode("ascii")

    def decrypt_signing_key(self, token: str) -> str:
        key = self._key()
        if not isinstance(token, str) or not token:
            raise DecryptionError("empty ciphertext")
        try:
            raw = base64.b64decode(token.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as e:
            raise DecryptionError("ciphertext is not valid base64") from e
        if len(raw) <= _IV_LEN + _TAG_LEN:
            raise DecryptionError("ciphertext is truncated")
        iv = raw[:_IV_LEN]
        tag = raw[_IV_LEN : _IV_LEN + _TAG_LEN]
        ciphertext = raw[_IV_LEN + _TAG_LEN :]
        try:
            plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            raise DecryptionError("ciphertext failed authentication (wrong secret or tampered data)") from e
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("decrypted key is not valid UTF-8") from e


__all__ = [
    "CryptoError",
    "MissingSecretError",
    "DecryptionError",
    "WalletKeyStore",
]
