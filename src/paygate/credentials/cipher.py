"""Symmetric encryption of credential secrets.

``SecretCipher`` is the only place secrets are turned into ciphertext and
back. Keys are Fernet keys; a passphrase is also accepted and stretched with
PBKDF2 so operators can reuse an existing ``ENCRYPTION_KEY`` value.
"""

from __future__ import annotations

import base64
import binascii
import json
from collections.abc import Mapping

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from paygate.errors import CredentialStoreError

_KDF_SALT = b"paygate.credentials.v1"
_KDF_ITERATIONS = 390_000


class SecretCipher:
    """Encrypt-on-write / decrypt-on-read for credential secrets."""

    def __init__(self, key: str | bytes):
        if not key:
            raise ValueError("Encryption key is required")
        self._fernet = Fernet(self._derive_key(key))

    @staticmethod
    def generate_key() -> str:
        """Generate a fresh Fernet key suitable for ``ENCRYPTION_KEY``."""
        return Fernet.generate_key().decode("ascii")

    @staticmethod
    def _derive_key(key: str | bytes) -> bytes:
        raw = key.encode("utf-8") if isinstance(key, str) else key
        try:
            if len(base64.urlsafe_b64decode(raw)) == 32:
                return raw
        except (binascii.Error, ValueError):
            pass
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=_KDF_SALT,
            iterations=_KDF_ITERATIONS,
        )
        return base64.urlsafe_b64encode(kdf.derive(raw))

    def encrypt(self, secrets: Mapping[str, str]) -> str:
        """Encrypt a secrets mapping into an opaque token."""
        payload = json.dumps(dict(secrets), sort_keys=True).encode("utf-8")
        return self._fernet.encrypt(payload).decode("ascii")

    def decrypt(self, token: str) -> dict[str, str]:
        """Decrypt a token produced by :meth:`encrypt`."""
        try:
            payload = self._fernet.decrypt(token.encode("ascii"))
        except InvalidToken as e:
            raise CredentialStoreError(
                "Stored credentials could not be decrypted with the configured key"
            ) from e
        return json.loads(payload)
