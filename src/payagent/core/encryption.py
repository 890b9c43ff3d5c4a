"""Encryption of long-lived secrets at rest.

Secrets (API signing secrets, webhook secrets) are stored as
``iv:ciphertext:authTag`` with every part hex encoded, encrypted with
AES-256-GCM under a process-wide key. Decryption fails closed.
"""

import os
from typing import Optional, Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from payagent.config import config
from payagent.exceptions import DecryptionError

IV_LENGTH = 16
AUTH_TAG_LENGTH = 16
KEY_LENGTH = 32


class KeyProvider(Protocol):
    """Source of the current data-encryption key."""

    def current_key(self) -> bytes:
        ...


class StaticKeyProvider:
    """A single fixed key, given as 64 hex characters."""

    def __init__(self, hex_key: str):
        if not hex_key or len(hex_key) != KEY_LENGTH * 2:
            raise ValueError(
                "Encryption key must be a 64-character hex string (32 bytes). "
                'Generate one with: python -c "import secrets; print(secrets.token_hex(32))"'
            )
        try:
            self._key = bytes.fromhex(hex_key)
        except ValueError as e:
            raise ValueError("Encryption key is not valid hex") from e

    def current_key(self) -> bytes:
        return self._key


def settings_key_provider() -> StaticKeyProvider:
    return StaticKeyProvider(config.secret_encryption_key)


class SecretCipher:
    """AES-256-GCM encryption of short secrets."""

    def __init__(self, key_provider: Optional[KeyProvider] = None):
        self._key_provider = key_provider

    @property
    def key_provider(self) -> KeyProvider:
        # Resolved lazily so importing the module never requires the key
        if self._key_provider is None:
            self._key_provider = settings_key_provider()
        return self._key_provider

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        sealed = AESGCM(self.key_provider.current_key()).encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]
        return f"{iv.hex()}:{ciphertext.hex()}:{tag.hex()}"

    def decrypt(self, stored: str) -> str:
        """Decrypt a stored secret.

        Raises:
            DecryptionError: Malformed input or failed tag verification.
        """
        parts = stored.split(":") if isinstance(stored, str) else []
        if len(parts) != 3:
            raise DecryptionError("Invalid encrypted format. Expected iv:ciphertext:authTag")

        try:
            iv, ciphertext, tag = (bytes.fromhex(part) for part in parts)
        except ValueError as e:
            raise DecryptionError("Encrypted secret is not valid hex") from e

        if len(iv) != IV_LENGTH or len(tag) != AUTH_TAG_LENGTH:
            raise DecryptionError("Invalid IV or authentication tag length")

        try:
            plaintext = AESGCM(self.key_provider.current_key()).decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            raise DecryptionError("Authentication tag verification failed") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted secret is not valid UTF-8") from e


secret_cipher = SecretCipher()
