"""AES-GCM encryption for switch payloads at rest.

Recipient addresses, names, subjects and bodies are stored as
base64(nonce || ciphertext). The 256-bit key is derived from the configured
encryption key with SHA-256.
"""

import base64
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from deadman.errors import DeadmanError

NONCE_SIZE = 12


class DecryptionError(DeadmanError):
    """Ciphertext was malformed or encrypted under a different key."""


def derive_key(secret: str) -> bytes:
    """Derive a 256-bit AES key from a secret string."""
    return hashlib.sha256(secret.encode()).digest()


class FieldCipher:
    """Encrypts and decrypts individual string fields."""

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("Encryption secret must not be empty")
        self._aesgcm = AESGCM(derive_key(secret))

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._aesgcm.encrypt(nonce, plaintext.encode(), None)
        return base64.b64encode(nonce + ciphertext).decode()

    def decrypt(self, token: str) -> str:
        try:
            data = base64.b64decode(token, validate=True)
        except ValueError as e:
            raise DecryptionError("Ciphertext is not valid base64") from e
        if len(data) <= NONCE_SIZE:
            raise DecryptionError("Ciphertext is too short")

        nonce, ciphertext = data[:NONCE_SIZE], data[NONCE_SIZE:]
        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            raise DecryptionError("Ciphertext failed authentication") from e
        return plaintext.decode()

    def encrypt_optional(self, plaintext: str | None) -> str | None:
        return self.encrypt(plaintext) if plaintext is not None else None

    def decrypt_optional(self, token: str | None) -> str | None:
        return self.decrypt(token) if token is not None else None
