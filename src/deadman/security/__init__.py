"""Payload encryption."""

from deadman.security.crypto import DecryptionError, FieldCipher, derive_key

__all__ = [
    "DecryptionError",
    "FieldCipher",
    "derive_key",
]
