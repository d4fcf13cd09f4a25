"""Vault — Secrets encrypted at rest.

Security Note (Threat Model):
    The key is derived from a per-installation identifier and a stored salt,
    so it defends against passive inspection of the storage only. Code
    running inside the same process can recover every secret.
"""

from .crypto import SecretCipher, derive_key
from .storage import EncryptedStorage

__all__ = [
    "SecretCipher",
    "EncryptedStorage",
    "derive_key",
]
