"""
Error taxonomy for the assistant core.

Every error derives from ``AssistantError`` and from the builtin exception
a caller would otherwise expect, so ``except ValueError`` around a decrypt
or ``except OSError`` around storage keeps working.
"""
from typing import Optional


class AssistantError(Exception):
    """Base class for all assistant core errors."""


class InitializationError(AssistantError, RuntimeError):
    """Cipher, salt or store could not be brought up at startup."""


class NotInitialized(AssistantError, RuntimeError):
    """The secret cipher was used before ``initialize()`` completed."""


class InvalidCiphertext(AssistantError, ValueError):
    """Value is not a well-formed ciphertext for the current key.

    This is the routine signal that a stored field is still plaintext.
    """


DecryptionMismatch = InvalidCiphertext


class StorageError(AssistantError, OSError):
    """The persistent key-value store is unavailable."""


class StorageWriteFailure(StorageError):
    """A write to the persistent key-value store failed."""


class QuotaExceeded(StorageWriteFailure):
    """A write would exceed the store quota."""


class UpstreamStreamFailure(AssistantError, RuntimeError):
    """A streaming model call ended without success."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status: Optional[int] = None
    ):
        super().__init__(message)
        self.provider = provider
        self.status = status


class ProviderUnavailable(UpstreamStreamFailure):
    """No usable provider for a model (missing key or open circuit)."""
