"""Overlay Assistant.

Control core of a live-transcription assistant: secrets encrypted at rest,
a crash-recoverable transcript buffer and an orchestrator streaming answers
from remote language models.
"""
from .version import __version__
from .conf import AssistantConfig, AssistantSettings
from .exceptions import (
    AssistantError,
    InitializationError,
    InvalidCiphertext,
    NotInitialized,
    QuotaExceeded,
    StorageError,
    StorageWriteFailure,
    UpstreamStreamFailure,
)
from .storage import KeyValueStore, MemoryStore, FileStore, RedisStore
from .transcript import SessionBuffer, SessionEntry, BufferState
from .vault import SecretCipher, EncryptedStorage
from .orchestrator import Orchestrator, OrchestratorState, RequestState

__all__ = [
    "__version__",
    "AssistantConfig",
    "AssistantError",
    "AssistantSettings",
    "BufferState",
    "EncryptedStorage",
    "FileStore",
    "InitializationError",
    "InvalidCiphertext",
    "KeyValueStore",
    "MemoryStore",
    "NotInitialized",
    "Orchestrator",
    "OrchestratorState",
    "QuotaExceeded",
    "RedisStore",
    "RequestState",
    "SecretCipher",
    "SessionBuffer",
    "SessionEntry",
    "StorageError",
    "StorageWriteFailure",
    "UpstreamStreamFailure",
]
