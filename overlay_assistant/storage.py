"""
Persistent key-value stores.

The assistant persists everything through a tiny async byte store:
``get(key) -> bytes | None``, ``set(key, value)``, ``remove(key)``.
The store is shared by the whole host application and has a small quota,
so every backend can enforce one.
"""
import os
import asyncio
import logging
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional, Union

from .exceptions import StorageError, StorageWriteFailure, QuotaExceeded

logger = logging.getLogger("overlay.storage")


class KeyValueStore(ABC):
    """Async byte store used for salt, secrets, transcript and markers."""

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        """Return the value for ``key`` or None when absent.

        Raises:
            StorageError: If the store cannot be read.
        """

    @abstractmethod
    async def set(self, key: str, value: bytes) -> None:
        """Persist ``value`` under ``key``.

        Raises:
            StorageWriteFailure: If the write fails.
            QuotaExceeded: If the write would exceed the quota.
        """

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Delete ``key``. Missing keys are ignored."""


class MemoryStore(KeyValueStore):
    """Dict-backed store.

    ``fail_reads`` and ``fail_writes`` simulate a broken backend.
    """

    def __init__(self, quota_bytes: Optional[int] = None):
        self._data: dict[str, bytes] = {}
        self.quota_bytes = quota_bytes
        self.fail_reads = False
        self.fail_writes = False
        self.writes: dict[str, int] = {}

    def _usage(self, excluding: Optional[str] = None) -> int:
        return sum(
            len(k) + len(v) for k, v in self._data.items() if k != excluding
        )

    async def get(self, key: str) -> Optional[bytes]:
        if self.fail_reads:
            raise StorageError(f"store unavailable reading {key!r}")
        return self._data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        if self.fail_writes:
            raise StorageWriteFailure(f"store unavailable writing {key!r}")
        if self.quota_bytes is not None:
            needed = self._usage(excluding=key) + len(key) + len(value)
            if needed > self.quota_bytes:
                raise QuotaExceeded(
                    f"writing {key!r} needs {needed} bytes "
                    f"(quota {self.quota_bytes})"
                )
        self._data[key] = bytes(value)
        self.writes[key] = self.writes.get(key, 0) + 1

    async def remove(self, key: str) -> None:
        if self.fail_writes:
            raise StorageWriteFailure(f"store unavailable removing {key!r}")
        self._data.pop(key, None)

    def __contains__(self, key: object) -> bool:
        return key in self._data


class FileStore(KeyValueStore):
    """One file per key under ``directory``.

    Writes go to a temporary file that replaces the target, so a process
    killed mid-write leaves the previous value intact. File I/O runs in a
    worker thread to keep the event loop responsive.
    """

    def __init__(
        self,
        directory: Union[str, Path],
        quota_bytes: Optional[int] = None
    ):
        self.directory = Path(directory)
        self.quota_bytes = quota_bytes
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        if not key or "/" in key or key in (".", ".."):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self.directory / f"{key}.bin"

    def _read(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def _usage(self, excluding: Path) -> int:
        return sum(
            p.stat().st_size for p in self.directory.glob("*.bin")
            if p != excluding
        )

    def _write(self, key: str, value: bytes) -> None:
        path = self._path(key)
        if self.quota_bytes is not None:
            needed = self._usage(path) + len(value)
            if needed > self.quota_bytes:
                raise QuotaExceeded(
                    f"writing {key!r} needs {needed} bytes "
                    f"(quota {self.quota_bytes})"
                )
        fd, tmp = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fp:
                fp.write(value)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    async def get(self, key: str) -> Optional[bytes]:
        try:
            return await asyncio.to_thread(self._read, key)
        except OSError as err:
            raise StorageError(f"cannot read {key!r}: {err}") from err

    async def set(self, key: str, value: bytes) -> None:
        try:
            await asyncio.to_thread(self._write, key, bytes(value))
        except QuotaExceeded:
            raise
        except OSError as err:
            raise StorageWriteFailure(f"cannot write {key!r}: {err}") from err

    async def remove(self, key: str) -> None:
        path = self._path(key)
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as err:
            raise StorageWriteFailure(f"cannot remove {key!r}: {err}") from err


class RedisStore(KeyValueStore):
    """Adapter over an async redis client (``redis.asyncio`` compatible).

    Keys are namespaced as ``{namespace}:{key}``.
    """

    def __init__(self, redis: Any, namespace: str = "overlay"):
        self._redis = redis
        self._namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    async def get(self, key: str) -> Optional[bytes]:
        try:
            value = await self._redis.get(self._key(key))
        except Exception as err:
            raise StorageError(f"cannot read {key!r}: {err}") from err
        if isinstance(value, str):
            value = value.encode("utf-8")
        return value

    async def set(self, key: str, value: bytes) -> None:
        try:
            await self._redis.set(self._key(key), value)
        except Exception as err:
            if "OOM" in str(err):
                raise QuotaExceeded(f"cannot write {key!r}: {err}") from err
            raise StorageWriteFailure(f"cannot write {key!r}: {err}") from err

    async def remove(self, key: str) -> None:
        try:
            await self._redis.delete(self._key(key))
        except Exception as err:
            raise StorageWriteFailure(f"cannot remove {key!r}: {err}") from err
