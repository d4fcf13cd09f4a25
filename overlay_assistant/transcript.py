"""
Durable transcript buffer.

Finalized utterances are kept in memory sorted by timestamp and mirrored
to the key-value store on a debounced schedule. A persisted marker tells a
restarted process that a session was open, so the buffer can be reloaded
and the session resumed.
"""
import uuid
import time
import asyncio
import bisect
import logging
from enum import Enum
from collections.abc import Iterator
from typing import Optional

import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .conf import TRANSCRIPT_STORAGE_KEY, SESSION_MARKER_KEY
from .exceptions import QuotaExceeded, StorageError
from .storage import KeyValueStore

logger = logging.getLogger("overlay.transcript")


class SessionEntry(BaseModel):
    """One committed utterance."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: float = Field(default_factory=time.time)
    text: str
    is_final: bool = True
    speaker: Optional[str] = None


class BufferState(str, Enum):
    EMPTY = "empty"
    LOADING = "loading"
    READY = "ready"
    ACTIVE = "active"
    IDLE = "idle"
    CLEARED = "cleared"


def _timestamp(entry: SessionEntry) -> float:
    return entry.timestamp


class SessionBuffer:
    """Append-only, timestamp-ordered transcript with debounced persistence.

    Entries may arrive out of order; each is inserted at its sorted position
    (after any entry with the same timestamp). Every ``add`` pushes the
    pending flush ``flush_delay`` seconds out, but never more than
    ``max_window`` seconds after the first unflushed entry, so at most one
    window of data can be lost on a hard kill.

    ``start()`` is the only operation that deletes persisted entries;
    ``stop()`` keeps them so a terminated session can still be resumed.
    """

    def __init__(
        self,
        store: KeyValueStore,
        flush_delay: float = 0.5,
        max_window: float = 2.0,
        max_entries: Optional[int] = None,
    ):
        if max_window < flush_delay:
            raise ValueError("max_window must be >= flush_delay")
        self._store = store
        self._flush_delay = flush_delay
        self._max_window = max_window
        self._max_entries = max_entries
        self._entries: list[SessionEntry] = []
        self._state = BufferState.EMPTY
        self._dirty = False
        self._generation = 0
        self._first_dirty: Optional[float] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self.write_count = 0

    def __repr__(self) -> str:
        return (
            f'<SessionBuffer [state:{self._state.value}, dirty:{self._dirty}] '
            f'entries={len(self._entries)}>'
        )

    # --- Properties ---

    @property
    def state(self) -> BufferState:
        return self._state

    @property
    def active(self) -> bool:
        return self._state is BufferState.ACTIVE

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def flush_pending(self) -> bool:
        return self._timer is not None

    @property
    def entries(self) -> list[SessionEntry]:
        return list(self._entries)

    def recent(self, count: int) -> list[SessionEntry]:
        """Return the ``count`` most recent entries."""
        if count <= 0:
            return []
        return self._entries[-count:]

    def as_text(self, entries: Optional[list[SessionEntry]] = None) -> str:
        """Render entries as prompt context, one utterance per line."""
        lines = []
        for entry in self._entries if entries is None else entries:
            if entry.speaker:
                lines.append(f"[{entry.speaker}]: {entry.text}")
            else:
                lines.append(entry.text)
        return "\n".join(lines)

    # --- Magic Methods ---

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[SessionEntry]:
        return iter(list(self._entries))

    # --- Persistence helpers ---

    def _encode(self) -> bytes:
        return orjson.dumps([e.model_dump(mode="json") for e in self._entries])

    async def _read_entries(self) -> list[SessionEntry]:
        try:
            raw = await self._store.get(TRANSCRIPT_STORAGE_KEY)
            if raw is None:
                return []
            data = orjson.loads(raw)
            if not isinstance(data, list):
                raise ValueError("stored transcript is not a list")
            return [SessionEntry.model_validate(item) for item in data]
        except (StorageError, ValueError, ValidationError) as err:
            logger.error(
                "Failed to load transcript from storage, starting fresh: %s",
                err,
            )
            return []

    async def _read_marker(self) -> bool:
        try:
            raw = await self._store.get(SESSION_MARKER_KEY)
        except StorageError as err:
            logger.error("Failed to read session marker: %s", err)
            return False
        if raw is None:
            return False
        try:
            return orjson.loads(raw) is True
        except orjson.JSONDecodeError:
            return False

    async def _clear_marker(self) -> None:
        try:
            await self._store.remove(SESSION_MARKER_KEY)
        except StorageError as err:
            logger.error("Failed to clear session marker: %s", err)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _schedule_flush(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop: the next flush() call persists the entries
            return
        now = loop.time()
        if self._first_dirty is None:
            self._first_dirty = now
        deadline = min(now + self._flush_delay, self._first_dirty + self._max_window)
        self._cancel_timer()
        self._timer = loop.call_later(max(0.0, deadline - now), self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self._flush_task = asyncio.ensure_future(self.flush())

    def _trim_oldest(self) -> int:
        dropped = max(1, len(self._entries) // 2)
        del self._entries[:dropped]
        self._generation += 1
        return dropped

    # --- Lifecycle ---

    async def load(self) -> bool:
        """Reload persisted entries and the session marker.

        Returns:
            True if a session was in progress (recovery), False otherwise.
        """
        self._state = BufferState.LOADING
        entries = await self._read_entries()
        recovering = await self._read_marker()
        entries.sort(key=_timestamp)
        self._entries = entries
        self._dirty = False
        self._first_dirty = None
        if recovering:
            self._state = BufferState.ACTIVE
            logger.info(
                "Recovered %d transcript entries after restart", len(entries),
            )
        else:
            self._state = BufferState.READY
        return recovering

    async def start(self) -> None:
        """Begin a new session, discarding every previous entry.

        Raises:
            StorageWriteFailure: If the session marker cannot be written;
                the session would not survive a restart, so it is not
                started.
        """
        self._cancel_timer()
        async with self._lock:
            self._entries = []
            self._dirty = False
            self._first_dirty = None
            self._generation += 1
            try:
                await self._store.remove(TRANSCRIPT_STORAGE_KEY)
            except StorageError as err:
                logger.error("Failed to clear stored transcript: %s", err)
        await self._store.set(SESSION_MARKER_KEY, orjson.dumps(True))
        self._state = BufferState.ACTIVE
        logger.debug("Transcript session started")

    def add(self, entry: SessionEntry) -> None:
        """Insert ``entry`` at its timestamp position and schedule a flush."""
        if self._state is not BufferState.ACTIVE:
            logger.warning(
                "Adding transcript entry while buffer is %s", self._state.value,
            )
        index = bisect.bisect_right(
            self._entries, entry.timestamp, key=_timestamp,
        )
        self._entries.insert(index, entry)
        if self._max_entries is not None and len(self._entries) > self._max_entries:
            del self._entries[:len(self._entries) - self._max_entries]
        self._dirty = True
        self._generation += 1
        self._schedule_flush()

    async def flush(self) -> bool:
        """Write unflushed entries to storage.

        Returns:
            True if a write happened, False if there was nothing to write
            or the write failed (it is retried one debounce later).
        """
        self._cancel_timer()
        async with self._lock:
            if not self._dirty:
                return False
            generation = self._generation
            try:
                try:
                    await self._store.set(TRANSCRIPT_STORAGE_KEY, self._encode())
                except QuotaExceeded:
                    dropped = self._trim_oldest()
                    generation = self._generation
                    logger.warning(
                        "Storage quota exceeded, dropped %d oldest entries",
                        dropped,
                    )
                    await self._store.set(TRANSCRIPT_STORAGE_KEY, self._encode())
            except StorageError as err:
                logger.error("Failed to flush transcript to storage: %s", err)
                self._first_dirty = None
                self._schedule_flush()
                return False
            self.write_count += 1
            if self._generation == generation:
                self._dirty = False
                self._first_dirty = None
            return True

    async def stop(self) -> None:
        """End the session cleanly; persisted entries are kept."""
        await self.flush()
        await self._clear_marker()
        self._state = BufferState.IDLE
        logger.debug("Transcript session stopped (%d entries)", len(self._entries))

    async def clear(self) -> None:
        """Drop every entry in memory and in storage."""
        self._cancel_timer()
        async with self._lock:
            self._entries = []
            self._dirty = False
            self._first_dirty = None
            self._generation += 1
            await self._store.remove(TRANSCRIPT_STORAGE_KEY)
        self._state = BufferState.CLEARED
