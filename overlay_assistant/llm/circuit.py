"""
Circuit breaker for model providers.

CLOSED: calls pass; consecutive failures are counted.
OPEN: calls are rejected until the recovery timeout elapses.
HALF_OPEN: calls pass as probes; enough successes close the circuit,
           any failure reopens it.

State is persisted to the key-value store so a restarted process keeps
rejecting calls to a provider that was failing.
"""
import time
import logging
from enum import Enum
from collections.abc import Callable
from typing import Optional

import orjson

from ..conf import CIRCUIT_STORAGE_PREFIX
from ..exceptions import StorageError
from ..storage import KeyValueStore

logger = logging.getLogger("overlay.llm")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Failure gate for one provider."""

    def __init__(
        self,
        service_id: str,
        store: Optional[KeyValueStore] = None,
        failure_threshold: int = 3,
        recovery_timeout: float = 60.0,
        half_open_successes: int = 1,
        clock: Callable[[], float] = time.time,
    ):
        self.service_id = service_id
        self._store = store
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_successes = half_open_successes
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at: Optional[float] = None

    def __repr__(self) -> str:
        return f"<CircuitBreaker {self.service_id} state={self.state.value}>"

    @property
    def storage_key(self) -> str:
        return f"{CIRCUIT_STORAGE_PREFIX}{self.service_id}"

    @property
    def state(self) -> CircuitState:
        if (
            self._state is CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.recovery_timeout
        ):
            self._state = CircuitState.HALF_OPEN
            self._successes = 0
            logger.info("Circuit %s half-open, probing", self.service_id)
        return self._state

    def allow_request(self) -> bool:
        return self.state is not CircuitState.OPEN

    async def record_success(self) -> None:
        state = self.state
        if state is CircuitState.CLOSED:
            if self._failures:
                self._failures = 0
                await self._persist()
            return
        if state is CircuitState.HALF_OPEN:
            self._successes += 1
            if self._successes >= self.half_open_successes:
                self._state = CircuitState.CLOSED
                self._failures = 0
                self._successes = 0
                self._opened_at = None
                logger.info("Circuit %s closed", self.service_id)
            await self._persist()

    async def record_failure(self) -> None:
        state = self.state
        self._failures += 1
        if state is CircuitState.HALF_OPEN or (
            state is CircuitState.CLOSED and self._failures >= self.failure_threshold
        ):
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()
            self._successes = 0
            logger.warning(
                "Circuit %s opened after %d failure(s)",
                self.service_id, self._failures,
            )
        await self._persist()

    async def _persist(self) -> None:
        if self._store is None:
            return
        payload = {
            "state": self._state.value,
            "failures": self._failures,
            "successes": self._successes,
            "opened_at": self._opened_at,
        }
        try:
            await self._store.set(self.storage_key, orjson.dumps(payload))
        except StorageError as err:
            logger.error("Failed to persist circuit %s: %s", self.service_id, err)

    async def rehydrate(self) -> None:
        """Restore persisted state after a restart."""
        if self._store is None:
            return
        raw = await self._store.get(self.storage_key)
        if raw is None:
            return
        try:
            data = orjson.loads(raw)
            self._state = CircuitState(data["state"])
            self._failures = int(data.get("failures", 0))
            self._successes = int(data.get("successes", 0))
            self._opened_at = data.get("opened_at")
        except (orjson.JSONDecodeError, KeyError, ValueError, TypeError) as err:
            logger.error(
                "Ignoring corrupt circuit state for %s: %s", self.service_id, err,
            )
            self._state = CircuitState.CLOSED
