"""
Reference-counted liveness loop.

While any capture session or stream is running, a no-op action fires on a
fixed interval so the host does not reclaim the process. The loop starts
with the first ``acquire()`` and stops with the matching last ``release()``.
"""
import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any, Optional

logger = logging.getLogger("overlay.orchestrator")


def _noop() -> None:
    return None


class KeepAlive:
    """Runs ``action`` every ``interval`` seconds while held."""

    def __init__(
        self,
        action: Optional[Callable[[], Any]] = None,
        interval: float = 20.0,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._action = action or _noop
        self.interval = interval
        self._count = 0
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    def __repr__(self) -> str:
        return f"<KeepAlive holders={self._count} active={self.active}>"

    @property
    def count(self) -> int:
        return self._count

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def acquire(self) -> None:
        self._count += 1
        if self._count == 1:
            self._task = asyncio.ensure_future(self._run())
            logger.debug("Keep-alive started")

    def release(self) -> None:
        if self._count == 0:
            logger.warning("Keep-alive released more times than acquired")
            return
        self._count -= 1
        if self._count == 0:
            self._stop()

    def _stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
            logger.debug("Keep-alive stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                result = self._action()
                if inspect.isawaitable(result):
                    await result
            except Exception as err:
                logger.error("Keep-alive action failed: %s", err)
            self.ticks += 1

    async def close(self) -> None:
        """Stop the loop regardless of outstanding holders."""
        self._count = 0
        task = self._task
        self._stop()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
