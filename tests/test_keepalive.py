"""
Tests for the reference-counted keep-alive loop.
"""
import asyncio
import logging

import pytest

from overlay_assistant.keepalive import KeepAlive


class TestKeepAlive:

    @pytest.mark.asyncio
    async def test_runs_while_held(self):
        """Test the action fires only between first acquire and last release."""
        calls = []
        keepalive = KeepAlive(lambda: calls.append(1), interval=0.01)
        assert keepalive.active is False

        keepalive.acquire()
        keepalive.acquire()
        await asyncio.sleep(0.05)
        assert keepalive.active
        assert calls

        keepalive.release()
        assert keepalive.active
        keepalive.release()
        assert keepalive.active is False
        ticked = len(calls)
        await asyncio.sleep(0.03)
        assert len(calls) == ticked

    @pytest.mark.asyncio
    async def test_async_action(self):
        calls = []

        async def ping():
            calls.append(1)

        keepalive = KeepAlive(ping, interval=0.01)
        keepalive.acquire()
        await asyncio.sleep(0.05)
        await keepalive.close()
        assert calls
        assert keepalive.ticks == len(calls)

    @pytest.mark.asyncio
    async def test_failing_action_keeps_running(self, caplog):
        """Test an action error is logged and the loop continues."""
        def broken():
            raise RuntimeError("host gone")

        keepalive = KeepAlive(broken, interval=0.01)
        with caplog.at_level(logging.ERROR, logger="overlay.orchestrator"):
            keepalive.acquire()
            await asyncio.sleep(0.05)
        assert keepalive.ticks >= 2
        assert "host gone" in caplog.text
        await keepalive.close()

    @pytest.mark.asyncio
    async def test_release_underflow(self, caplog):
        keepalive = KeepAlive(interval=0.01)
        with caplog.at_level(logging.WARNING, logger="overlay.orchestrator"):
            keepalive.release()
        assert keepalive.count == 0
        assert "more times than acquired" in caplog.text

    @pytest.mark.asyncio
    async def test_close_ignores_holders(self):
        keepalive = KeepAlive(interval=0.01)
        keepalive.acquire()
        keepalive.acquire()
        await keepalive.close()
        assert keepalive.count == 0
        assert keepalive.active is False

    def test_invalid_interval(self):
        with pytest.raises(ValueError):
            KeepAlive(interval=0)
