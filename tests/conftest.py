"""Shared fixtures: in-memory store, initialized cipher and a scripted provider."""
import asyncio

import pytest
import pytest_asyncio

from overlay_assistant.conf import AssistantConfig
from overlay_assistant.llm.providers import (
    ProviderRegistry,
    StreamProvider,
    TextDelta,
    UsageReport,
)
from overlay_assistant.storage import MemoryStore
from overlay_assistant.vault import SecretCipher

INSTALLATION_ID = "test-installation-0001"
TEST_ITERATIONS = 10_000


class ScriptedProvider(StreamProvider):
    """Provider replaying a per-model script.

    Script items: frames are yielded, exceptions raised, floats slept,
    ``asyncio.Event`` instances awaited.
    """

    id = "fake"
    name = "Fake"
    key_field = "fake"

    def __init__(self, scripts=None):
        self.scripts = scripts or {}
        self.calls = []
        self.api_keys = []

    def supports(self, model):
        return model.startswith("fake-")

    async def stream(self, request, api_key, abort):
        self.calls.append(request)
        self.api_keys.append(api_key)
        script = self.scripts.get(request.model, [
            TextDelta("hello"),
            TextDelta(" world"),
            UsageReport(prompt_tokens=10, completion_tokens=5, total_tokens=15),
        ])
        for item in script:
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, float):
                await asyncio.sleep(item)
                continue
            if isinstance(item, asyncio.Event):
                await item.wait()
                continue
            yield item


@pytest.fixture
def store():
    """Create a fresh in-memory store."""
    return MemoryStore()


@pytest_asyncio.fixture
async def cipher(store):
    """Create an initialized SecretCipher bound to ``store``."""
    c = SecretCipher(store, INSTALLATION_ID, iterations=TEST_ITERATIONS)
    await c.initialize()
    return c


@pytest.fixture
def config():
    """Assistant configuration with short timers for tests."""
    return AssistantConfig(
        installation_id=INSTALLATION_ID,
        pbkdf2_iterations=TEST_ITERATIONS,
        flush_delay=0.01,
        flush_max_window=0.05,
        keepalive_interval=0.01,
        startup_timeout=5.0,
    )


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def registry(provider):
    return ProviderRegistry([provider])


class EventLog(list):
    """Collects orchestrator events."""

    def __call__(self, event):
        self.append(event)

    def of(self, kind, request_id=None):
        return [
            e for e in self
            if isinstance(e, kind)
            and (request_id is None or getattr(e, "request_id", None) == request_id)
        ]
