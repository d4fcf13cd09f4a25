"""
Streaming model providers.

A provider turns one budgeted request into an async stream of frames:
``TextDelta`` for visible output, one ``UsageReport`` near the end and
``StreamError`` when the upstream reports a failure in-band. Transport
failures raise ``UpstreamStreamFailure``.

OpenAI and OpenRouter both speak the OpenAI chat-completions protocol over
server-sent events, so they share ``OpenAICompatibleProvider``.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass
from typing import Any, Optional, Union

import aiohttp
import orjson

from ..exceptions import UpstreamStreamFailure

logger = logging.getLogger("overlay.llm")

_O_SERIES_PREFIXES = ("o1", "o3", "o4")
_GPT5_SERIES = ("gpt-5", "gpt-5-mini", "gpt-5-nano")


# ---------------------------------------------------------------------------
# Frames and cancellation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class UsageReport:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    reasoning_tokens: int = 0
    total_tokens: int = 0
    provider_cost: Optional[float] = None


@dataclass(frozen=True)
class StreamError:
    message: str


StreamFrame = Union[TextDelta, UsageReport, StreamError]


class AbortToken:
    """Cooperative cancellation flag shared with a provider call.

    Providers treat it as advisory; the orchestrator treats it as
    authoritative and drops anything that arrives after ``cancel()``.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class ProviderRequest:
    """Provider-agnostic options for one streamed call."""
    model: str
    system_prompt: str
    user_prompt: str
    max_tokens: int
    reasoning_effort: Optional[str] = None


def is_reasoning_model(model: str) -> bool:
    """Return True for o-series and GPT-5 models.

    Handles provider-prefixed ids (``openai/o4-mini`` → ``o4-mini``).
    """
    bare = model.rsplit("/", 1)[-1]
    for prefix in _O_SERIES_PREFIXES + _GPT5_SERIES:
        if bare == prefix or bare.startswith(f"{prefix}-"):
            return True
    return False


def parse_usage(usage: dict[str, Any]) -> UsageReport:
    details = usage.get("completion_tokens_details") or {}
    return UsageReport(
        prompt_tokens=int(usage.get("prompt_tokens") or 0),
        completion_tokens=int(usage.get("completion_tokens") or 0),
        reasoning_tokens=int(details.get("reasoning_tokens") or 0),
        total_tokens=int(usage.get("total_tokens") or 0),
        provider_cost=usage.get("cost"),
    )


def parse_chunk(data: str, check_error_finish_reason: bool = False) -> list[StreamFrame]:
    """Translate one SSE ``data:`` payload into frames.

    Malformed payloads (comments, keep-alive noise) yield no frames.
    """
    try:
        chunk = orjson.loads(data)
    except orjson.JSONDecodeError:
        return []
    if not isinstance(chunk, dict):
        return []
    error = chunk.get("error")
    if error:
        message = error.get("message") if isinstance(error, dict) else str(error)
        return [StreamError(message or "unknown upstream error")]
    frames: list[StreamFrame] = []
    choices = chunk.get("choices") or []
    if choices:
        choice = choices[0]
        if check_error_finish_reason and choice.get("finish_reason") == "error":
            return [StreamError("stream finished with error")]
        content = (choice.get("delta") or {}).get("content")
        if content:
            frames.append(TextDelta(content))
    if chunk.get("usage"):
        frames.append(parse_usage(chunk["usage"]))
    return frames


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class StreamProvider(ABC):
    """Contract every model backend implements."""

    id: str = ""
    name: str = ""
    # field of the ``api_keys`` settings section holding this provider's key
    key_field: str = ""

    @abstractmethod
    def supports(self, model: str) -> bool:
        """Return True if ``model`` is served by this provider."""

    @abstractmethod
    def stream(
        self,
        request: ProviderRequest,
        api_key: str,
        abort: AbortToken,
    ) -> AsyncIterator[StreamFrame]:
        """Stream frames for ``request``."""


class OpenAICompatibleProvider(StreamProvider):
    """Chat-completions provider streaming over server-sent events."""

    url: str = ""
    check_error_finish_reason: bool = False

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 120.0,
    ):
        self._session = session
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    def headers(self, api_key: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {api_key}"}

    def build_body(self, request: ProviderRequest) -> dict[str, Any]:
        """Build the JSON request body.

        Reasoning models take the ``developer`` role, ``max_completion_tokens``
        and no ``temperature``.
        """
        reasoning = is_reasoning_model(request.model)
        body: dict[str, Any] = {
            "model": request.model,
            "messages": [
                {
                    "role": "developer" if reasoning else "system",
                    "content": request.system_prompt,
                },
                {"role": "user", "content": request.user_prompt},
            ],
            "stream": True,
        }
        if reasoning:
            body["max_completion_tokens"] = request.max_tokens
            if request.reasoning_effort:
                body["reasoning_effort"] = request.reasoning_effort
        else:
            body["max_tokens"] = request.max_tokens
            body["temperature"] = 0.7
        return body

    async def _error_message(self, response: aiohttp.ClientResponse) -> str:
        text = await response.text()
        try:
            payload = orjson.loads(text)
            return payload["error"]["message"]
        except (orjson.JSONDecodeError, KeyError, TypeError):
            return text or "Unknown error"

    async def stream(
        self,
        request: ProviderRequest,
        api_key: str,
        abort: AbortToken,
    ) -> AsyncIterator[StreamFrame]:
        session = self._session or aiohttp.ClientSession(timeout=self._timeout)
        try:
            async with session.post(
                self.url,
                data=orjson.dumps(self.build_body(request)),
                headers={
                    "Content-Type": "application/json",
                    **self.headers(api_key),
                },
            ) as response:
                if response.status >= 400:
                    message = await self._error_message(response)
                    raise UpstreamStreamFailure(
                        f"{self.name} error {response.status}: {message}",
                        provider=self.id,
                        status=response.status,
                    )
                content_type = response.headers.get("Content-Type", "")
                if "application/json" in content_type and "text/event-stream" not in content_type:
                    # some reasoning models answer without streaming
                    payload = orjson.loads(await response.read())
                    if payload.get("error"):
                        yield StreamError(payload["error"].get("message", "unknown error"))
                        return
                    if payload.get("usage"):
                        yield parse_usage(payload["usage"])
                    choices = payload.get("choices") or [{}]
                    content = (choices[0].get("message") or {}).get("content")
                    if content:
                        yield TextDelta(content)
                    return
                async for raw in response.content:
                    if abort.cancelled:
                        return
                    line = raw.decode("utf-8", errors="replace").strip()
                    if not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if data == "[DONE]":
                        return
                    for frame in parse_chunk(data, self.check_error_finish_reason):
                        yield frame
        except aiohttp.ClientError as err:
            raise UpstreamStreamFailure(
                f"{self.name} connection failed: {err}", provider=self.id,
            ) from err
        finally:
            if self._session is None:
                await session.close()


class OpenAIProvider(OpenAICompatibleProvider):
    id = "openai"
    name = "OpenAI"
    key_field = "openai"
    url = "https://api.openai.com/v1/chat/completions"

    def supports(self, model: str) -> bool:
        return "/" not in model and (
            model.startswith("gpt-") or is_reasoning_model(model)
        )

    def build_body(self, request: ProviderRequest) -> dict[str, Any]:
        body = super().build_body(request)
        body["stream_options"] = {"include_usage": True}
        return body


class OpenRouterProvider(OpenAICompatibleProvider):
    id = "openrouter"
    name = "OpenRouter"
    key_field = "openrouter"
    url = "https://openrouter.ai/api/v1/chat/completions"
    check_error_finish_reason = True

    def supports(self, model: str) -> bool:
        return "/" in model

    def headers(self, api_key: str) -> dict[str, str]:
        headers = super().headers(api_key)
        headers["X-Title"] = "Overlay Assistant"
        return headers

    def build_body(self, request: ProviderRequest) -> dict[str, Any]:
        body = super().build_body(request)
        body["usage"] = {"include": True}
        return body


class ProviderRegistry:
    """Resolves which provider serves a model given the configured keys.

    Providers are tried in registration order (OpenAI before OpenRouter by
    default).
    """

    def __init__(self, providers: Optional[Iterable[StreamProvider]] = None):
        if providers is None:
            providers = (OpenAIProvider(), OpenRouterProvider())
        self._providers: dict[str, StreamProvider] = {}
        for provider in providers:
            self._providers[provider.id] = provider

    def __iter__(self):
        return iter(self._providers.values())

    def get(self, provider_id: str) -> StreamProvider:
        try:
            return self._providers[provider_id]
        except KeyError:
            raise KeyError(f"Unknown provider: {provider_id}") from None

    def resolve(
        self,
        model: str,
        api_keys: dict[str, str],
    ) -> Optional[tuple[StreamProvider, str]]:
        """Return ``(provider, api_key)`` for ``model`` or None."""
        for provider in self._providers.values():
            key = api_keys.get(provider.key_field)
            if key and provider.supports(model):
                return provider, key
        return None
