"""
Orchestrator — top-level control state machine of the assistant.

Startup order:
    SecretCipher.initialize() → circuit rehydrate → settings read through
    EncryptedStorage → SessionBuffer.load() (recovery) → READY

Until READY every command is queued; queued commands are replayed in
arrival order, each exactly once. Reading settings before the cipher is
initialized would return undecryptable secrets, so nothing is served
earlier.

Per query the orchestrator launches one ``reasoning`` stream or a
``fast``/``full`` pair, each with its own abort token and token budget.
Every stream ends with exactly one terminal event (completed, failed or
cancelled); a completed stream also yields exactly one usage record.
"""
import asyncio
import inspect
import logging
from enum import Enum
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import ValidationError

from .conf import (
    AssistantConfig,
    AssistantSettings,
    MIN_REASONING_TOKEN_BUDGET,
    SETTINGS_STORAGE_KEY,
)
from .events import (
    AddEntry,
    CancelQuery,
    Command,
    InitializationFailed,
    PartialOutput,
    QueryMode,
    QueryStarted,
    RequestCancelled,
    RequestCompleted,
    RequestFailed,
    SessionRecovered,
    StartSession,
    StopSession,
    StreamMode,
    SubmitQuery,
    UpdateSettings,
    UsageRecord,
    UsageRecorded,
)
from .exceptions import (
    InitializationError,
    ProviderUnavailable,
    StorageError,
    UpstreamStreamFailure,
)
from .keepalive import KeepAlive
from .llm.circuit import CircuitBreaker
from .llm.pricing import calculate_cost
from .llm.prompts import DEFAULT_TEMPLATE, PromptTemplate, build_prompt
from .llm.providers import (
    AbortToken,
    ProviderRegistry,
    ProviderRequest,
    StreamError,
    StreamFrame,
    StreamProvider,
    TextDelta,
    UsageReport,
)
from .storage import KeyValueStore
from .transcript import SessionBuffer
from .vault import EncryptedStorage, SecretCipher

logger = logging.getLogger("overlay.orchestrator")


class OrchestratorState(str, Enum):
    INITIALIZING = "initializing"
    READY = "ready"


class RequestState(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


_TERMINAL_STATES = frozenset({
    RequestState.COMPLETED, RequestState.CANCELLED, RequestState.FAILED,
})


@dataclass
class StreamRequest:
    """One cancellable, budgeted model call."""
    id: str
    query_id: str
    mode: StreamMode
    model: str
    token_budget: int
    abort: AbortToken = field(default_factory=AbortToken)
    state: RequestState = RequestState.PENDING
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def terminal(self) -> bool:
        return self.state in _TERMINAL_STATES


class Orchestrator:
    """Owns the cipher, the secret store, the transcript and all streams.

    Events are delivered synchronously to listeners registered with
    :meth:`subscribe`; a listener returning an awaitable has it scheduled.
    """

    def __init__(
        self,
        config: AssistantConfig,
        store: KeyValueStore,
        providers: Optional[ProviderRegistry] = None,
        usage_sink: Optional[Callable[[UsageRecord], Any]] = None,
        keepalive_action: Optional[Callable[[], Any]] = None,
    ):
        self.config = config
        self._store = store
        self.cipher = SecretCipher(
            store, config.installation_id, config.pbkdf2_iterations,
        )
        self.vault = EncryptedStorage(store, self.cipher)
        self.buffer = SessionBuffer(
            store,
            flush_delay=config.flush_delay,
            max_window=config.flush_max_window,
            max_entries=config.max_entries,
        )
        self.providers = providers or ProviderRegistry()
        self.breakers: dict[str, CircuitBreaker] = {
            provider.id: CircuitBreaker(
                provider.id,
                store,
                failure_threshold=config.breaker_failure_threshold,
                recovery_timeout=config.breaker_recovery_timeout,
                half_open_successes=config.breaker_half_open_successes,
            )
            for provider in self.providers
        }
        self.keepalive = KeepAlive(keepalive_action, config.keepalive_interval)
        self._usage_sink = usage_sink
        self._listeners: list[Callable[[Any], Any]] = []
        self._state = OrchestratorState.INITIALIZING
        self._ready = asyncio.Event()
        self._queue: list[tuple[Command, asyncio.Future]] = []
        self._draining = False
        self._queries: dict[str, list[StreamRequest]] = {}
        self._tasks: set[asyncio.Task] = set()
        self._start_task: Optional[asyncio.Task] = None
        self._settings = AssistantSettings()
        self._session_active = False
        self._watchdog: Optional[asyncio.TimerHandle] = None
        self.initialization_error: Optional[BaseException] = None
        self.stalled = False

    def __repr__(self) -> str:
        return (
            f"<Orchestrator [state:{self._state.value}] "
            f"queued={len(self._queue)} queries={list(self._queries)}>"
        )

    # --- Properties ---

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def ready(self) -> bool:
        return self._state is OrchestratorState.READY

    @property
    def settings(self) -> AssistantSettings:
        return self._settings

    @property
    def session_active(self) -> bool:
        return self._session_active

    @property
    def pending_commands(self) -> int:
        return len(self._queue)

    def active_queries(self) -> list[str]:
        return list(self._queries)

    def requests(self, query_id: str) -> list[StreamRequest]:
        return list(self._queries.get(query_id, ()))

    async def wait_ready(self) -> None:
        await self._ready.wait()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, listener: Callable[[Any], Any]) -> Callable[[], None]:
        """Register an event listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _emit(self, event: Any) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    self._spawn(result)
            except Exception:
                logger.exception(
                    "Event listener failed on %s", type(event).__name__,
                )

    def _spawn(self, awaitable: Any) -> asyncio.Task:
        """Schedule ``awaitable`` as a task owned until shutdown."""
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._reap)
        return task

    def _reap(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        err = task.exception()
        if err is not None:
            logger.error("Background task failed: %s", err, exc_info=err)

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """Bring the core up and replay queued commands.

        Concurrent callers share one startup; a failed startup may be
        retried.

        Returns:
            True once READY. False if initialization failed; the
            orchestrator then stays INITIALIZING with ``initialization_error``
            set and queued commands left waiting.
        """
        if self.ready:
            return True
        if self._start_task is None:
            self._start_task = asyncio.ensure_future(self._start())
        task = self._start_task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._start_task is task:
                self._start_task = None

    async def _start(self) -> bool:
        loop = asyncio.get_running_loop()
        if self._watchdog is None:
            self._watchdog = loop.call_later(
                self.config.startup_timeout, self._report_stalled,
            )
        try:
            await self._bootstrap()
        except InitializationError as err:
            self.initialization_error = err
            logger.error("Initialization failed: %s", err)
            self._emit(InitializationFailed(reason=str(err)))
            return False
        self._cancel_watchdog()
        self._state = OrchestratorState.READY
        self._ready.set()
        logger.info(
            "Orchestrator ready, replaying %d queued command(s)", len(self._queue),
        )
        await self._drain_queue()
        return True

    async def _bootstrap(self) -> None:
        await self.cipher.initialize()
        try:
            for breaker in self.breakers.values():
                await breaker.rehydrate()
            document = await self.vault.read(SETTINGS_STORAGE_KEY)
        except StorageError as err:
            raise InitializationError(f"store unavailable: {err}") from err
        if document is not None:
            try:
                self._settings = AssistantSettings.model_validate(document)
            except ValidationError as err:
                logger.error("Stored settings are invalid, using defaults: %s", err)
        if await self.buffer.load():
            self._session_active = True
            self.keepalive.acquire()
            self._emit(SessionRecovered(entries=self.buffer.entries))

    def _report_stalled(self) -> None:
        self._watchdog = None
        if not self.ready:
            self.stalled = True
            logger.error(
                "Initialization stalled after %.1fs with %d command(s) waiting",
                self.config.startup_timeout, len(self._queue),
            )

    def _cancel_watchdog(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None

    async def _drain_queue(self) -> None:
        self._draining = True
        try:
            while self._queue:
                command, future = self._queue.pop(0)
                try:
                    result = await self._execute(command)
                except Exception as err:
                    if not future.done():
                        future.set_exception(err)
                else:
                    if not future.done():
                        future.set_result(result)
        finally:
            self._draining = False

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def dispatch(self, command: Command) -> Any:
        """Run a command, queuing it while the core is not ready.

        Returns:
            The query id for ``SubmitQuery``, a bool for ``CancelQuery``,
            None otherwise.
        """
        if not self.ready or self._draining:
            future = asyncio.get_running_loop().create_future()
            self._queue.append((command, future))
            logger.debug("Not ready, queuing %s", command.kind)
            return await future
        return await self._execute(command)

    async def _execute(self, command: Command) -> Any:
        if isinstance(command, SubmitQuery):
            return self.submit_query(command)
        if isinstance(command, CancelQuery):
            return self.cancel_query(command.query_id)
        if isinstance(command, AddEntry):
            self.buffer.add(command.entry)
            return None
        if isinstance(command, StartSession):
            return await self._start_session()
        if isinstance(command, StopSession):
            return await self._stop_session()
        if isinstance(command, UpdateSettings):
            return await self._update_settings(command.settings)
        raise TypeError(f"Unsupported command: {type(command).__name__}")

    async def _start_session(self) -> None:
        await self.buffer.start()
        if not self._session_active:
            self._session_active = True
            self.keepalive.acquire()
        logger.info("Session started")

    async def _stop_session(self) -> None:
        await self.buffer.stop()
        if self._session_active:
            self._session_active = False
            self.keepalive.release()
        logger.info("Session stopped")

    async def _update_settings(self, changes: dict[str, Any]) -> None:
        merged = self._settings.model_dump()
        merged.update(changes)
        settings = AssistantSettings.model_validate(merged)
        # StorageWriteFailure propagates: a lost secret write is user-visible
        await self.vault.write(SETTINGS_STORAGE_KEY, settings.model_dump(mode="json"))
        self._settings = settings
        logger.info("Settings updated (%s)", ", ".join(sorted(changes)))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _template(self, template_id: Optional[str]) -> PromptTemplate:
        wanted = template_id or self._settings.active_template_id
        for raw in self._settings.templates:
            if raw.get("id") == wanted:
                try:
                    return PromptTemplate.model_validate(raw)
                except ValidationError as err:
                    logger.error("Template %s is invalid: %s", wanted, err)
                    break
        return DEFAULT_TEMPLATE

    def submit_query(self, command: SubmitQuery) -> str:
        """Launch the stream(s) of a query and return its id."""
        query_id = command.query_id
        if query_id in self._queries:
            raise ValueError(f"Query {query_id} is already running")
        if self.config.cancel_previous_queries:
            for previous in list(self._queries):
                self.cancel_query(previous)

        recent = self.buffer.recent(self.config.recent_context_entries)
        prompt = build_prompt(
            command.text,
            self.buffer.as_text(recent),
            self.buffer.as_text(),
            self._template(command.template_id),
        )
        settings = self._settings
        if command.mode is QueryMode.REASONING:
            budget = max(
                command.max_tokens or self.config.full_max_tokens,
                self.config.reasoning_min_tokens,
                MIN_REASONING_TOKEN_BUDGET,
            )
            plan = [(StreamMode.REASONING, settings.reasoning_model, budget,
                     prompt.user_full)]
        else:
            plan = [
                (StreamMode.FAST, settings.fast_model,
                 self.config.fast_max_tokens, prompt.user),
                (StreamMode.FULL, settings.full_model,
                 command.max_tokens or self.config.full_max_tokens,
                 prompt.user_full),
            ]

        requests: list[StreamRequest] = []
        calls: list[ProviderRequest] = []
        for mode, model, budget, user_prompt in plan:
            requests.append(StreamRequest(
                id=f"{query_id}:{mode.value}",
                query_id=query_id,
                mode=mode,
                model=model,
                token_budget=budget,
            ))
            calls.append(ProviderRequest(
                model=model,
                system_prompt=prompt.system,
                user_prompt=user_prompt,
                max_tokens=budget,
                reasoning_effort=(
                    settings.reasoning_effort
                    if mode is StreamMode.REASONING else None
                ),
            ))
        self._queries[query_id] = requests
        self._emit(QueryStarted(
            query_id=query_id, request_ids=[r.id for r in requests],
        ))
        for request, call in zip(requests, calls):
            self.keepalive.acquire()
            request.task = self._spawn(self._run_stream(request, call))
        logger.info(
            "Query %s started (%s)", query_id,
            ", ".join(f"{r.mode.value}:{r.token_budget}" for r in requests),
        )
        return query_id

    def cancel_query(self, query_id: str) -> bool:
        """Cancel every in-flight stream of a query.

        Returns:
            True if the query was running.
        """
        requests = self._queries.get(query_id)
        if not requests:
            return False
        for request in requests:
            if request.terminal:
                continue
            request.abort.cancel()
            self._finish(request, RequestState.CANCELLED)
            if request.task is not None:
                request.task.cancel()
        logger.info("Query %s cancelled", query_id)
        return True

    def _resolve(self, request: StreamRequest) -> tuple[StreamProvider, str]:
        resolved = self.providers.resolve(request.model, self._settings.api_keys)
        if resolved is None:
            raise ProviderUnavailable(
                f"Model {request.model} not available with current API keys"
            )
        provider, api_key = resolved
        breaker = self.breakers.get(provider.id)
        if breaker is not None and not breaker.allow_request():
            raise ProviderUnavailable(
                f"{provider.name} service temporarily unavailable",
                provider=provider.id,
            )
        return provider, api_key

    async def _consume(
        self,
        request: StreamRequest,
        frames: AsyncIterator[StreamFrame],
    ) -> Optional[UsageReport]:
        usage = None
        try:
            async for frame in frames:
                if request.abort.cancelled or request.terminal:
                    # late bytes after cancellation are dropped
                    break
                if isinstance(frame, TextDelta):
                    self._emit(PartialOutput(request_id=request.id, text=frame.text))
                elif isinstance(frame, UsageReport):
                    usage = frame
                elif isinstance(frame, StreamError):
                    raise UpstreamStreamFailure(frame.message)
        finally:
            aclose = getattr(frames, "aclose", None)
            if aclose is not None:
                await aclose()
        return usage

    async def _run_stream(self, request: StreamRequest, call: ProviderRequest) -> None:
        breaker: Optional[CircuitBreaker] = None
        try:
            provider, api_key = self._resolve(request)
            breaker = self.breakers.get(provider.id)
            if request.terminal:
                return
            request.state = RequestState.STREAMING
            usage = await self._consume(
                request, provider.stream(call, api_key, request.abort),
            )
        except asyncio.CancelledError:
            self._finish(request, RequestState.CANCELLED)
            raise
        except ProviderUnavailable as err:
            logger.warning("Stream %s not started: %s", request.id, err)
            self._finish(request, RequestState.FAILED, reason=str(err))
            return
        except Exception as err:
            if request.abort.cancelled:
                self._finish(request, RequestState.CANCELLED)
                return
            logger.error("Stream %s failed: %s", request.id, err)
            if breaker is not None:
                await breaker.record_failure()
            self._finish(request, RequestState.FAILED, reason=str(err))
            return
        if request.abort.cancelled:
            self._finish(request, RequestState.CANCELLED)
            return
        if breaker is not None:
            await breaker.record_success()
        self._finish(request, RequestState.COMPLETED, usage=usage)

    def _usage_record(
        self,
        request: StreamRequest,
        usage: Optional[UsageReport],
    ) -> UsageRecord:
        if usage is None:
            logger.debug("Stream %s reported no usage", request.id)
            usage = UsageReport()
        return UsageRecord(
            request_id=request.id,
            model=request.model,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            reasoning_tokens=usage.reasoning_tokens,
            cost_usd=calculate_cost(
                request.model,
                usage.prompt_tokens,
                usage.completion_tokens,
                usage.provider_cost,
            ),
        )

    def _finish(
        self,
        request: StreamRequest,
        state: RequestState,
        reason: str = "",
        usage: Optional[UsageReport] = None,
    ) -> bool:
        """Move a request to its terminal state; only the first call wins."""
        if request.terminal:
            return False
        request.state = state
        if state is RequestState.COMPLETED:
            record = self._usage_record(request, usage)
            if self._usage_sink is not None:
                try:
                    result = self._usage_sink(record)
                    if inspect.isawaitable(result):
                        self._spawn(result)
                except Exception:
                    logger.exception("Usage sink failed for %s", request.id)
            self._emit(UsageRecorded(record=record))
            self._emit(RequestCompleted(request_id=request.id))
        elif state is RequestState.CANCELLED:
            self._emit(RequestCancelled(request_id=request.id))
        else:
            self._emit(RequestFailed(request_id=request.id, reason=reason))
        self.keepalive.release()
        siblings = self._queries.get(request.query_id)
        if siblings is not None and all(r.terminal for r in siblings):
            del self._queries[request.query_id]
        return True

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Cancel running queries, flush the transcript, stop liveness."""
        self._cancel_watchdog()
        for query_id in list(self._queries):
            self.cancel_query(query_id)
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.buffer.flush()
        await self.keepalive.close()
        logger.info("Orchestrator shut down")
