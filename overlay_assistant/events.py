"""
Commands accepted and events produced by the orchestrator.

Both are transport-agnostic pydantic models; a host bridges them to its
own messaging layer.
"""
import uuid
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field

from .transcript import SessionEntry


class QueryMode(str, Enum):
    STANDARD = "standard"  # fast + full streams
    REASONING = "reasoning"  # single reasoning stream


class StreamMode(str, Enum):
    FAST = "fast"
    FULL = "full"
    REASONING = "reasoning"


class UsageRecord(BaseModel):
    """Token usage and cost of one completed stream."""

    request_id: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    reasoning_tokens: int = 0
    cost_usd: float = 0.0


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

class StartSession(BaseModel):
    kind: str = "start_session"


class StopSession(BaseModel):
    kind: str = "stop_session"


class AddEntry(BaseModel):
    kind: str = "add_entry"
    entry: SessionEntry


class SubmitQuery(BaseModel):
    kind: str = "submit_query"
    text: str
    mode: QueryMode = QueryMode.STANDARD
    max_tokens: Optional[int] = Field(default=None, ge=1)
    query_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    template_id: Optional[str] = None


class CancelQuery(BaseModel):
    kind: str = "cancel_query"
    query_id: str


class UpdateSettings(BaseModel):
    kind: str = "update_settings"
    settings: dict[str, Any]


Command = Union[StartSession, StopSession, AddEntry, SubmitQuery, CancelQuery, UpdateSettings]


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

class PartialOutput(BaseModel):
    request_id: str
    text: str


class RequestCompleted(BaseModel):
    request_id: str


class RequestFailed(BaseModel):
    request_id: str
    reason: str


class RequestCancelled(BaseModel):
    request_id: str


class UsageRecorded(BaseModel):
    record: UsageRecord


class SessionRecovered(BaseModel):
    entries: list[SessionEntry]


class QueryStarted(BaseModel):
    query_id: str
    request_ids: list[str]


class InitializationFailed(BaseModel):
    reason: str


Event = Union[
    PartialOutput,
    RequestCompleted,
    RequestFailed,
    RequestCancelled,
    UsageRecorded,
    SessionRecovered,
    QueryStarted,
    InitializationFailed,
]

TERMINAL_EVENTS = (RequestCompleted, RequestFailed, RequestCancelled)
