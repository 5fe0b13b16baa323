"""Classification of frame payloads into tagged stream events.

Payload fields can co-occur (a ``debug`` field next to an ``event`` field, for
instance), so :func:`classify` probes them in a fixed precedence order and the
first match wins:

1. ``debug`` present                       -> :class:`DebugEvent`
2. ``event == "ChatTitle"`` + str ``title`` -> :class:`TitleEvent`
3. ``event == "ToolCallStarted"`` + ``tool`` -> :class:`ToolStartedEvent`
4. ``event == "ToolCallCompleted"`` + ``tool`` -> :class:`ToolCompletedEvent`
5. ``event`` in :data:`CONTENT_EVENTS`       -> :class:`ContentEvent`
6. ``event == "MemoryUpdateStarted"``        -> :class:`MemoryUpdateEvent`
7. any other non-empty ``event``             -> lifecycle events, else :class:`UnknownEvent`
8. no ``event`` but an ``error`` field        -> :class:`ErrorEvent`
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

logger = logging.getLogger(__name__)

CONTENT_EVENTS = frozenset({"RunResponse", "RunResponseContent", "RunContent"})


class EventKind(Enum):
    DEBUG = "debug"
    TITLE = "title"
    TOOL_STARTED = "tool_started"
    TOOL_COMPLETED = "tool_completed"
    CONTENT = "content"
    MEMORY_UPDATE = "memory_update"
    MEMORY_UPDATE_DONE = "memory_update_done"
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    REFERENCES = "references"
    ERROR = "error"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class DebugEvent:
    payload: Any
    kind: EventKind = field(default=EventKind.DEBUG, init=False)

    def render(self) -> str:
        return json.dumps(self.payload, indent=2, default=str)


@dataclass(frozen=True)
class TitleEvent:
    title: str
    kind: EventKind = field(default=EventKind.TITLE, init=False)


@dataclass(frozen=True)
class ToolStartedEvent:
    call_id: str | None
    name: str | None
    args: Any
    timestamp: Any = None
    kind: EventKind = field(default=EventKind.TOOL_STARTED, init=False)


@dataclass(frozen=True)
class ToolCompletedEvent:
    call_id: str | None
    result: Any
    timestamp: Any = None
    kind: EventKind = field(default=EventKind.TOOL_COMPLETED, init=False)


@dataclass(frozen=True)
class ContentEvent:
    token: str
    reasoning_steps: list[Any] | None = None
    run_id: str | None = None
    session_id: str | None = None
    kind: EventKind = field(default=EventKind.CONTENT, init=False)


@dataclass(frozen=True)
class MemoryUpdateEvent:
    kind: EventKind = field(default=EventKind.MEMORY_UPDATE, init=False)


@dataclass(frozen=True)
class MemoryUpdateDoneEvent:
    kind: EventKind = field(default=EventKind.MEMORY_UPDATE_DONE, init=False)


@dataclass(frozen=True)
class RunStartedEvent:
    kind: EventKind = field(default=EventKind.RUN_STARTED, init=False)


@dataclass(frozen=True)
class RunCompletedEvent:
    content: str | None = None
    run_id: str | None = None
    session_id: str | None = None
    kind: EventKind = field(default=EventKind.RUN_COMPLETED, init=False)


@dataclass(frozen=True)
class ReferencesEvent:
    references: list[Any]
    kind: EventKind = field(default=EventKind.REFERENCES, init=False)


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    kind: EventKind = field(default=EventKind.ERROR, init=False)


@dataclass(frozen=True)
class UnknownEvent:
    tag: str | None
    kind: EventKind = field(default=EventKind.UNKNOWN, init=False)


@dataclass(frozen=True)
class ParseError:
    """A frame whose payload could not be decoded. Returned, never raised."""

    payload: str
    reason: str


StreamEvent = Union[
    DebugEvent,
    TitleEvent,
    ToolStartedEvent,
    ToolCompletedEvent,
    ContentEvent,
    MemoryUpdateEvent,
    MemoryUpdateDoneEvent,
    RunStartedEvent,
    RunCompletedEvent,
    ReferencesEvent,
    ErrorEvent,
    UnknownEvent,
]


def _opt_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _extra(data: dict[str, Any], key: str) -> Any:
    extra = data.get("extra_data")
    if isinstance(extra, dict):
        return extra.get(key)
    return None


def _token(data: dict[str, Any]) -> str:
    token = data.get("token")
    if token is None:
        token = data.get("content")
    return token if isinstance(token, str) else ""


def classify(payload: str) -> StreamEvent | ParseError:
    """Decode one frame payload and tag it. See the module docstring for precedence."""
    try:
        data = json.loads(payload)
    except (json.JSONDecodeError, ValueError) as e:
        return ParseError(payload=payload, reason=str(e))
    if not isinstance(data, dict):
        return ParseError(payload=payload, reason=f"expected a JSON object, got {type(data).__name__}")

    if data.get("debug") is not None:
        return DebugEvent(payload=data["debug"])

    raw_event = data.get("event")
    event = raw_event if isinstance(raw_event, str) else (str(raw_event) if raw_event else "")
    tool = data.get("tool")

    if event == "ChatTitle" and isinstance(data.get("title"), str):
        return TitleEvent(title=data["title"])

    if event == "ToolCallStarted" and isinstance(tool, dict):
        return ToolStartedEvent(
            call_id=_opt_str(tool.get("tool_call_id")),
            name=_opt_str(tool.get("tool_name")),
            args=tool.get("tool_args"),
            timestamp=data.get("created_at"),
        )

    if event == "ToolCallCompleted" and isinstance(tool, dict):
        return ToolCompletedEvent(
            call_id=_opt_str(tool.get("tool_call_id")),
            result=tool.get("result"),
            timestamp=data.get("created_at"),
        )

    if event in CONTENT_EVENTS:
        steps = _extra(data, "reasoning_steps")
        return ContentEvent(
            token=_token(data),
            reasoning_steps=list(steps) if isinstance(steps, list) else None,
            run_id=_opt_str(data.get("run_id")),
            session_id=_opt_str(data.get("session_id")),
        )

    if event == "MemoryUpdateStarted":
        return MemoryUpdateEvent()

    if event:
        if event == "MemoryUpdateCompleted":
            return MemoryUpdateDoneEvent()
        if event == "RunStarted":
            return RunStartedEvent()
        if event == "RunCompleted":
            content = data.get("content")
            return RunCompletedEvent(
                content=content if isinstance(content, str) else None,
                run_id=_opt_str(data.get("run_id")),
                session_id=_opt_str(data.get("session_id")),
            )
        if event == "References":
            refs = _extra(data, "references")
            if isinstance(refs, list):
                return ReferencesEvent(references=refs)
        return UnknownEvent(tag=event)

    if data.get("error"):
        error = data["error"]
        if isinstance(error, dict):
            error = error.get("message") or json.dumps(error, default=str)
        return ErrorEvent(message=str(error))

    return UnknownEvent(tag=None)
