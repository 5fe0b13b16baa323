"""Conversation state: session identity, message list, and per-run event dispatch."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Iterable

from ..models import StoredMessage
from .events import (
    ContentEvent,
    DebugEvent,
    ErrorEvent,
    MemoryUpdateDoneEvent,
    MemoryUpdateEvent,
    ReferencesEvent,
    RunCompletedEvent,
    RunStartedEvent,
    StreamEvent,
    TitleEvent,
    ToolCompletedEvent,
    ToolStartedEvent,
    UnknownEvent,
)
from .expiry import ExpiryTimer
from .tool_calls import ToolCall, ToolCallTracker

logger = logging.getLogger(__name__)

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_SYSTEM = "system"
DISPLAY_ROLES = frozenset({ROLE_USER, ROLE_ASSISTANT})

STREAM_ERROR_TEXT = "Sorry, there was an error processing your request."


class EnginePhase(Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    READY = "ready"
    SUBMITTING = "submitting"
    STREAMING = "streaming"
    ERROR = "error"


@dataclass(frozen=True)
class ReasoningStep:
    title: str = ""
    reasoning: str = ""
    action: str | None = None
    result: str | None = None
    next_action: str | None = None
    confidence: float | None = None

    @classmethod
    def from_payload(cls, raw: Any) -> "ReasoningStep":
        if not isinstance(raw, dict):
            return cls(reasoning=str(raw))
        confidence = raw.get("confidence")
        try:
            confidence = float(confidence) if confidence is not None else None
        except (TypeError, ValueError):
            confidence = None
        return cls(
            title=str(raw.get("title") or ""),
            reasoning=str(raw.get("reasoning") or ""),
            action=raw.get("action"),
            result=raw.get("result"),
            next_action=raw.get("next_action", raw.get("nextAction")),
            confidence=confidence,
        )


@dataclass(frozen=True)
class Message:
    id: str
    role: str
    content: str
    feedback: tuple[Any, ...] = ()
    tool_calls: tuple[ToolCall, ...] = ()
    reasoning_steps: tuple[ReasoningStep, ...] = ()
    references: tuple[Any, ...] = ()
    is_error: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "role": self.role, "content": self.content}
        if self.feedback:
            data["feedback"] = list(self.feedback)
        if self.tool_calls:
            data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.reasoning_steps:
            data["reasoning_steps"] = [asdict(step) for step in self.reasoning_steps]
        if self.references:
            data["references"] = list(self.references)
        if self.is_error:
            data["is_error"] = True
        return data


@dataclass
class Session:
    id: str | None = None
    title: str | None = None
    is_new: bool = True


@dataclass
class ConversationCallbacks:
    """Host collaborators. All are optional and invoked synchronously."""

    on_new_session_created: Callable[[str], None] | None = None
    on_title_update: Callable[[str | None], None] | None = None
    on_message_complete: Callable[[], None] | None = None
    on_update: Callable[[], None] | None = None


@dataclass
class RunContext:
    """Everything scoped to one submit. Discarded when the run ends."""

    session_id: str
    announce_session: bool = False
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    finished: asyncio.Event = field(default_factory=asyncio.Event)
    tool_calls: ToolCallTracker = field(default_factory=ToolCallTracker)
    reasoning_steps: tuple[ReasoningStep, ...] = ()
    assistant_message_id: str = field(default_factory=lambda: f"assistant-{uuid.uuid4()}")
    assistant_created: bool = False
    terminated: bool = False
    _release: Callable[[], Any] | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        self.cancel_event.set()

    def attach_release(self, release: Callable[[], Any]) -> None:
        self._release = release

    async def release(self) -> None:
        """Release the underlying reader. Safe to call more than once."""
        release, self._release = self._release, None
        if release is None:
            return
        try:
            result = release()
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.warning("Error releasing stream reader", exc_info=True)


def _safe_call(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        logger.exception("Host callback %s failed", getattr(callback, "__name__", callback))


def _message_id(record: StoredMessage, index: int, seen: set[str]) -> str:
    """Stable render key for a stored record; never repeats within one history."""
    if record.id and record.id not in seen:
        return record.id
    base = record.id or record.timestamp
    if base is None:
        return str(uuid.uuid4())
    return base if base not in seen else f"{base}-{index}"


class ConversationState:
    """Session-scoped observable state plus the event dispatch for a run.

    Only the dispatch chain mutates ``messages``; everything a run needs to
    remember lives on its :class:`RunContext`, so a callback that starts a new
    run cannot corrupt one that is still finishing.
    """

    def __init__(
        self,
        callbacks: ConversationCallbacks | None = None,
        debug_message_ttl: float = 5.0,
    ) -> None:
        self.callbacks = callbacks or ConversationCallbacks()
        self.debug_message_ttl = debug_message_ttl
        self.session = Session()
        self.messages: list[Message] = []
        self.phase = EnginePhase.IDLE
        self.error: str | None = None
        self.debug_message: str | None = None
        self.is_loading = False
        self.is_agent_responding = False
        self.is_memory_updating = False
        self.update_version = 0
        self._debug_timer = ExpiryTimer()

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def changed(self) -> None:
        self.update_version += 1
        _safe_call(self.callbacks.on_update)

    def notify_title(self) -> None:
        _safe_call(self.callbacks.on_title_update, self.session.title)

    def notify_session_created(self, session_id: str) -> None:
        _safe_call(self.callbacks.on_new_session_created, session_id)

    def notify_message_complete(self) -> None:
        _safe_call(self.callbacks.on_message_complete)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def reset(self, title: str | None) -> None:
        self.clear_debug()
        self.session = Session(id=None, title=title, is_new=True)
        self.messages = []
        self.error = None
        self.is_loading = False
        self.phase = EnginePhase.IDLE
        self.changed()

    def begin_resume(self, session_id: str) -> None:
        logger.info("Resuming conversation %s", session_id)
        self.clear_debug()
        self.session = Session(id=None, title=None, is_new=False)
        self.messages = []
        self.error = None
        self.is_loading = True
        self.phase = EnginePhase.INITIALIZING
        self.changed()

    def finish_resume(self, session_id: str, title: str | None, records: Iterable[StoredMessage]) -> None:
        self.session = Session(id=session_id, title=title, is_new=False)
        seen: set[str] = set()
        messages: list[Message] = []
        for index, record in enumerate(records):
            if record.role not in DISPLAY_ROLES:
                continue
            message_id = _message_id(record, index, seen)
            seen.add(message_id)
            messages.append(
                Message(
                    id=message_id,
                    role=record.role,
                    content=record.content or "",
                    feedback=tuple(record.feedback or ()),
                )
            )
        self.messages = messages
        self.is_loading = False
        self.phase = EnginePhase.READY
        self.changed()

    def fail_resume(self, message: str, fallback_title: str | None) -> None:
        self.session = Session(id=None, title=fallback_title, is_new=False)
        self.messages = []
        self.error = message
        self.is_loading = False
        self.phase = EnginePhase.ERROR
        self.changed()

    def ensure_session(self, new_session_id: Callable[[], str], placeholder_title: str | None) -> tuple[str, bool]:
        """Return the session id, synthesizing one locally for a brand-new conversation."""
        if self.session.id:
            return self.session.id, False
        session_id = new_session_id()
        self.session = Session(id=session_id, title=placeholder_title, is_new=True)
        logger.info("Started new conversation %s", session_id)
        return session_id, True

    def add_user_message(self, text: str) -> Message:
        message = Message(id=str(uuid.uuid4()), role=ROLE_USER, content=text)
        self.messages.append(message)
        self.session.is_new = False
        return message

    # ------------------------------------------------------------------
    # Debug message
    # ------------------------------------------------------------------

    def show_debug(self, text: str) -> None:
        self.debug_message = text
        self._debug_timer.schedule(self.debug_message_ttl, self._expire_debug)

    def clear_debug(self) -> bool:
        self._debug_timer.cancel()
        if self.debug_message is None:
            return False
        self.debug_message = None
        return True

    @property
    def debug_expiry_pending(self) -> bool:
        return self._debug_timer.pending

    def _expire_debug(self) -> None:
        if self.debug_message is not None:
            self.debug_message = None
            self.changed()

    # ------------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------------

    def apply(self, event: StreamEvent, run: RunContext) -> None:
        """Apply one classified event to the state. Sets ``run.terminated`` on in-band errors."""
        if isinstance(event, DebugEvent):
            self.show_debug(event.render())
            self.changed()
            return

        self.clear_debug()

        if isinstance(event, TitleEvent):
            self.session.title = event.title
            self.changed()
            self.notify_title()
        elif isinstance(event, ToolStartedEvent):
            run.tool_calls.on_started(
                ToolCall(id=event.call_id or "", name=event.name, arguments=event.args, start_time=event.timestamp)
            )
            self.changed()
        elif isinstance(event, ToolCompletedEvent):
            if run.tool_calls.on_completed(event.call_id, event.result, event.timestamp):
                self.changed()
        elif isinstance(event, ContentEvent):
            self._apply_content(event, run)
            self.changed()
        elif isinstance(event, MemoryUpdateEvent):
            self.is_memory_updating = True
            self.changed()
        elif isinstance(event, MemoryUpdateDoneEvent):
            self.is_memory_updating = False
            self.changed()
        elif isinstance(event, RunStartedEvent):
            self.is_agent_responding = True
            self.changed()
        elif isinstance(event, RunCompletedEvent):
            self._apply_run_completed(event, run)
            self.changed()
        elif isinstance(event, ReferencesEvent):
            last = self._last_assistant()
            if last is not None:
                self.messages[-1] = replace(last, references=tuple(event.references))
                self.changed()
        elif isinstance(event, ErrorEvent):
            logger.warning("Stream reported an error: %s", event.message)
            self.put_error_message(event.message)
            run.terminated = True
            self.changed()
        elif isinstance(event, UnknownEvent):
            if event.tag:
                logger.info("Received unhandled event type: %s", event.tag)
            else:
                logger.debug("Received payload without an event tag")

    def _apply_content(self, event: ContentEvent, run: RunContext) -> None:
        if event.reasoning_steps is not None:
            run.reasoning_steps = tuple(ReasoningStep.from_payload(step) for step in event.reasoning_steps)

        if not run.assistant_created:
            if not event.token.strip():
                return
            self.messages.append(
                Message(
                    id=run.assistant_message_id,
                    role=ROLE_ASSISTANT,
                    content=event.token,
                    tool_calls=run.tool_calls.snapshot(),
                    reasoning_steps=run.reasoning_steps,
                )
            )
            run.assistant_created = True
        else:
            last = self._last_assistant()
            if last is not None:
                self.messages[-1] = replace(
                    last,
                    content=last.content + event.token,
                    id=self._restamp(last, event.run_id or event.session_id),
                    tool_calls=run.tool_calls.snapshot(),
                    reasoning_steps=run.reasoning_steps,
                )
        self.is_agent_responding = True

    def _apply_run_completed(self, event: RunCompletedEvent, run: RunContext) -> None:
        self.is_agent_responding = False
        if not event.content:
            return
        last = self._last_assistant()
        if last is not None:
            self.messages[-1] = replace(
                last,
                content=event.content,
                id=self._restamp(last, event.run_id or event.session_id),
                tool_calls=run.tool_calls.snapshot(),
                reasoning_steps=run.reasoning_steps,
            )

    def _last_assistant(self) -> Message | None:
        if self.messages and self.messages[-1].role == ROLE_ASSISTANT:
            return self.messages[-1]
        return None

    def _restamp(self, current: Message, candidate: str | None) -> str:
        """Follow a backend rename of the streaming message, refusing ids already in use."""
        if not candidate or candidate == current.id:
            return current.id
        if any(m.id == candidate for m in self.messages[:-1]):
            logger.warning("Not renaming message %s to %s: id already used by an earlier message", current.id, candidate)
            return current.id
        return candidate

    def put_error_message(self, text: str) -> None:
        """Show a terminal error without ever adding a second trailing assistant message."""
        last = self.messages[-1] if self.messages else None
        if last is None or last.role == ROLE_USER:
            self.messages.append(Message(id=str(uuid.uuid4()), role=ROLE_ASSISTANT, content=text, is_error=True))
        elif last.role == ROLE_ASSISTANT and not last.content.strip():
            self.messages[-1] = replace(last, content=text, is_error=True)

    # ------------------------------------------------------------------
    # Run end
    # ------------------------------------------------------------------

    def end_run(self, run: RunContext) -> None:
        run.tool_calls.clear()
        run.reasoning_steps = ()
        self.is_memory_updating = False
        self.is_agent_responding = False
        self.is_loading = False
        self.clear_debug()
