"""Chat session engine: submit, stream, cancel, and resume a conversation."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from ..config import AppConfig, ChatConfig
from .conversation import (
    STREAM_ERROR_TEXT,
    ConversationCallbacks,
    ConversationState,
    EnginePhase,
    Message,
    ReasoningStep,
    RunContext,
)
from .credentials import AuthExpiryHandler, CredentialExpiryHandler, Credentials
from .events import ParseError, classify
from .frames import FrameDecoder, is_terminal
from .session_client import SessionClient, SessionClientError
from .tool_calls import ToolCall
from .transport import (
    AuthExpiredError,
    StreamCancelled,
    StreamResponse,
    StreamTransport,
    StreamTransportError,
    create_http_client,
    race_cancel,
)

logger = logging.getLogger(__name__)

RESUME_ERROR_TEXT = "Failed to load chat. Please try refreshing."
UNKNOWN_STREAM_ERROR = "An unknown error occurred during streaming."

_BUSY_PHASES = (EnginePhase.INITIALIZING, EnginePhase.SUBMITTING)


@dataclass
class _PendingResume:
    session_id: str
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    finished: asyncio.Event = field(default_factory=asyncio.Event)


class ChatEngine:
    """Drives one conversation against a line-framed streaming endpoint.

    At most one run streams at a time: :meth:`submit` cancels a run that is
    still streaming and waits for it to finish before sending the next
    message.  Submits that arrive while a resume is loading or a request is
    still being opened are ignored.

    Usage::

        engine = ChatEngine.from_config(config, callbacks=ConversationCallbacks(...))
        await engine.load(session_id)      # or load(None) for a new conversation
        await engine.submit("hello")
        print(engine.messages[-1].content)
        await engine.aclose()
    """

    def __init__(
        self,
        transport: StreamTransport,
        sessions: SessionClient,
        *,
        chat_config: ChatConfig | None = None,
        auth: AuthExpiryHandler | None = None,
        callbacks: ConversationCallbacks | None = None,
    ) -> None:
        self._transport = transport
        self._sessions = sessions
        self._chat = chat_config or ChatConfig()
        self._auth = auth
        self._state = ConversationState(callbacks, debug_message_ttl=self._chat.debug_message_ttl)
        self._state.session.title = self._chat.new_title
        self._run: RunContext | None = None
        self._resume: _PendingResume | None = None
        self._owned_client: httpx.AsyncClient | None = None

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        auth: AuthExpiryHandler | None = None,
        on_auth_expired: Callable[[], None] | None = None,
        callbacks: ConversationCallbacks | None = None,
    ) -> "ChatEngine":
        """Build an engine whose transport and session client share one HTTP client.

        Without an explicit ``auth`` handler, a 401/403 drops cached credentials
        and then calls ``on_auth_expired``.
        """
        credentials = Credentials.from_config(config.server.api_key, config.server.api_key_command)
        client = create_http_client(config.server)
        engine = cls(
            StreamTransport(config.server, credentials, client),
            SessionClient(config.server, credentials, client),
            chat_config=config.chat,
            auth=auth or CredentialExpiryHandler(credentials, on_auth_expired),
            callbacks=callbacks,
        )
        engine._owned_client = client
        return engine

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def phase(self) -> EnginePhase:
        return self._state.phase

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._state.messages)

    @property
    def session_id(self) -> str | None:
        return self._state.session.id

    @property
    def title(self) -> str | None:
        return self._state.session.title

    @property
    def is_new_conversation(self) -> bool:
        return self._state.session.is_new

    @property
    def is_loading(self) -> bool:
        return self._state.is_loading or self._state.phase is EnginePhase.INITIALIZING

    @property
    def is_streaming(self) -> bool:
        return self._run is not None

    @property
    def error(self) -> str | None:
        return self._state.error

    @property
    def debug_message(self) -> str | None:
        return self._state.debug_message

    @property
    def is_agent_responding(self) -> bool:
        return self._state.is_agent_responding

    @property
    def tool_calls(self) -> dict[str, ToolCall]:
        return self._run.tool_calls.as_dict() if self._run else {}

    @property
    def reasoning_steps(self) -> tuple[ReasoningStep, ...]:
        return self._run.reasoning_steps if self._run else ()

    @property
    def is_memory_updating(self) -> bool:
        return self._state.is_memory_updating

    @property
    def update_version(self) -> int:
        return self._state.update_version

    # ------------------------------------------------------------------
    # Session switching
    # ------------------------------------------------------------------

    async def load(self, session_id: str | None = None) -> None:
        """Start a new conversation (``None``) or resume a stored one."""
        await self.cancel_and_wait()
        if not session_id:
            self._state.reset(self._chat.new_title)
            return

        pending = _PendingResume(session_id)
        self._resume = pending
        self._state.begin_resume(session_id)
        try:
            detail = await race_cancel(self._sessions.get_session(session_id), pending.cancel_event)
            page = await race_cancel(self._sessions.get_session_messages(session_id), pending.cancel_event)
        except StreamCancelled:
            logger.info("Resume of %s cancelled", session_id)
            self._state.reset(self._chat.new_title)
            return
        except asyncio.CancelledError:
            pending.cancel_event.set()
            self._state.reset(self._chat.new_title)
            raise
        except SessionClientError as e:
            logger.warning("Failed to load session %s: %s", session_id, e)
            self._state.fail_resume(RESUME_ERROR_TEXT, self._chat.fallback_title)
            return
        except Exception:
            logger.exception("Unexpected error loading session %s", session_id)
            self._state.fail_resume(RESUME_ERROR_TEXT, self._chat.fallback_title)
            return
        finally:
            if self._resume is pending:
                self._resume = None
            pending.finished.set()

        self._state.finish_resume(session_id, detail.title, page.results)

    # ------------------------------------------------------------------
    # Submit / run lifecycle
    # ------------------------------------------------------------------

    def _new_session_id(self) -> str:
        return f"{self._chat.session_id_prefix}{uuid.uuid4()}"

    def _build_payload(self, text: str, session_id: str) -> dict[str, Any]:
        return {
            **self._chat.context,
            "message": text,
            "session_id": session_id,
            "reasoning": self._chat.reasoning,
        }

    async def submit(self, text: str | None) -> None:
        """Send a user message and stream the reply. Returns when the run has ended."""
        if not text or not text.strip():
            return
        if self._state.phase in _BUSY_PHASES:
            logger.debug("Ignoring submit while %s", self._state.phase.value)
            return

        while self._run is not None:
            previous = self._run
            previous.cancel()
            await previous.finished.wait()
            if self._state.phase in _BUSY_PHASES:
                return

        state = self._state
        state.phase = EnginePhase.SUBMITTING
        state.error = None
        state.clear_debug()
        session_id, synthesized = state.ensure_session(self._new_session_id, self._chat.new_title)
        run = RunContext(session_id=session_id, announce_session=synthesized)
        self._run = run
        state.add_user_message(text)
        state.is_loading = True
        state.is_agent_responding = True
        state.changed()

        await self._execute(run, text)

    async def _execute(self, run: RunContext, text: str) -> None:
        state = self._state
        failed = False
        try:
            stream = await self._transport.open(self._build_payload(text, run.session_id), run.cancel_event)
            run.attach_release(stream.aclose)
            if self._run is run:
                state.phase = EnginePhase.STREAMING
                state.changed()
            await self._pump(run, stream)
        except StreamCancelled:
            logger.info("Run for %s was cancelled", run.session_id)
        except AuthExpiredError as e:
            logger.warning("Streaming request for %s rejected: %s", run.session_id, e)
            self._auth_expired()
        except asyncio.CancelledError:
            run.cancel()
            raise
        except Exception as e:
            if run.cancelled:
                logger.info("Run for %s was cancelled", run.session_id)
            else:
                failed = True
                if isinstance(e, StreamTransportError):
                    logger.warning("Stream error for %s: %s", run.session_id, e)
                    state.error = str(e) or UNKNOWN_STREAM_ERROR
                else:
                    logger.exception("Unexpected error while streaming %s", run.session_id)
                    state.error = UNKNOWN_STREAM_ERROR
                state.put_error_message(STREAM_ERROR_TEXT)
        finally:
            await self._finish(run, failed)

    async def _pump(self, run: RunContext, stream: StreamResponse) -> None:
        decoder = FrameDecoder(stream.encoding)
        while not run.cancelled:
            chunk = await stream.read(run.cancel_event)
            if chunk is None:
                self._dispatch(run, decoder.flush())
                return
            if self._dispatch(run, decoder.feed(chunk)):
                return

    def _dispatch(self, run: RunContext, payloads: list[str]) -> bool:
        """Apply frames in arrival order. Returns True when reading should stop."""
        for payload in payloads:
            if run.cancelled:
                return True
            if is_terminal(payload):
                logger.debug("Stream for %s signalled completion", run.session_id)
                return True
            event = classify(payload)
            if isinstance(event, ParseError):
                logger.warning("Skipping malformed frame (%s): %.200r", event.reason, event.payload)
                continue
            self._state.apply(event, run)
            if run.terminated:
                return True
        return False

    def _auth_expired(self) -> None:
        if self._auth is None:
            logger.warning("No auth-expiry handler configured")
            return
        try:
            self._auth.on_auth_expired()
        except Exception:
            logger.exception("Auth-expiry handler failed")

    async def _finish(self, run: RunContext, failed: bool) -> None:
        state = self._state
        await run.release()
        state.end_run(run)
        if self._run is run:
            self._run = None
            if state.phase in (EnginePhase.SUBMITTING, EnginePhase.STREAMING):
                state.phase = EnginePhase.ERROR if failed else EnginePhase.READY
        state.changed()
        run.finished.set()
        if run.announce_session:
            state.notify_session_created(run.session_id)
        state.notify_message_complete()

    # ------------------------------------------------------------------
    # Cancellation / shutdown
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Signal the active run or resume to stop. Does not wait."""
        if self._run is not None:
            self._run.cancel()
        if self._resume is not None:
            self._resume.cancel_event.set()

    async def cancel_and_wait(self) -> None:
        while self._run is not None or self._resume is not None:
            run, resume = self._run, self._resume
            self.cancel()
            if run is not None:
                await run.finished.wait()
            if resume is not None:
                await resume.finished.wait()

    async def aclose(self) -> None:
        await self.cancel_and_wait()
        self._state.clear_debug()
        await self._transport.aclose()
        await self._sessions.aclose()
        if self._owned_client is not None:
            await self._owned_client.aclose()
            self._owned_client = None
