"""End-to-end tests for ChatEngine against a mock chat server."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable
from unittest.mock import MagicMock

import httpx
import pytest

from chatwire.config import ChatConfig, ServerConfig
from chatwire.services.conversation import STREAM_ERROR_TEXT, ConversationCallbacks, EnginePhase
from chatwire.services.credentials import Credentials
from chatwire.services.engine import RESUME_ERROR_TEXT, ChatEngine
from chatwire.services.session_client import SessionClient
from chatwire.services.transport import StreamTransport

BASE = "https://chat.example.com"


def frame(data: dict[str, Any]) -> bytes:
    return f"data: {json.dumps(data)}\n".encode()


def token(text: str, **extra: Any) -> bytes:
    return frame({"event": "RunResponseContent", "token": text, **extra})


DONE = b"data: [DONE]\n"


class ScriptedBody(httpx.AsyncByteStream):
    """Response body that yields byte chunks and blocks on any asyncio.Event in the script."""

    def __init__(self, *parts: bytes | asyncio.Event) -> None:
        self.parts = parts
        self.yielded: list[bytes] = []
        self.closed = False

    async def __aiter__(self):
        for part in self.parts:
            if isinstance(part, asyncio.Event):
                await part.wait()
            else:
                self.yielded.append(part)
                yield part

    async def aclose(self) -> None:
        self.closed = True


class FakeChatServer:
    def __init__(self) -> None:
        self.streams: list[httpx.Response | ScriptedBody] = []
        self.sessions: dict[str, tuple[int, Any]] = {}
        self.messages: dict[str, tuple[int, Any]] = {}
        self.stream_requests: list[dict[str, Any]] = []
        self.open_gate: asyncio.Event | None = None
        self.get_gate: asyncio.Event | None = None
        self.get_requests: list[str] = []
        self.http = httpx.AsyncClient(transport=httpx.MockTransport(self._handle))

    async def _handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "POST" and path == "/api/v1/chat/stream/":
            self.stream_requests.append(json.loads(request.content))
            if self.open_gate is not None:
                await self.open_gate.wait()
            item = self.streams.pop(0)
            if isinstance(item, httpx.Response):
                return item
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=item)
        prefix = "/api/v1/chat-sessions/"
        if request.method == "GET" and path.startswith(prefix):
            self.get_requests.append(path)
            if self.get_gate is not None:
                await self.get_gate.wait()
            rest = path[len(prefix) :].strip("/").split("/")
            table = self.messages if len(rest) == 2 and rest[1] == "messages" else self.sessions
            status, body = table.get(rest[0], (404, {"detail": "not found"}))
            return httpx.Response(status, json=body)
        return httpx.Response(404)

    def engine(
        self,
        callbacks: ConversationCallbacks | None = None,
        auth: Any = None,
        chat_config: ChatConfig | None = None,
        **server_kwargs: Any,
    ) -> ChatEngine:
        config = ServerConfig(base_url=BASE, **server_kwargs)
        credentials = Credentials()
        return ChatEngine(
            StreamTransport(config, credentials, self.http),
            SessionClient(config, credentials, self.http),
            chat_config=chat_config or ChatConfig(context={"agent_id": "agent-1"}),
            auth=auth,
            callbacks=callbacks,
        )

    async def close(self) -> None:
        await self.http.aclose()


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


class TestNewConversation:
    @pytest.mark.asyncio
    async def test_streams_reply_and_announces_session_once(self) -> None:
        server = FakeChatServer()
        server.streams.append(
            ScriptedBody(
                frame({"event": "ChatTitle", "title": "Greeting"}),
                frame({"event": "ToolCallStarted", "tool": {"tool_call_id": "c1", "tool_name": "search"}}),
                frame({"event": "ToolCallCompleted", "tool": {"tool_call_id": "c1", "result": "ok"}}),
                token(""),
                token("Hel"),
                token("lo", run_id="run-1"),
                DONE,
            )
        )
        server.streams.append(ScriptedBody(token("Again"), DONE))
        callbacks = ConversationCallbacks(
            on_new_session_created=MagicMock(),
            on_title_update=MagicMock(),
            on_message_complete=MagicMock(),
            on_update=MagicMock(),
        )
        engine = server.engine(callbacks=callbacks)
        await engine.load(None)
        assert engine.phase is EnginePhase.IDLE
        assert engine.is_new_conversation

        await engine.submit("hi")

        session_id = engine.session_id
        assert session_id.startswith("chat_")
        assert [(m.role, m.content) for m in engine.messages] == [("user", "hi"), ("assistant", "Hello")]
        assert engine.messages[-1].id == "run-1"
        assert [c.id for c in engine.messages[-1].tool_calls] == ["c1"]
        assert engine.title == "Greeting"
        assert engine.phase is EnginePhase.READY
        assert engine.tool_calls == {}
        assert not engine.is_loading
        assert not engine.is_agent_responding
        callbacks.on_title_update.assert_called_once_with("Greeting")
        callbacks.on_new_session_created.assert_called_once_with(session_id)
        callbacks.on_message_complete.assert_called_once_with()
        assert callbacks.on_update.call_count > 0
        assert server.stream_requests[0] == {
            "agent_id": "agent-1",
            "message": "hi",
            "session_id": session_id,
            "reasoning": False,
        }

        await engine.submit("more")
        assert server.stream_requests[1]["session_id"] == session_id
        assert engine.messages[-1].content == "Again"
        callbacks.on_new_session_created.assert_called_once_with(session_id)
        assert callbacks.on_message_complete.call_count == 2
        await server.close()

    @pytest.mark.asyncio
    async def test_blank_submit_is_ignored(self) -> None:
        server = FakeChatServer()
        engine = server.engine()
        await engine.submit("   ")
        await engine.submit("")
        assert engine.messages == ()
        assert server.stream_requests == []
        await server.close()


class TestStreamProcessing:
    @pytest.mark.asyncio
    async def test_malformed_frames_are_skipped(self) -> None:
        server = FakeChatServer()
        server.streams.append(
            ScriptedBody(
                token("a"),
                b'data: {"event": "RunResponseContent", "token": \n',
                token("b"),
                b"data: [1, 2]\n",
                b": comment\n",
                token("c"),
                DONE,
            )
        )
        engine = server.engine()
        await engine.submit("hi")
        assert engine.messages[-1].content == "abc"
        assert engine.error is None
        assert engine.phase is EnginePhase.READY
        await server.close()

    @pytest.mark.asyncio
    async def test_done_stops_reading_even_with_buffered_frames(self) -> None:
        server = FakeChatServer()
        never = asyncio.Event()
        body = ScriptedBody(token("a") + DONE + token("b"), token("c"), never)
        server.streams.append(body)
        engine = server.engine()
        await asyncio.wait_for(engine.submit("hi"), timeout=2.0)
        assert engine.messages[-1].content == "a"
        assert len(body.yielded) == 1
        assert body.closed
        await server.close()

    @pytest.mark.asyncio
    async def test_frames_split_across_chunks(self) -> None:
        server = FakeChatServer()
        raw = token("Grüße") + token(" ✓") + DONE
        server.streams.append(ScriptedBody(*(raw[i : i + 3] for i in range(0, len(raw), 3))))
        engine = server.engine()
        await engine.submit("hi")
        assert engine.messages[-1].content == "Grüße ✓"
        await server.close()

    @pytest.mark.asyncio
    async def test_trailing_frame_without_newline(self) -> None:
        server = FakeChatServer()
        server.streams.append(ScriptedBody(token("a"), token("b").rstrip(b"\n")))
        engine = server.engine()
        await engine.submit("hi")
        assert engine.messages[-1].content == "ab"
        await server.close()

    @pytest.mark.asyncio
    async def test_in_band_error_terminates_run(self) -> None:
        server = FakeChatServer()
        server.streams.append(ScriptedBody(frame({"error": "quota exceeded"}), token("late"), DONE))
        engine = server.engine()
        await engine.submit("hi")
        assert [(m.role, m.content) for m in engine.messages] == [("user", "hi"), ("assistant", "quota exceeded")]
        assert engine.messages[-1].is_error
        assert engine.error is None
        await server.close()

    @pytest.mark.asyncio
    async def test_reasoning_and_memory_flags_clear_at_end(self) -> None:
        server = FakeChatServer()
        server.streams.append(
            ScriptedBody(
                token("a", extra_data={"reasoning_steps": [{"title": "Plan"}]}),
                frame({"event": "MemoryUpdateStarted"}),
                frame({"debug": {"note": "x"}}),
            )
        )
        engine = server.engine()
        await engine.submit("hi")
        assert engine.messages[-1].reasoning_steps[0].title == "Plan"
        assert engine.reasoning_steps == ()
        assert not engine.is_memory_updating
        assert engine.debug_message is None
        await server.close()


class TestErrors:
    @pytest.mark.asyncio
    async def test_server_error_status(self) -> None:
        server = FakeChatServer()
        server.streams.append(httpx.Response(500))
        server.streams.append(ScriptedBody(token("recovered"), DONE))
        engine = server.engine()

        await engine.submit("hi")
        assert engine.error == "Server responded with status: 500"
        assert engine.phase is EnginePhase.ERROR
        assert [(m.role, m.content) for m in engine.messages] == [("user", "hi"), ("assistant", STREAM_ERROR_TEXT)]
        assert engine.messages[-1].is_error

        await engine.submit("again")
        assert engine.error is None
        assert engine.phase is EnginePhase.READY
        assert engine.messages[-1].content == "recovered"
        await server.close()

    @pytest.mark.asyncio
    async def test_auth_rejection_delegates_to_handler(self) -> None:
        server = FakeChatServer()
        server.streams.append(httpx.Response(401))
        auth = MagicMock()
        on_complete = MagicMock()
        engine = server.engine(callbacks=ConversationCallbacks(on_message_complete=on_complete), auth=auth)

        await engine.submit("hi")
        auth.on_auth_expired.assert_called_once_with()
        on_complete.assert_called_once_with()
        assert engine.error is None
        assert [m.role for m in engine.messages] == ["user"]
        assert not engine.is_loading
        await server.close()

    @pytest.mark.asyncio
    async def test_stalled_stream_times_out(self) -> None:
        server = FakeChatServer()
        server.streams.append(ScriptedBody(token("a"), asyncio.Event()))
        engine = server.engine(chunk_stall_timeout=0.05)
        await asyncio.wait_for(engine.submit("hi"), timeout=5.0)
        assert engine.phase is EnginePhase.ERROR
        assert engine.error
        # Partial reply is kept rather than replaced by the error text
        assert engine.messages[-1].content == "a"
        await server.close()


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_is_clean(self) -> None:
        server = FakeChatServer()
        body = ScriptedBody(
            frame({"event": "ToolCallStarted", "tool": {"tool_call_id": "c1", "tool_name": "search"}}),
            frame({"event": "MemoryUpdateStarted"}),
            token("partial", extra_data={"reasoning_steps": [{"title": "x"}]}),
            asyncio.Event(),
        )
        server.streams.append(body)
        on_complete = MagicMock()
        engine = server.engine(callbacks=ConversationCallbacks(on_message_complete=on_complete))

        task = asyncio.ensure_future(engine.submit("hi"))
        await wait_for(lambda: len(engine.messages) == 2)
        assert engine.phase is EnginePhase.STREAMING
        assert engine.tool_calls
        engine.cancel()
        await asyncio.wait_for(task, timeout=5.0)

        assert engine.error is None
        assert not any(m.is_error for m in engine.messages)
        assert engine.messages[-1].content == "partial"
        assert engine.tool_calls == {}
        assert engine.reasoning_steps == ()
        assert not engine.is_memory_updating
        assert not engine.is_streaming
        assert engine.phase is EnginePhase.READY
        assert body.closed
        on_complete.assert_called_once_with()
        await server.close()

    @pytest.mark.asyncio
    async def test_submit_while_streaming_supersedes_previous_run(self) -> None:
        server = FakeChatServer()
        first = ScriptedBody(token("one"), asyncio.Event())
        server.streams.append(first)
        server.streams.append(ScriptedBody(token("two"), DONE))
        on_created = MagicMock()
        engine = server.engine(callbacks=ConversationCallbacks(on_new_session_created=on_created))

        task = asyncio.ensure_future(engine.submit("first"))
        await wait_for(lambda: len(engine.messages) == 2)
        await asyncio.wait_for(engine.submit("second"), timeout=5.0)
        await asyncio.wait_for(task, timeout=5.0)

        assert [(m.role, m.content) for m in engine.messages] == [
            ("user", "first"),
            ("assistant", "one"),
            ("user", "second"),
            ("assistant", "two"),
        ]
        assert first.closed
        assert server.stream_requests[0]["session_id"] == server.stream_requests[1]["session_id"]
        on_created.assert_called_once_with(engine.session_id)
        await server.close()

    @pytest.mark.asyncio
    async def test_submit_while_opening_is_ignored(self) -> None:
        server = FakeChatServer()
        server.open_gate = asyncio.Event()
        server.streams.append(ScriptedBody(token("reply"), DONE))
        engine = server.engine()

        task = asyncio.ensure_future(engine.submit("first"))
        await wait_for(lambda: len(server.stream_requests) == 1)
        assert engine.phase is EnginePhase.SUBMITTING
        await engine.submit("second")
        server.open_gate.set()
        await asyncio.wait_for(task, timeout=5.0)

        assert [(m.role, m.content) for m in engine.messages] == [("user", "first"), ("assistant", "reply")]
        assert len(server.stream_requests) == 1
        await server.close()

    @pytest.mark.asyncio
    async def test_load_cancels_active_run(self) -> None:
        server = FakeChatServer()
        body = ScriptedBody(token("partial"), asyncio.Event())
        server.streams.append(body)
        engine = server.engine()

        task = asyncio.ensure_future(engine.submit("hi"))
        await wait_for(lambda: len(engine.messages) == 2)
        await asyncio.wait_for(engine.load(None), timeout=5.0)
        await task

        assert engine.messages == ()
        assert engine.session_id is None
        assert engine.phase is EnginePhase.IDLE
        assert body.closed
        await server.close()

    @pytest.mark.asyncio
    async def test_aclose_cancels_active_run(self) -> None:
        server = FakeChatServer()
        body = ScriptedBody(token("partial"), asyncio.Event())
        server.streams.append(body)
        engine = server.engine()

        task = asyncio.ensure_future(engine.submit("hi"))
        await wait_for(lambda: len(engine.messages) == 2)
        await asyncio.wait_for(engine.aclose(), timeout=5.0)
        await task
        assert body.closed
        assert not engine.is_streaming
        await server.close()


class TestResume:
    @pytest.mark.asyncio
    async def test_resume_filters_history(self) -> None:
        server = FakeChatServer()
        server.sessions["s1"] = (200, {"session_id": "s1", "title": "Old chat"})
        server.messages["s1"] = (
            200,
            {
                "count": 3,
                "next": None,
                "results": [
                    {"id": 1, "role": "system", "content": "rules"},
                    {"id": 2, "role": "user", "content": "hi"},
                    {"id": 3, "role": "assistant", "content": "hello"},
                ],
            },
        )
        server.streams.append(ScriptedBody(token("welcome back"), DONE))
        on_created = MagicMock()
        engine = server.engine(callbacks=ConversationCallbacks(on_new_session_created=on_created))

        await engine.load("s1")
        assert [(m.id, m.role, m.content) for m in engine.messages] == [("2", "user", "hi"), ("3", "assistant", "hello")]
        assert engine.title == "Old chat"
        assert engine.session_id == "s1"
        assert not engine.is_new_conversation
        assert engine.phase is EnginePhase.READY

        await engine.submit("again")
        assert server.stream_requests[0]["session_id"] == "s1"
        assert engine.messages[-1].content == "welcome back"
        on_created.assert_not_called()
        await server.close()

    @pytest.mark.asyncio
    async def test_resume_failure_leaves_session_usable(self) -> None:
        server = FakeChatServer()
        server.sessions["s1"] = (500, {"detail": "boom"})
        server.streams.append(ScriptedBody(token("fresh"), DONE))
        engine = server.engine()

        await engine.load("s1")
        assert engine.error == RESUME_ERROR_TEXT
        assert engine.title == "Chat"
        assert engine.messages == ()
        assert engine.phase is EnginePhase.ERROR
        assert not engine.is_loading

        await engine.submit("hello")
        assert engine.error is None
        assert engine.messages[-1].content == "fresh"
        await server.close()

    @pytest.mark.asyncio
    async def test_odd_records_do_not_fail_resume(self) -> None:
        server = FakeChatServer()
        server.sessions["s1"] = (200, {"session_id": "s1", "title": "Old chat"})
        server.messages["s1"] = (
            200,
            {
                "results": [
                    {"id": 1, "role": None, "content": "orphan"},
                    {"id": 2, "role": "user", "content": "hi"},
                    {"id": 3, "role": "assistant", "content": "hello", "feedback": ["thumbs_up"]},
                ],
            },
        )
        engine = server.engine()

        await engine.load("s1")
        assert engine.error is None
        assert engine.phase is EnginePhase.READY
        assert [(m.role, m.content) for m in engine.messages] == [("user", "hi"), ("assistant", "hello")]
        assert engine.messages[-1].feedback == ("thumbs_up",)
        await server.close()

    @pytest.mark.asyncio
    async def test_submit_during_resume_is_ignored_and_cancel_resets(self) -> None:
        server = FakeChatServer()
        server.get_gate = asyncio.Event()
        server.sessions["s1"] = (200, {"session_id": "s1", "title": "Old chat"})
        engine = server.engine()

        task = asyncio.ensure_future(engine.load("s1"))
        await wait_for(lambda: len(server.get_requests) == 1)
        assert engine.phase is EnginePhase.INITIALIZING
        assert engine.is_loading

        await engine.submit("too early")
        assert server.stream_requests == []
        assert engine.messages == ()

        engine.cancel()
        await task
        assert engine.phase is EnginePhase.IDLE
        assert not engine.is_loading
        assert engine.error is None
        assert engine.session_id is None
        assert engine.is_new_conversation
        assert server.stream_requests == []
        await server.close()

    @pytest.mark.asyncio
    async def test_cancelled_load_task_leaves_engine_usable(self) -> None:
        server = FakeChatServer()
        server.get_gate = asyncio.Event()
        server.sessions["s1"] = (200, {"session_id": "s1", "title": "Old chat"})
        server.streams.append(ScriptedBody(token("fresh"), DONE))
        engine = server.engine()

        task = asyncio.ensure_future(engine.load("s1"))
        await wait_for(lambda: len(server.get_requests) == 1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert engine.phase is EnginePhase.IDLE
        assert not engine.is_loading

        await engine.submit("hello")
        assert len(server.stream_requests) == 1
        assert [(m.role, m.content) for m in engine.messages] == [("user", "hello"), ("assistant", "fresh")]
        assert engine.phase is EnginePhase.READY
        await server.close()
