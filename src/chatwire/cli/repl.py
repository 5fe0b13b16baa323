"""Interactive REPL and one-shot runner for the chat engine."""

from __future__ import annotations

import asyncio
import json
import logging
import platform
import signal
from typing import Any

from ..config import AppConfig
from ..services.conversation import ConversationCallbacks
from ..services.engine import ChatEngine
from . import renderer

logger = logging.getLogger(__name__)

_IS_WINDOWS = platform.system() == "Windows"

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130


def _add_signal_handler(loop: asyncio.AbstractEventLoop, sig: int, callback: Any) -> bool:
    """Add a signal handler, returning False on Windows where it's unsupported."""
    if _IS_WINDOWS:
        return False
    try:
        loop.add_signal_handler(sig, callback)
        return True
    except NotImplementedError:
        return False


def _remove_signal_handler(loop: asyncio.AbstractEventLoop, sig: int) -> None:
    if _IS_WINDOWS:
        return
    try:
        loop.remove_signal_handler(sig)
    except NotImplementedError:
        pass


class _Session:
    """Engine plus terminal view, wired together through the engine callbacks."""

    def __init__(self, config: AppConfig) -> None:
        self.config = config
        self.auth_expired = False
        callbacks = ConversationCallbacks(on_new_session_created=self._on_new_session)
        self.engine = ChatEngine.from_config(config, on_auth_expired=self._on_auth_expired, callbacks=callbacks)
        self.view = renderer.TurnView(
            self.engine,
            show_debug=config.cli.show_debug,
            show_reasoning=config.cli.show_reasoning,
        )
        callbacks.on_update = self.view.refresh

    def _on_new_session(self, session_id: str) -> None:
        logger.info("Conversation %s created", session_id)

    def _on_auth_expired(self) -> None:
        self.auth_expired = True
        renderer.render_error("The server rejected your credentials. Check server.api_key or api_key_command.")

    async def load(self, session_id: str | None) -> bool:
        if session_id:
            with renderer.startup_step("Loading conversation..."):
                await self.engine.load(session_id)
        else:
            await self.engine.load(None)
        if self.engine.error:
            renderer.render_error(self.engine.error)
            return False
        return True

    async def run_turn(self, text: str, render: bool = True) -> bool:
        """Submit one message. Returns True when the turn was interrupted with Ctrl+C."""
        self.auth_expired = False
        interrupted = False

        def _on_sigint() -> None:
            nonlocal interrupted
            interrupted = True
            self.engine.cancel()

        loop = asyncio.get_running_loop()
        _add_signal_handler(loop, signal.SIGINT, _on_sigint)
        self.view.begin()
        try:
            await self.engine.submit(text)
        finally:
            _remove_signal_handler(loop, signal.SIGINT)
        if render:
            self.view.finish(cancelled=interrupted)
        return interrupted

    def failed(self) -> bool:
        messages = self.engine.messages
        return bool(self.auth_expired or self.engine.error or (messages and messages[-1].is_error))


def _dump_json(engine: ChatEngine) -> None:
    result = {
        "session_id": engine.session_id,
        "title": engine.title,
        "messages": [m.to_dict() for m in engine.messages],
        "error": engine.error,
    }
    print(json.dumps(result, indent=2, default=str))


async def _run_once(session: _Session, prompt: str, output_json: bool) -> int:
    interrupted = await session.run_turn(prompt, render=not output_json)
    if output_json:
        _dump_json(session.engine)
    if interrupted:
        return EXIT_INTERRUPTED
    return EXIT_ERROR if session.failed() else EXIT_OK


async def _handle_command(session: _Session, text: str) -> bool:
    """Run a slash command. Returns True when the REPL should exit."""
    parts = text.split(maxsplit=1)
    cmd = parts[0].lower()
    arg = parts[1].strip() if len(parts) > 1 else ""

    if cmd in ("/quit", "/exit"):
        return True
    if cmd == "/help":
        renderer.render_help()
    elif cmd == "/new":
        await session.load(None)
        renderer.render_info("Started a new conversation")
    elif cmd == "/resume":
        if not arg:
            renderer.render_error("Usage: /resume <session id>")
        elif await session.load(arg):
            renderer.render_title(session.engine.title)
            renderer.render_conversation_recap(session.engine.messages)
    elif cmd == "/reasoning":
        session.view.show_reasoning = not session.view.show_reasoning
        renderer.render_info(f"Reasoning panel {'on' if session.view.show_reasoning else 'off'}")
    elif cmd == "/debug":
        session.view.show_debug = not session.view.show_debug
        renderer.render_info(f"Debug panel {'on' if session.view.show_debug else 'off'}")
    else:
        renderer.render_error(f"Unknown command: {cmd}")
    return False


async def _repl(session: _Session, version: str) -> int:
    from prompt_toolkit import PromptSession
    from prompt_toolkit.history import FileHistory
    from prompt_toolkit.patch_stdout import patch_stdout

    history_path = session.config.data_dir / "cli_history"
    history_path.parent.mkdir(parents=True, exist_ok=True)
    prompt_session: PromptSession[str] = PromptSession(history=FileHistory(str(history_path)))

    renderer.render_welcome(session.config.server.base_url, version, session.engine.session_id)
    if session.engine.messages:
        renderer.render_title(session.engine.title)
        renderer.render_conversation_recap(session.engine.messages)

    with patch_stdout():
        renderer.use_stdout_console()
        while True:
            try:
                raw = await prompt_session.prompt_async("> ")
            except EOFError:
                break
            except KeyboardInterrupt:
                continue

            text = raw.strip()
            if not text:
                continue
            if text.startswith("/"):
                if await _handle_command(session, text):
                    break
                continue
            await session.run_turn(text)
    return EXIT_OK


async def run_cli(
    config: AppConfig,
    prompt: str | None = None,
    resume_id: str | None = None,
    output_json: bool = False,
    version: str = "",
) -> int:
    """Entry point for ``chatwire chat``. Returns the process exit code."""
    session = _Session(config)
    try:
        loaded = await session.load(resume_id)
        if prompt is not None:
            if not loaded:
                return EXIT_ERROR
            return await _run_once(session, prompt, output_json)
        return await _repl(session, version)
    finally:
        await session.engine.aclose()
