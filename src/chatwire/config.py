"""Configuration loader: YAML file with environment variable fallbacks."""

from __future__ import annotations

import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

_FALSE_VALUES = ("false", "0", "no", "off")


@dataclass
class ServerConfig:
    base_url: str
    stream_path: str = "/api/v1/chat/stream/"
    sessions_path: str = "/api/v1/chat-sessions/"
    api_key: str = ""
    api_key_command: str = ""
    verify_ssl: bool = True
    connect_timeout: float = 10.0
    request_timeout: float = 300.0  # seconds; hard cap on one streamed run
    chunk_stall_timeout: float = 120.0  # seconds of silence before a stream counts as stalled

    @property
    def stream_url(self) -> str:
        return _join_url(self.base_url, self.stream_path)

    def session_url(self, session_id: str) -> str:
        return _join_url(self.base_url, self.sessions_path) + f"{session_id}/"

    def session_messages_url(self, session_id: str) -> str:
        return self.session_url(session_id) + "messages/"


@dataclass
class ChatConfig:
    context: dict[str, Any] = field(default_factory=dict)
    reasoning: bool = False
    debug_message_ttl: float = 5.0
    new_title: str = "New Chat"
    fallback_title: str = "Chat"
    session_id_prefix: str = "chat_"


@dataclass
class CliConfig:
    show_debug: bool = False
    show_reasoning: bool = True


@dataclass
class AppConfig:
    server: ServerConfig
    chat: ChatConfig = field(default_factory=ChatConfig)
    cli: CliConfig = field(default_factory=CliConfig)
    data_dir: Path = field(default_factory=lambda: Path.home() / ".chatwire")


def _join_url(base: str, path: str) -> str:
    if not path:
        return base
    return base.rstrip("/") + "/" + path.lstrip("/")


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() not in _FALSE_VALUES


def _as_float(value: Any, default: float, lo: float, hi: float) -> float:
    try:
        parsed = float(value) if value is not None else default
    except (ValueError, TypeError):
        parsed = default
    return max(lo, min(hi, parsed))


def _resolve_data_dir() -> Path:
    env_dir = os.environ.get("CHATWIRE_HOME")
    if env_dir:
        return Path(os.path.expanduser(env_dir))
    return Path.home() / ".chatwire"


def _get_config_path(data_dir: Path | None = None) -> Path:
    return (data_dir or _resolve_data_dir()) / "config.yaml"


def load_config(config_path: Path | None = None) -> AppConfig:
    raw: dict[str, Any] = {}
    path = config_path or _get_config_path()

    if path.exists():
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Config file {path} must contain a mapping at the top level")

    server_raw = raw.get("server", {}) or {}
    base_url = server_raw.get("base_url") or os.environ.get("CHATWIRE_BASE_URL", "")
    if not base_url:
        raise ValueError(
            f"Server base_url is required. Set 'server.base_url' in config.yaml ({path}) "
            "or the CHATWIRE_BASE_URL environment variable."
        )

    server = ServerConfig(
        base_url=str(base_url),
        stream_path=str(server_raw.get("stream_path") or os.environ.get("CHATWIRE_STREAM_PATH", "/api/v1/chat/stream/")),
        sessions_path=str(
            server_raw.get("sessions_path") or os.environ.get("CHATWIRE_SESSIONS_PATH", "/api/v1/chat-sessions/")
        ),
        api_key=str(server_raw.get("api_key") or os.environ.get("CHATWIRE_API_KEY", "")),
        api_key_command=str(server_raw.get("api_key_command") or os.environ.get("CHATWIRE_API_KEY_COMMAND", "")),
        verify_ssl=_as_bool(server_raw.get("verify_ssl", os.environ.get("CHATWIRE_VERIFY_SSL")), True),
        connect_timeout=_as_float(
            server_raw.get("connect_timeout", os.environ.get("CHATWIRE_CONNECT_TIMEOUT")), 10.0, 1.0, 120.0
        ),
        request_timeout=_as_float(
            server_raw.get("request_timeout", os.environ.get("CHATWIRE_REQUEST_TIMEOUT")), 300.0, 10.0, 3600.0
        ),
        chunk_stall_timeout=_as_float(server_raw.get("chunk_stall_timeout"), 120.0, 5.0, 3600.0),
    )

    chat_raw = raw.get("chat", {}) or {}
    context = chat_raw.get("context", {})
    if not isinstance(context, dict):
        context = {}
    agent_id = os.environ.get("CHATWIRE_AGENT_ID")
    if agent_id and "agent_id" not in context:
        context["agent_id"] = agent_id

    chat = ChatConfig(
        context=context,
        reasoning=_as_bool(chat_raw.get("reasoning", os.environ.get("CHATWIRE_REASONING")), False),
        debug_message_ttl=_as_float(chat_raw.get("debug_message_ttl"), 5.0, 0.5, 300.0),
        new_title=str(chat_raw.get("new_title") or "New Chat"),
        fallback_title=str(chat_raw.get("fallback_title") or "Chat"),
        session_id_prefix=str(chat_raw.get("session_id_prefix", "chat_")),
    )

    cli_raw = raw.get("cli", {}) or {}
    cli = CliConfig(
        show_debug=_as_bool(cli_raw.get("show_debug", os.environ.get("CHATWIRE_SHOW_DEBUG")), False),
        show_reasoning=_as_bool(cli_raw.get("show_reasoning"), True),
    )

    data_dir = path.parent if config_path else _resolve_data_dir()
    if path.exists():
        try:
            path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0600, may hold an api_key
        except OSError:
            pass  # May fail on Windows or non-owned files

    return AppConfig(server=server, chat=chat, cli=cli, data_dir=data_dir)
