"""Rich-based terminal output for the CLI chat."""

from __future__ import annotations

import json
import os
import sys
from typing import Any, Sequence

from rich.console import Console
from rich.markdown import Heading, Markdown
from rich.markup import escape
from rich.padding import Padding
from rich.panel import Panel
from rich.status import Status
from rich.text import Text

from ..services.conversation import ROLE_ASSISTANT, ROLE_USER, Message, ReasoningStep
from ..services.tool_calls import ToolCall

console = Console(stderr=True)
# Separate console for stdout markdown rendering (not stderr)
_stdout_console = Console()

# ---------------------------------------------------------------------------
# Color palette: explicit values for readability on dark terminals.
# Avoids Rich's [dim] (SGR 2 faint) which is nearly invisible on dark bg.
# ---------------------------------------------------------------------------

GOLD = "#C5A059"  # accents, titles
SLATE = "#94A3B8"  # labels ("You:", "AI:")
MUTED = "#8b8b8b"  # secondary text (tool results, recap)
CHROME = "#6b7280"  # UI chrome (status messages, hints)
ERROR_RED = "#CD6B6B"  # inline error messages from the server

_ARGS_PREVIEW = 120
_RECAP_PREVIEW = 200


def use_stdout_console() -> None:
    """Switch renderer to REPL-compatible mode.

    Opens a duplicate of the real stderr file descriptor so Rich output
    bypasses prompt_toolkit's ``patch_stdout`` proxy, which corrupts ANSI
    escape bytes.  Call from inside ``patch_stdout()`` context.
    """
    global console, _stdout_console
    real_stderr = os.fdopen(os.dup(sys.stderr.fileno()), "w")
    console = Console(file=real_stderr, force_terminal=True)
    _stdout_console = Console(file=real_stderr, force_terminal=True)


def _left_aligned_heading(self: Heading, console: Console, options: Any) -> Any:
    self.text.justify = "left"
    if self.tag == "h2":
        yield Text("")
    yield self.text


_heading_patched = False


def _make_markdown(text: str) -> Markdown:
    """Create a Markdown renderable with left-aligned headings."""
    global _heading_patched
    if not _heading_patched:
        Heading.__rich_console__ = _left_aligned_heading
        _heading_patched = True
    return Markdown(text)


def _preview(value: Any, limit: int) -> str:
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    text = text.replace("\n", " ")
    return text if len(text) <= limit else text[:limit] + "..."


# ---------------------------------------------------------------------------
# Welcome / help
# ---------------------------------------------------------------------------


def render_welcome(base_url: str, version: str = "", session_id: str | None = None) -> None:
    console.print()
    console.print(f"  [{GOLD}][bold]chatwire[/bold][/]" + (f" [{MUTED}]v{escape(version)}[/{MUTED}]" if version else ""))
    console.print(f"  [{SLATE}]{escape(base_url)}[/]")
    if session_id:
        console.print(f"  [{MUTED}]session {escape(session_id)}[/{MUTED}]")
    console.print(f"  [{MUTED}]Type /help for commands[/{MUTED}]\n")


def render_help() -> None:
    m = MUTED
    console.print()
    console.print("  /new  /resume <id>  /reasoning  /debug  /quit")
    console.print(f"  Ctrl+C [{m}]cancel the running reply[/]  Ctrl+D [{m}]exit[/]")
    console.print()


def startup_step(message: str) -> Status:
    """Dim animated spinner for a blocking step (sync context manager)."""
    return console.status(f"  [{MUTED}]{message}[/{MUTED}]", spinner="dots12", spinner_style=MUTED)


def render_info(message: str) -> None:
    console.print(f"  [{CHROME}]{escape(message)}[/{CHROME}]")


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


def render_title(title: str | None) -> None:
    if title:
        console.print(f"\n  [{GOLD}]# {escape(title)}[/]")


def render_conversation_recap(messages: Sequence[Message]) -> None:
    """Show the last user/assistant exchange for context on resume."""
    last_user = None
    last_assistant = None
    for msg in reversed(messages):
        if not msg.content:
            continue
        if msg.role == ROLE_ASSISTANT and last_assistant is None:
            last_assistant = msg.content
        elif msg.role == ROLE_USER and last_user is None:
            last_user = msg.content
        if last_user and last_assistant:
            break

    if not last_user and not last_assistant:
        return

    console.print(f"  [{MUTED}]{len(messages)} messages. Last exchange:[/{MUTED}]")
    if last_user:
        console.print(f"  [{SLATE}]You:[/] [{MUTED}]{escape(_preview(last_user, _RECAP_PREVIEW))}[/{MUTED}]")
    if last_assistant:
        console.print(f"  [{SLATE}]AI:[/] [{MUTED}]{escape(_preview(last_assistant, _RECAP_PREVIEW))}[/{MUTED}]")
    console.print()


def render_tool_call_start(call: ToolCall) -> None:
    """Static breadcrumb (no live spinner) for terminal compatibility."""
    args = _preview(call.arguments, _ARGS_PREVIEW) if call.arguments else ""
    console.print(f"  [{CHROME}]> {escape(call.name or call.id)}({escape(args)})[/{CHROME}]")


def render_tool_call_end(call: ToolCall) -> None:
    result = f" [{CHROME}]{escape(_preview(call.result, _ARGS_PREVIEW))}[/{CHROME}]" if call.result else ""
    console.print(f"[green]  ✓[/green] [{MUTED}]{escape(call.name or call.id)}[/{MUTED}]{result}")


def render_memory_update(active: bool) -> None:
    if active:
        console.print(f"  [{CHROME}]Updating memory...[/{CHROME}]")


def render_debug(text: str) -> None:
    console.print(Panel(Text(text), title="debug", title_align="left", border_style=CHROME))


def render_reasoning(steps: Sequence[ReasoningStep]) -> None:
    if not steps:
        return
    lines = Text()
    for i, step in enumerate(steps, 1):
        if i > 1:
            lines.append("\n")
        lines.append(f"{i}. {step.title or 'Step'}", style=f"bold {SLATE}")
        if step.confidence is not None:
            lines.append(f"  ({step.confidence:.0%})", style=MUTED)
        if step.reasoning:
            lines.append(f"\n   {step.reasoning}", style=MUTED)
        if step.action:
            lines.append(f"\n   action: {step.action}", style=CHROME)
    console.print(Panel(lines, title="reasoning", title_align="left", border_style=GOLD))


def render_response(message: Message) -> None:
    """Render a complete assistant message."""
    if message.is_error:
        console.print(f"  [{ERROR_RED}]{escape(message.content)}[/]")
        return
    if not message.content.strip():
        return
    console.print()
    _stdout_console.print(Padding(_make_markdown(message.content), (0, 2, 0, 2)))
    if message.references:
        console.print(f"  [{MUTED}]{len(message.references)} reference(s)[/{MUTED}]")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


def render_error(message: str) -> None:
    console.print(f"\n[red bold]Error:[/red bold] {escape(message)}")


def render_cancelled() -> None:
    console.print(f"  [{CHROME}]cancelled[/{CHROME}]")


# ---------------------------------------------------------------------------
# Live turn view
# ---------------------------------------------------------------------------


class TurnView:
    """Turns engine state changes into incremental terminal output.

    Wire :meth:`refresh` to the engine's ``on_update`` callback; tokens are
    buffered by the engine itself and printed by :meth:`finish` once the run
    ends.
    """

    def __init__(self, engine: Any, show_debug: bool = False, show_reasoning: bool = True) -> None:
        self._engine = engine
        self.show_debug = show_debug
        self.show_reasoning = show_reasoning
        self._started: set[str] = set()
        self._completed: set[str] = set()
        self._title: str | None = None
        self._debug: str | None = None
        self._memory = False
        self._reasoning: tuple[ReasoningStep, ...] = ()

    def begin(self) -> None:
        self._started.clear()
        self._completed.clear()
        self._title = self._engine.title
        self._debug = None
        self._memory = False
        self._reasoning = ()

    def refresh(self) -> None:
        engine = self._engine
        for call in engine.tool_calls.values():
            if call.id not in self._started:
                self._started.add(call.id)
                render_tool_call_start(call)
            if call.is_completed and call.id not in self._completed:
                self._completed.add(call.id)
                render_tool_call_end(call)

        if engine.title != self._title:
            self._title = engine.title
            render_title(self._title)

        if engine.is_memory_updating != self._memory:
            self._memory = engine.is_memory_updating
            render_memory_update(self._memory)

        if self.show_debug and engine.debug_message and engine.debug_message != self._debug:
            render_debug(engine.debug_message)
        self._debug = engine.debug_message

        if engine.reasoning_steps:
            self._reasoning = engine.reasoning_steps

    def finish(self, cancelled: bool = False) -> None:
        engine = self._engine
        if self.show_reasoning:
            render_reasoning(self._reasoning)
        messages = engine.messages
        if messages and messages[-1].role == ROLE_ASSISTANT:
            render_response(messages[-1])
        if cancelled:
            render_cancelled()
        elif engine.error:
            render_error(engine.error)
