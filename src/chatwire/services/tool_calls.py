"""Per-run tracking of in-flight tool invocations."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any

logger = logging.getLogger(__name__)

STATUS_STARTED = "started"
STATUS_COMPLETED = "completed"


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str | None
    arguments: Any = None
    status: str = STATUS_STARTED
    start_time: Any = None
    end_time: Any = None
    result: Any = None

    @property
    def is_completed(self) -> bool:
        return self.status == STATUS_COMPLETED

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "tool_name": self.name,
            "tool_args": self.arguments,
            "status": self.status,
            "start_time": self.start_time,
        }
        if self.is_completed:
            data["end_time"] = self.end_time
            data["result"] = self.result
        return data


class ToolCallTracker:
    """Ordered map of tool calls keyed by call id.

    Entries are immutable, so :meth:`snapshot` can hand out the same objects
    without the caller ever observing a later status change.
    """

    def __init__(self) -> None:
        self._calls: dict[str, ToolCall] = {}

    def __len__(self) -> int:
        return len(self._calls)

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._calls

    def get(self, call_id: str) -> ToolCall | None:
        return self._calls.get(call_id)

    def on_started(self, call: ToolCall) -> None:
        if not call.id:
            logger.warning("Ignoring tool call start without a call id (tool=%s)", call.name)
            return
        self._calls[call.id] = call

    def on_completed(self, call_id: str | None, result: Any, end_time: Any = None) -> bool:
        """Mark a started call completed. Returns False for unknown ids (no-op)."""
        existing = self._calls.get(call_id) if call_id else None
        if existing is None:
            logger.debug("Ignoring completion for unknown tool call %r", call_id)
            return False
        self._calls[existing.id] = replace(existing, status=STATUS_COMPLETED, result=result, end_time=end_time)
        return True

    def snapshot(self) -> tuple[ToolCall, ...]:
        return tuple(self._calls.values())

    def as_dict(self) -> dict[str, ToolCall]:
        return dict(self._calls)

    def clear(self) -> None:
        self._calls.clear()
