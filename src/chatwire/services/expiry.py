"""Cancelable one-shot scheduled callbacks on the running event loop."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

logger = logging.getLogger(__name__)


class ExpiryTimer:
    """Holds at most one pending callback; scheduling again replaces it."""

    def __init__(self) -> None:
        self._handle: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self, delay: float, callback: Callable[[], None]) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()

        def _fire() -> None:
            self._handle = None
            try:
                callback()
            except Exception:
                logger.exception("Expiry callback failed")

        self._handle = loop.call_later(max(0.0, delay), _fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
