"""Incremental decoder for ``data: <payload>`` line-framed event streams."""

from __future__ import annotations

import codecs
import logging

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


def is_terminal(payload: str) -> bool:
    """True if a frame payload is the end-of-stream sentinel."""
    return payload == DONE_SENTINEL


class FrameDecoder:
    """Turns arbitrarily split byte chunks into complete frame payloads.

    Bytes are decoded with an incremental decoder, so a multi-byte character
    split across two chunks is reassembled before line splitting.  Lines that
    do not start with ``data: `` (keep-alives, comments, ``event:`` lines) are
    dropped without raising.

    Usage::

        decoder = FrameDecoder("utf-8")
        for chunk in chunks:
            for payload in decoder.feed(chunk):
                ...
        for payload in decoder.flush():
            ...
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._encoding = encoding
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    @property
    def encoding(self) -> str:
        return self._encoding

    @property
    def pending(self) -> str:
        """Text received after the last newline, not yet emitted."""
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[str]:
        """Append a chunk and return the payloads of every frame it completed."""
        if isinstance(chunk, bytes):
            text = self._decoder.decode(chunk)
        else:
            text = chunk
        if not text:
            return []
        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._extract(lines)

    def flush(self) -> list[str]:
        """Decode any trailing bytes and emit the final unterminated line, if it is a frame."""
        self._buffer += self._decoder.decode(b"", final=True)
        leftover, self._buffer = self._buffer, ""
        return self._extract(leftover.split("\n"))

    @staticmethod
    def _extract(lines: list[str]) -> list[str]:
        payloads: list[str] = []
        for line in lines:
            stripped = line.strip()
            if not stripped:
                continue
            if not stripped.startswith(DATA_PREFIX):
                logger.debug("Dropping non-frame line: %.80r", stripped)
                continue
            payloads.append(stripped[len(DATA_PREFIX) :])
        return payloads
