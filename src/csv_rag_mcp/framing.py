"""
Message framing for newline-delimited JSON streams.

LineFramer turns arbitrarily split byte chunks into complete JSON objects.
Malformed lines are logged and dropped; they never end the stream.

Oversized lines: when an unterminated fragment grows past ``max_line_bytes``
it is discarded, the framer skips input up to the next newline and
``dropped`` is incremented. The connection stays open.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from .constants import DEFAULT_MAX_LINE_BYTES

logger = logging.getLogger(__name__)


class LineFramer:
    """
    Buffering parser for one connection.

    Usage:
        framer = LineFramer()
        for message in framer.feed(chunk):
            handle(message)
        for message in framer.flush():  # at EOF
            handle(message)
    """

    def __init__(self, max_line_bytes: int = DEFAULT_MAX_LINE_BYTES) -> None:
        self.max_line_bytes = max_line_bytes
        self.dropped = 0
        self._buffer = bytearray()
        self._discarding = False

    def feed(self, data: bytes) -> list[dict[str, Any]]:
        """Append a chunk and return every complete message it finishes."""
        messages: list[dict[str, Any]] = []
        if not data:
            return messages

        self._buffer.extend(data)

        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            line = bytes(self._buffer[:newline])
            del self._buffer[:newline + 1]

            if self._discarding:
                # Tail of an oversized line
                self._discarding = False
                continue

            if self.max_line_bytes and len(line) > self.max_line_bytes:
                self._drop_oversized()
                continue

            message = self._parse(line)
            if message is not None:
                messages.append(message)

        if self.max_line_bytes and len(self._buffer) > self.max_line_bytes:
            self._buffer.clear()
            self._discarding = True
            self._drop_oversized()

        return messages

    def _drop_oversized(self) -> None:
        logger.warning(f"Discarding message exceeding {self.max_line_bytes} bytes")
        self.dropped += 1

    def flush(self) -> list[dict[str, Any]]:
        """Parse a final unterminated line (call at end of stream)."""
        line = bytes(self._buffer)
        self._buffer.clear()
        discarding, self._discarding = self._discarding, False
        if discarding or not line.strip():
            return []
        message = self._parse(line)
        return [message] if message is not None else []

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

    def _parse(self, line: bytes) -> dict[str, Any] | None:
        text = line.strip()
        if not text:
            return None
        try:
            message = json.loads(text.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Dropping malformed message: {e}")
            self.dropped += 1
            return None
        if not isinstance(message, dict):
            logger.warning(f"Dropping non-object message of type {type(message).__name__}")
            self.dropped += 1
            return None
        return message
