from __future__ import annotations

import re
from collections import deque
from typing import Optional

import structlog

from .events import Event, unknown_frame

logger = structlog.get_logger()

# Exactly three ASCII digits; \d would also accept other Unicode digits.
FRAME_PATTERN = re.compile(r"([0-9]{3}) (.*)")

NEWLINE = b"\n"


def parse_frame(line: str) -> Event:
    """Classify one complete line as a coded event or an unknown frame."""
    match = FRAME_PATTERN.fullmatch(line)
    if match is None:
        return unknown_frame(line)
    return Event(code=int(match.group(1)), payload=match.group(2))


def extract_frames(
    buffer: bytes | bytearray,
    encoding: str = "utf-8",
) -> tuple[list[Event], bytes]:
    """Split a buffer into complete frames.

    Args:
        buffer: Raw bytes accumulated from the worker's stdout
        encoding: Text encoding of the worker's output

    Returns:
        The events for every newline-terminated line, in order, and the
        trailing unterminated bytes (empty if the buffer ended in a newline)
    """
    segments = bytes(buffer).split(NEWLINE)
    remaining = segments.pop()
    events = [
        parse_frame(segment.decode(encoding, errors="replace"))
        for segment in segments
    ]
    return events, remaining


def encode_command(command: str, *params: object, encoding: str = "utf-8") -> bytes:
    """Build one outbound line: space-joined tokens and a newline.

    Nothing is escaped; embedded newlines in parameters are sent as-is.
    """
    tokens = [str(command), *(str(p) for p in params)]
    return (" ".join(tokens) + "\n").encode(encoding)


class LineBuffer:
    """Accumulates output chunks and hands out complete events."""

    def __init__(
        self,
        encoding: str = "utf-8",
        max_line_size: Optional[int] = None,
    ) -> None:
        self._buffer = bytearray()
        self._encoding = encoding
        self._max_line_size = max_line_size
        self._events: deque[Event] = deque()
        self._discarding = False

    def append(self, data: bytes) -> None:
        """Append data and extract whatever complete lines it finishes.

        Raises:
            ValueError: If the unterminated line outgrows ``max_line_size``.
                Events completed before it stay available to ``drain`` and
                the rest of the line, up to its newline, is discarded.
        """
        if self._discarding:
            end = data.find(NEWLINE)
            if end < 0:
                return
            data = data[end + 1:]
            self._discarding = False
            logger.debug("Resynchronised after oversized line", skipped=end + 1)
        if not data:
            return
        self._buffer.extend(data)
        events, remaining = extract_frames(self._buffer, self._encoding)
        self._buffer = bytearray(remaining)
        self._events.extend(events)

        if self._max_line_size is not None and len(self._buffer) > self._max_line_size:
            size = len(self._buffer)
            logger.error("Line too large", size=size, max_size=self._max_line_size)
            self._buffer.clear()
            self._discarding = True
            raise ValueError(f"Line too large: {size} bytes")

    def drain(self) -> list[Event]:
        """Return and forget all complete events seen so far."""
        events = list(self._events)
        self._events.clear()
        return events

    def has_event(self) -> bool:
        return len(self._events) > 0

    @property
    def pending(self) -> bytes:
        """The trailing partial line still waiting for its newline."""
        return bytes(self._buffer)

    @property
    def discarding(self) -> bool:
        """True while the rest of an oversized line is being skipped."""
        return self._discarding

    def clear(self) -> None:
        self._buffer.clear()
        self._events.clear()
        self._discarding = False
