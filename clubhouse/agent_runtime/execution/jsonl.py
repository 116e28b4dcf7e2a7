"""Incremental newline-delimited JSON parser.

Chunks from a pipe split lines at arbitrary points; the parser keeps the
unterminated tail until the next chunk (or ``flush``) completes it.  Blank
lines, malformed lines and non-object values are dropped.
"""

from __future__ import annotations

import json
from typing import Any


class JsonlParser:
    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> list[dict[str, Any]]:
        """Consume a chunk and return every complete event it finished."""
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return [event for line in lines if (event := _parse_line(line)) is not None]

    def flush(self) -> list[dict[str, Any]]:
        """Parse whatever is left in the buffer (called once the stream closes)."""
        tail, self._buffer = self._buffer, ""
        event = _parse_line(tail)
        return [event] if event is not None else []

    @property
    def pending(self) -> str:
        return self._buffer


def _parse_line(line: str) -> dict[str, Any] | None:
    line = line.strip()
    if not line:
        return None
    try:
        value = json.loads(line)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None
