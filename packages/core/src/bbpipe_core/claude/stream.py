"""Incremental parser for the CLI's newline-delimited JSON event stream."""

from __future__ import annotations

import codecs
import json
import logging

logger = logging.getLogger(__name__)


class EventStreamParser:
    """Turn arbitrary stdout chunks into complete JSON events.

    A trailing partial line is kept until the chunk that completes it
    arrives, so an event split across reads parses exactly once. Lines that
    are not JSON objects are diagnostic noise and are skipped.
    """

    def __init__(self):
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed_bytes(self, chunk: bytes) -> list[dict]:
        return self.feed(self._decoder.decode(chunk))

    def feed(self, text: str) -> list[dict]:
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        return [event for event in map(_parse_line, lines) if event is not None]

    def flush(self) -> list[dict]:
        """Parse whatever is left once the stream has ended."""
        rest = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        event = _parse_line(rest)
        return [event] if event is not None else []


def _parse_line(line: str) -> dict | None:
    if not line.strip():
        return None
    try:
        event = json.loads(line)
    except json.JSONDecodeError:
        logger.debug("Non-JSON output: %s", line[:200])
        return None
    if not isinstance(event, dict):
        logger.debug("Ignoring non-object event: %s", line[:200])
        return None
    return event
