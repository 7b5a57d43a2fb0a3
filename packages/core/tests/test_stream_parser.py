"""Tests for the newline-delimited JSON event stream parser."""

import json

import pytest

from bbpipe_core.claude.stream import EventStreamParser

EVENT = {"type": "assistant", "message": {"content": [{"type": "text", "text": "héllo ✓"}]}}
LINE = json.dumps(EVENT, ensure_ascii=False) + "\n"


def test_single_chunk():
    assert EventStreamParser().feed(LINE) == [EVENT]


@pytest.mark.parametrize("split_at", range(1, len(LINE.encode("utf-8"))))
def test_split_across_two_chunks_parses_once(split_at):
    # Splitting can land inside a multi-byte character; the bytes path must cope.
    data = LINE.encode("utf-8")
    parser = EventStreamParser()
    events = parser.feed_bytes(data[:split_at]) + parser.feed_bytes(data[split_at:])
    assert events == [EVENT]
    assert parser.flush() == []


def test_partial_line_is_buffered_until_complete():
    parser = EventStreamParser()
    assert parser.feed('{"type": "res') == []
    assert parser.feed('ult", "result": "done"}\n') == [{"type": "result", "result": "done"}]


def test_several_events_in_one_chunk_keep_order():
    lines = "".join(json.dumps({"type": "assistant", "n": n}) + "\n" for n in range(3))
    assert [e["n"] for e in EventStreamParser().feed(lines)] == [0, 1, 2]


def test_noise_is_skipped():
    parser = EventStreamParser()
    text = "Loading config...\n\n[1, 2]\n" + LINE + "not json {\n"
    assert parser.feed(text) == [EVENT]


def test_flush_returns_unterminated_last_event():
    parser = EventStreamParser()
    assert parser.feed('{"type": "result", "result": "tail"}') == []
    assert parser.flush() == [{"type": "result", "result": "tail"}]
    assert parser.flush() == []
