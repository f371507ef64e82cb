"""Tests for the log formatters and trace context."""

import json
import logging

import pytest

from ideaforge.observability.logging import (
    HumanReadableFormatter,
    StructuredFormatter,
    clear_trace_context,
    get_trace_context,
    set_trace_context,
    strip_ansi_codes,
)


@pytest.fixture(autouse=True)
def reset_context():
    clear_trace_context()
    yield
    clear_trace_context()


def make_record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("ideaforge.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_set_trace_context_merges():
    set_trace_context(session_id="abc123", run_id="run1")
    set_trace_context(node_id="parser")

    assert get_trace_context() == {"session_id": "abc123", "run_id": "run1", "node_id": "parser"}


def test_json_formatter_includes_context_and_extras():
    set_trace_context(session_id="abc123", node_id="parser")

    line = StructuredFormatter().format(make_record("\033[32mparsed\033[0m", provider="reddit", latency_ms=12))
    data = json.loads(line)

    assert data["message"] == "parsed"
    assert data["level"] == "info"
    assert data["session_id"] == "abc123"
    assert data["node_id"] == "parser"
    assert data["provider"] == "reddit"
    assert data["latency_ms"] == 12


def test_human_formatter_prefix():
    set_trace_context(session_id="0123456789abcdef", run_id="feedfacecafe", node_id="synth")

    line = strip_ansi_codes(HumanReadableFormatter().format(make_record("hello")))

    assert "session:01234567" in line
    assert "run:facecafe" in line
    assert "node:synth" in line
    assert line.endswith("hello")


def test_human_formatter_without_context():
    line = strip_ansi_codes(HumanReadableFormatter().format(make_record("plain")))
    assert line == "[INFO    ] plain"
