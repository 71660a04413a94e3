"""Tests for structured (JSON) logging output.

If the log pipeline expects JSON and plain text ships instead, parsing
breaks silently.  These tests pin the shape of a JSON line.
"""

from __future__ import annotations

import json
import logging
import sys

from app.core.logging import _ContainerFormatter, _JsonFormatter


def _record(msg: str = "test message", level: int = logging.INFO, **kw):
    return logging.LogRecord(
        name=kw.pop("name", "test"),
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=kw.pop("args", ()),
        exc_info=kw.pop("exc_info", None),
    )


def test_json_formatter_produces_valid_json() -> None:
    output = _JsonFormatter().format(
        _record("Hello %s", name="test.logger", args=("world",))
    )
    parsed = json.loads(output)
    assert parsed["level"] == "INFO"
    assert parsed["logger"] == "test.logger"
    assert parsed["message"] == "Hello world"
    assert "timestamp" in parsed


def test_json_formatter_includes_context_fields() -> None:
    record = _record()
    record.request_id = "abc-123"  # type: ignore[attr-defined]
    record.learner_id = "ada@example.com"  # type: ignore[attr-defined]
    record.method = "POST"  # type: ignore[attr-defined]
    record.path = "/v1/progress/modules/complete"  # type: ignore[attr-defined]
    record.duration_ms = 12.5  # type: ignore[attr-defined]

    parsed = json.loads(_JsonFormatter().format(record))
    assert parsed["request_id"] == "abc-123"
    assert parsed["learner_id"] == "ada@example.com"
    assert parsed["method"] == "POST"
    assert parsed["path"] == "/v1/progress/modules/complete"
    assert parsed["duration_ms"] == 12.5


def test_json_formatter_skips_placeholder_context() -> None:
    record = _record()
    record.request_id = "-"  # type: ignore[attr-defined]
    record.learner_id = "-"  # type: ignore[attr-defined]
    parsed = json.loads(_JsonFormatter().format(record))
    assert "request_id" not in parsed
    assert "learner_id" not in parsed


def test_json_formatter_includes_exception_info() -> None:
    try:
        raise ValueError("test error")
    except ValueError:
        output = _JsonFormatter().format(
            _record("Something failed", logging.ERROR, exc_info=sys.exc_info())
        )

    parsed = json.loads(output)
    assert "ValueError: test error" in parsed["exception"]


def test_container_formatter_is_plain_text() -> None:
    output = _ContainerFormatter().format(_record("server started", name="app.main"))
    assert "INFO" in output
    assert "app.main" in output
    assert "server started" in output
    try:
        json.loads(output)
        raise AssertionError("Container format should not be valid JSON")
    except json.JSONDecodeError:
        pass
