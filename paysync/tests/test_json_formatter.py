"""Tests for the JSON log formatter and logging bootstrap."""

from __future__ import annotations

import json
import logging
import sys

import pytest

from paysync.json_formatter import JSONFormatter, configure_logging


@pytest.fixture
def formatter() -> JSONFormatter:
    return JSONFormatter()


def _record(msg: str = "event applied", *, level: int = logging.INFO, exc_info=None) -> logging.LogRecord:
    return logging.LogRecord(
        name="paysync.services.event_intake",
        level=level,
        pathname="event_intake.py",
        lineno=42,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


class TestJSONFormatter:
    """Verify structured JSON output from the formatter."""

    def test_basic_format(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "paysync.services.event_intake"
        assert data["message"] == "event applied"
        assert data["line"] == 42
        assert "timestamp" in data
        assert "exc_info" not in data

    def test_single_line_output(self, formatter: JSONFormatter) -> None:
        assert "\n" not in formatter.format(_record("multi\nline"))

    def test_context_fields_included(self, formatter: JSONFormatter) -> None:
        record = _record()
        record.event_id = "evt_1"  # type: ignore[attr-defined]
        record.tenant_id = "T1"  # type: ignore[attr-defined]
        data = json.loads(formatter.format(record))

        assert data["event_id"] == "evt_1"
        assert data["tenant_id"] == "T1"
        assert "job_id" not in data
        assert "charge_id" not in data

    def test_exception_included(self, formatter: JSONFormatter) -> None:
        try:
            raise RuntimeError("database unavailable")
        except RuntimeError:
            record = _record("failed", level=logging.ERROR, exc_info=sys.exc_info())
        data = json.loads(formatter.format(record))

        assert data["level"] == "ERROR"
        assert "RuntimeError: database unavailable" in data["exc_info"]


class TestConfigureLogging:
    @pytest.fixture(autouse=True)
    def _restore_root(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_structured_installs_json_formatter(self) -> None:
        configure_logging("debug", structured=True)
        root = logging.getLogger()

        (handler,) = root.handlers
        assert isinstance(handler.formatter, JSONFormatter)
        assert root.level == logging.DEBUG
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING

    def test_plain_format(self) -> None:
        configure_logging("WARNING")
        (handler,) = logging.getLogger().handlers
        assert not isinstance(handler.formatter, JSONFormatter)
