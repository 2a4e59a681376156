# tests/unit/logging/test_logger.py — v2
"""Tests for logging/logger.py — logger factory and formatters."""

from __future__ import annotations

import json
import logging

from progcompute.logging.context import clear_context, set_phase, set_run_context
from progcompute.logging.logger import JsonFormatter, TextFormatter, get_logger, setup_logging


def _record(msg: str, level: int = logging.INFO) -> logging.LogRecord:
    return logging.LogRecord(
        name="test", level=level, pathname="", lineno=0,
        msg=msg, args=(), exc_info=None,
    )


class TestJsonFormatter:
    def setup_method(self):
        clear_context()

    def teardown_method(self):
        clear_context()

    def test_format_basic(self):
        output = JsonFormatter().format(_record("Hello"))
        parsed = json.loads(output)
        assert parsed["level"] == "INFO"
        assert parsed["message"] == "Hello"
        assert "timestamp" in parsed
        assert "context" not in parsed

    def test_format_with_context(self):
        set_run_context("run1", "1.0.0_abc_def")
        parsed = json.loads(JsonFormatter().format(_record("test msg")))
        assert parsed["context"]["run_id"] == "run1"
        assert parsed["context"]["cache_key"] == "1.0.0_abc_def"

    def test_format_extra_data(self):
        record = _record("with data")
        record.data = {"batches": 3}
        parsed = json.loads(JsonFormatter().format(record))
        assert parsed["data"] == {"batches": 3}


class TestTextFormatter:
    def setup_method(self):
        clear_context()

    def teardown_method(self):
        clear_context()

    def test_format_basic(self):
        output = TextFormatter().format(_record("Hello text"))
        assert "Hello text" in output
        assert "INFO" in output

    def test_format_with_run_and_phase(self):
        set_run_context("run42")
        set_phase("compute")
        output = TextFormatter().format(_record("slice done"))
        assert "[run42]" in output
        assert "(compute)" in output


class TestGetLogger:
    def test_returns_namespaced_logger(self):
        logger = get_logger("test_module")
        assert logger.name == "progcompute.test_module"

    def test_keeps_package_names(self):
        assert get_logger("progcompute.cache.manager").name == "progcompute.cache.manager"


class TestSetupLogging:
    def test_setup_json(self):
        setup_logging(level="DEBUG", log_format="json")
        root = logging.getLogger("progcompute")
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonFormatter)

    def test_setup_text(self):
        setup_logging(level="INFO", log_format="text")
        root = logging.getLogger("progcompute")
        assert root.level == logging.INFO
        assert isinstance(root.handlers[0].formatter, TextFormatter)

    def test_setup_with_file(self, tmp_path):
        setup_logging(log_file=str(tmp_path / "logs" / "run.log"))
        root = logging.getLogger("progcompute")
        assert len(root.handlers) == 2
        for handler in root.handlers[1:]:
            handler.close()
        root.handlers.clear()
