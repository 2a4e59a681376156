# tests/integration/logging/test_int_logging_subsystem.py — v2
"""Integration tests for the logging subsystem.

Covers: logging/logger.py, logging/handlers.py, logging/context.py
and the context set by the scheduler during a run.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from progcompute.logging.context import clear_context
from progcompute.logging.logger import ROOT_LOGGER_NAME, get_logger, setup_logging
from progcompute.scheduler.models import SchedulerConfig
from progcompute.scheduler.scheduler import Scheduler


@pytest.fixture
def json_log_file(tmp_path: Path):
    log_file = tmp_path / "logs" / "progcompute.log"
    setup_logging(level="DEBUG", log_format="json", log_file=str(log_file))
    yield log_file
    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    clear_context()


def _read_lines(log_file: Path) -> list[dict]:
    for handler in logging.getLogger(ROOT_LOGGER_NAME).handlers:
        handler.flush()
    return [json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines()]


class TestFileLogging:

    def test_json_lines_written(self, json_log_file: Path):
        get_logger("integration").info("hello %s", "file")
        lines = _read_lines(json_log_file)
        assert lines[-1]["message"] == "hello file"
        assert lines[-1]["logger"] == "progcompute.integration"

    @pytest.mark.asyncio
    async def test_scheduler_run_context(self, json_log_file: Path):
        scheduler = Scheduler(SchedulerConfig(batch_size=10))
        await scheduler.run(list(range(30)), abs)
        lines = _read_lines(json_log_file)
        completed = [line for line in lines if line["message"].startswith("Run completed")]
        assert completed
        assert "run_id" in completed[-1]["context"]
        assert completed[-1]["context"]["phase"] == "compute"
