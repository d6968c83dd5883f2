"""Test structlog configuration for workers."""

import json
import logging

import pytest
import structlog

from tonaudit.core.logging import MAX_VALUE_LENGTH, configure_structlog, truncate_long_values

pytestmark = pytest.mark.unit


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    structlog.reset_defaults()
    root.handlers[:] = handlers
    root.setLevel(level)


def test_truncate_long_values():
    event_dict = {"event": "job_failed", "error": "x" * (MAX_VALUE_LENGTH + 10), "attempt": 3}

    result = truncate_long_values(None, "error", event_dict)

    assert result["error"].startswith("x" * MAX_VALUE_LENGTH)
    assert result["error"].endswith("[10 chars truncated]")
    assert result["attempt"] == 3


def test_json_lines_carry_job_context(capsys, restore_logging):
    configure_structlog(log_level="INFO", json_logs=True, service="ton-audit-worker")
    logger = structlog.get_logger("tonaudit.test")

    with structlog.contextvars.bound_contextvars(job_id="audit:123", queue="audit"):
        logger.info("job_started", attempt=1)

    line = capsys.readouterr().out.strip().splitlines()[-1]
    record = json.loads(line)
    assert record["event"] == "job_started"
    assert record["job_id"] == "audit:123"
    assert record["queue"] == "audit"
    assert record["attempt"] == 1
    assert record["level"] == "info"
    assert record["service"] == "ton-audit-worker"


def test_stdlib_records_use_the_same_format(capsys, restore_logging):
    configure_structlog(log_level="INFO", json_logs=True)

    logging.getLogger("some.library").warning("disk almost full")

    record = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert record["event"] == "disk almost full"
    assert record["logger"] == "some.library"
    assert "service" not in record
