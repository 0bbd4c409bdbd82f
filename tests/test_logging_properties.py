"""Property-based tests for logging functionality.

Every log entry rendered in JSON mode must carry a timestamp, a level and the
event name, plus the run identifiers bound for the current sync run.
"""

import json
import logging
from contextlib import contextmanager
from datetime import datetime
from io import StringIO

import structlog
from hypothesis import given, settings
from hypothesis import strategies as st

from profilesync.utils.logging_config import bind_run_context, clear_run_context, configure_logging

LOGGER_NAME = "profilesync.test_logging"


@contextmanager
def captured_json_logs(**kwargs):
    """Configure logging and collect rendered lines from a dedicated stdlib logger."""
    buffer = StringIO()
    handler = logging.StreamHandler(buffer)
    handler.setFormatter(logging.Formatter("%(message)s"))
    stdlib_logger = logging.getLogger(LOGGER_NAME)
    stdlib_logger.addHandler(handler)
    stdlib_logger.setLevel(logging.DEBUG)
    stdlib_logger.propagate = False
    root_handlers = list(logging.root.handlers)
    try:
        configure_logging(**kwargs)
        yield buffer
    finally:
        clear_run_context()
        stdlib_logger.removeHandler(handler)
        for extra in [h for h in logging.root.handlers if h not in root_handlers]:
            logging.root.removeHandler(extra)
            extra.close()
        structlog.reset_defaults()


def _entries(buffer: StringIO) -> list[dict]:
    return [json.loads(line) for line in buffer.getvalue().splitlines() if line.strip()]


@given(
    level=st.sampled_from(["debug", "info", "warning", "error", "critical"]),
    message=st.text(min_size=1, max_size=200),
)
@settings(max_examples=50, deadline=None)
def test_json_log_entry_has_required_fields(level: str, message: str) -> None:
    """
    Property: JSON log format

    *For any* logged event, the entry contains an ISO timestamp, the level
    and the event name, and is valid JSON.
    """
    with captured_json_logs(log_level="DEBUG", json_logs=True) as buffer:
        log = structlog.stdlib.get_logger(LOGGER_NAME)
        getattr(log, level)("sync_event", detail=message)

    entries = _entries(buffer)
    assert len(entries) == 1
    entry = entries[0]
    assert entry["event"] == "sync_event"
    assert entry["level"] == level
    assert entry["detail"] == message
    datetime.fromisoformat(entry["timestamp"].replace("Z", "+00:00"))


@given(
    source_id=st.text(alphabet="abcdefghijklmnopqrstuvwxyz_", min_size=1, max_size=30),
    run_id=st.uuids().map(str),
)
@settings(max_examples=50, deadline=None)
def test_run_context_attached_then_cleared(source_id: str, run_id: str) -> None:
    """
    Property: run context propagation

    *For any* run, lines logged after bind_run_context carry source_id and
    run_id, and lines logged after clear_run_context carry neither.
    """
    with captured_json_logs(json_logs=True) as buffer:
        log = structlog.stdlib.get_logger(LOGGER_NAME)
        bind_run_context(source_id, run_id)
        log.info("inside_run")
        clear_run_context()
        log.info("outside_run")

    inside, outside = _entries(buffer)
    assert inside["source_id"] == source_id
    assert inside["run_id"] == run_id
    assert "source_id" not in outside
    assert "run_id" not in outside


def test_callsite_parameters_are_recorded() -> None:
    with captured_json_logs(json_logs=True) as buffer:
        structlog.stdlib.get_logger(LOGGER_NAME).warning("watermark_regression_rejected")

    entry = _entries(buffer)[0]
    assert entry["func_name"] == "test_callsite_parameters_are_recorded"
    assert entry["filename"] == "test_logging_properties.py"
    assert entry["logger"] == LOGGER_NAME


def test_log_file_receives_entries(tmp_path) -> None:
    log_file = tmp_path / "sync.log"

    with captured_json_logs(json_logs=True, log_file=str(log_file)):
        logging.getLogger(LOGGER_NAME).propagate = True
        structlog.stdlib.get_logger(LOGGER_NAME).error("sync_run_aborted", stage="events")

    logging.getLogger(LOGGER_NAME).propagate = False
    lines = [json.loads(line) for line in log_file.read_text().splitlines()]
    assert lines[-1]["event"] == "sync_run_aborted"
    assert lines[-1]["stage"] == "events"


def test_console_renderer_when_json_disabled() -> None:
    with captured_json_logs(json_logs=False) as buffer:
        structlog.stdlib.get_logger(LOGGER_NAME).info("fetch_started", kind="events")

    output = buffer.getvalue()
    assert "fetch_started" in output
    assert "kind" in output
    assert not output.lstrip().startswith("{")
