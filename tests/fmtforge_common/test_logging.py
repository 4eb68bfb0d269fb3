"""Tests for structured logging helpers."""

from __future__ import annotations

import json
import logging

import pytest

from fmtforge_common.logging import (
    JsonFormatter,
    Stopwatch,
    get_correlation_id,
    get_logger,
    set_correlation_id,
    with_fields,
)

LOGGER_NAME = "fmtforge.tests.logging"


class TestGetLogger:
    """Tests for ``get_logger`` and the adapter."""

    def test_null_handler_attached(self) -> None:
        """Library loggers never warn about missing handlers."""
        adapter = get_logger("fmtforge.tests.null_handler")
        assert any(isinstance(handler, logging.NullHandler) for handler in adapter.logger.handlers)

    def test_default_fields(self, caplog: pytest.LogCaptureFixture) -> None:
        """Records get an operation and a status inferred from the level."""
        adapter = get_logger(LOGGER_NAME)
        with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
            adapter.info("step_state_resolved")
            adapter.warning("step_failed_lenient", extra={"operation": "compute_with_lint"})
        info, warning = caplog.records
        assert info.operation == "unknown"  # type: ignore[attr-defined]
        assert info.status == "success"  # type: ignore[attr-defined]
        assert warning.operation == "compute_with_lint"  # type: ignore[attr-defined]
        assert warning.status == "warning"  # type: ignore[attr-defined]

    def test_log_failure(self, caplog: pytest.LogCaptureFixture) -> None:
        """Failures carry the error type and detail."""
        adapter = get_logger(LOGGER_NAME)
        with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
            adapter.log_failure("worker_failed", exception=ValueError("bad"), operation="start_worker")
            adapter.log_success("worker_started", operation="start_worker", duration_ms=1.5)
        failure, success = caplog.records
        assert failure.levelno == logging.ERROR
        assert failure.error_type == "ValueError"  # type: ignore[attr-defined]
        assert failure.status == "error"  # type: ignore[attr-defined]
        assert success.duration_ms == 1.5  # type: ignore[attr-defined]
        assert success.status == "success"  # type: ignore[attr-defined]


class TestWithFields:
    """Tests for ``with_fields`` and correlation ids."""

    def test_fields_bound(self, caplog: pytest.LogCaptureFixture) -> None:
        """Bound fields reach every record in the block."""
        adapter = get_logger(LOGGER_NAME)
        with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
            with with_fields(adapter, operation="format", file="a.py") as log:
                log.info("file_formatted")
        (record,) = caplog.records
        assert record.operation == "format"  # type: ignore[attr-defined]
        assert record.file == "a.py"  # type: ignore[attr-defined]

    def test_correlation_id_scoped(self) -> None:
        """A correlation id is bound only inside the block."""
        set_correlation_id(None)
        adapter = get_logger(LOGGER_NAME)
        with with_fields(adapter, correlation_id="run-1"):
            assert get_correlation_id() == "run-1"
        assert get_correlation_id() is None


class TestJsonFormatter:
    """Tests for ``JsonFormatter``."""

    def test_renders_structured_fields(self) -> None:
        """Structured and extra fields appear in the JSON document."""
        record = logging.LogRecord(LOGGER_NAME, logging.INFO, __file__, 1, "worker_started", None, None)
        record.operation = "start_worker"
        record.port = 4711
        record.duration_ms = 12.5
        payload = json.loads(JsonFormatter().format(record))
        assert payload["message"] == "worker_started"
        assert payload["level"] == "INFO"
        assert payload["operation"] == "start_worker"
        assert payload["port"] == 4711
        assert payload["duration_ms"] == 12.5
        assert payload["ts"].endswith("Z")


class TestStopwatch:
    """Tests for ``Stopwatch``."""

    def test_elapsed_non_negative(self) -> None:
        """Elapsed time is measured in milliseconds from entry."""
        with Stopwatch() as watch:
            pass
        assert watch.elapsed_ms >= 0.0
