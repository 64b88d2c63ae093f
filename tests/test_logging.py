"""Tests for run-aware logging and storage retries."""

import json
import logging
import threading

import pytest

from workflow_engine.core import error_recovery
from workflow_engine.core.error_recovery import RetryConfig, with_retry
from workflow_engine.core.exceptions import RunNotFoundError, StorageError
from workflow_engine.core.logging import (
    RunContextFilter, StructuredFormatter, bind_run_context, clear_run_context,
    current_run_context, log_node_event
)


class CaptureHandler(logging.Handler):
    def __init__(self, context_filter):
        super().__init__()
        self.records = []
        self.addFilter(context_filter)

    def emit(self, record):
        self.records.append(record)


@pytest.fixture
def capture():
    context_filter = RunContextFilter()
    handler = CaptureHandler(context_filter)
    logger = logging.getLogger("workflow_engine.tests.capture")
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)
    yield logger, handler, context_filter
    logger.removeHandler(handler)


class TestRunContextFilter:
    """Test cases for RunContextFilter."""

    def test_records_outside_a_run(self, capture):
        logger, handler, _ = capture
        logger.info("idle")

        record = handler.records[0]
        assert (record.run_id, record.node_id, record.node_type) == ("-", "-", "-")

    def test_bound_context_is_stamped(self, capture):
        logger, handler, context_filter = capture
        context_filter.bind("run-1", "B", "query")
        logger.info("executing")
        context_filter.clear()
        logger.info("done")

        first, second = handler.records
        assert (first.run_id, first.node_id, first.node_type) == ("run-1", "B", "query")
        assert second.run_id == "-"

    def test_context_is_per_thread(self, capture):
        logger, handler, context_filter = capture
        context_filter.bind("run-main")

        def other_run():
            context_filter.bind("run-worker", "A", "input")
            logger.info("worker")

        worker = threading.Thread(target=other_run)
        worker.start()
        worker.join()
        logger.info("main")

        by_message = {record.getMessage(): record for record in handler.records}
        assert by_message["worker"].run_id == "run-worker"
        assert by_message["main"].run_id == "run-main"
        assert by_message["main"].node_id == "-"

    def test_module_level_binding(self):
        bind_run_context("run-7", "C", "if-condition")
        try:
            assert current_run_context() == {"run_id": "run-7", "node_id": "C", "node_type": "if-condition"}
        finally:
            clear_run_context()
        assert current_run_context() == {"run_id": None, "node_id": None, "node_type": None}


class TestStructuredFormatter:
    """Test cases for StructuredFormatter."""

    def test_emits_run_ids_and_node_fields(self, capture):
        logger, handler, context_filter = capture
        context_filter.bind("run-1", "C", "if-condition")
        log_node_event(logger, logging.WARNING, "Node C completed", chosen_branch="false", failed=True)
        context_filter.clear()

        entry = json.loads(StructuredFormatter().format(handler.records[0]))

        assert entry["message"] == "Node C completed"
        assert entry["level"] == "WARNING"
        assert entry["run_id"] == "run-1"
        assert entry["node_id"] == "C"
        assert entry["node_type"] == "if-condition"
        assert entry["chosen_branch"] == "false"
        assert entry["failed"] is True

    def test_omits_empty_context(self, capture):
        logger, handler, _ = capture
        logger.info("startup")

        entry = json.loads(StructuredFormatter().format(handler.records[0]))
        assert "run_id" not in entry
        assert "node_id" not in entry


class TestWithRetry:
    """Test cases for the storage retry decorator."""

    @pytest.fixture(autouse=True)
    def no_sleep(self, monkeypatch):
        monkeypatch.setattr(error_recovery.time, "sleep", lambda seconds: None)

    def test_recoverable_storage_error_is_retried(self):
        calls = []

        @with_retry(RetryConfig(max_attempts=3, jitter=False))
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise StorageError("database is locked", operation="update_node")
            return "ok"

        assert flaky() == "ok"
        assert len(calls) == 3

    def test_gives_up_after_max_attempts(self):
        calls = []

        @with_retry(RetryConfig(max_attempts=2))
        def broken():
            calls.append(1)
            raise StorageError("connection lost")

        with pytest.raises(StorageError):
            broken()
        assert len(calls) == 2

    def test_not_found_is_not_retried(self):
        calls = []

        @with_retry(RetryConfig(max_attempts=3))
        def missing():
            calls.append(1)
            raise RunNotFoundError("run-x")

        with pytest.raises(RunNotFoundError) as exc_info:
            missing()
        assert len(calls) == 1
        assert exc_info.value.context == {"run_id": "run-x"}
        assert exc_info.value.recoverable is False
