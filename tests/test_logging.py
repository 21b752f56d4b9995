"""Tests for loguru configuration and logging helpers."""

from unittest.mock import MagicMock, patch

import pytest
from loguru import logger

from rpi_factory_reset.logging import (
    EventLogger,
    LoggerFactory,
    ThrottledLogger,
    _combined_filter,
    operation_context,
    setup_logging,
)


@pytest.fixture
def captured():
    """Collect formatted records from loguru."""
    records = []
    handler_id = logger.add(lambda message: records.append(message.record), level="TRACE")
    yield records
    logger.remove(handler_id)


class _Level:
    def __init__(self, name):
        self.no = logger.level(name).no


def _record(message, level="INFO", tags=()):
    return {"message": message, "level": _Level(level), "extra": {"tags": list(tags)}}


class TestFilters:
    def test_command_output_hidden_above_debug(self):
        assert not _combined_filter(_record("stdout: hello", "INFO"))
        assert _combined_filter(_record("stdout: hello", "DEBUG"))

    def test_progress_chunks_only_in_trace(self):
        assert not _combined_filter(_record("chunk", "DEBUG", tags=["progress"]))
        assert _combined_filter(_record("chunk", "TRACE", tags=["progress"]))
        assert _combined_filter(_record("summary", "INFO", tags=["progress"]))


class TestSetupLogging:
    def test_creates_log_files(self, tmp_path):
        setup_logging(log_dir=tmp_path)
        logger.info("factory reset test")
        logger.complete()

        assert (tmp_path / "operations.log").exists()
        assert (tmp_path / "structured.jsonl").exists()
        assert not (tmp_path / "debug.log").exists()
        logger.remove()

    def test_debug_and_trace_sinks(self, tmp_path):
        setup_logging(debug=True, trace=True, log_dir=tmp_path)
        logger.debug("debug line")
        logger.trace("trace line")

        assert "debug line" in (tmp_path / "debug.log").read_text()
        assert "trace line" in (tmp_path / "trace.log").read_text()
        logger.remove()

    def test_unwritable_log_dir(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")

        setup_logging(log_dir=blocker / "logs")

        assert not (blocker / "logs").exists()
        logger.remove()


class TestOperationContext:
    def test_success(self, captured):
        with operation_context("restore", job_id="restore-1234", mode="inband") as log:
            log.info("working")

        messages = [r["message"] for r in captured]
        assert messages[0] == "Restore started"
        assert "Restore completed" in messages
        assert all(r["extra"]["job_id"] == "restore-1234" for r in captured)

    def test_failure_reraises(self, captured):
        with pytest.raises(ValueError):
            with operation_context("restore"):
                raise ValueError("boom")

        failed = [r for r in captured if r["message"] == "Restore failed"]
        assert failed[0]["extra"]["error_type"] == "ValueError"

    def test_generates_job_id(self, captured):
        with operation_context("dispatch"):
            pass
        assert captured[0]["extra"]["job_id"].startswith("dispatch-")


class TestLoggerFactory:
    def test_sources(self, captured):
        LoggerFactory.for_device().info("a")
        LoggerFactory.for_scheduler().info("b")
        LoggerFactory.for_dispatcher("recovery").info("c")
        LoggerFactory.for_restore("job-1").info("d")

        sources = [r["extra"]["source"] for r in captured]
        assert sources == ["device", "scheduler", "dispatcher", "restore"]
        assert captured[2]["extra"]["dispatch_mode"] == "recovery"
        assert captured[3]["extra"]["job_id"] == "job-1"


class TestThrottledLogger:
    def test_throttles_per_key(self):
        log = MagicMock()
        throttled = ThrottledLogger(log, interval_seconds=10)

        with patch("rpi_factory_reset.logging.time.time", side_effect=[100.0, 105.0, 105.0, 111.0]):
            throttled.info("progress", "one")
            throttled.info("progress", "two")
            throttled.info("other", "three")
            throttled.info("progress", "four")

        assert [c[0][0] for c in log.info.call_args_list] == ["one", "three", "four"]


class TestEventLogger:
    def test_restore_finished(self):
        log = MagicMock()
        EventLogger.log_restore_finished(log, True, "/dev/sda2", "/dev/sda3")
        log.success.assert_called_once()
        assert log.success.call_args[1]["target_device"] == "/dev/sda3"

    def test_restore_failed(self):
        log = MagicMock()
        EventLogger.log_restore_finished(log, False, "/dev/sda2", "/dev/sda3")
        log.error.assert_called_once()

    def test_reset_scheduled(self):
        log = MagicMock()
        EventLogger.log_reset_scheduled(log, "inband", "/dev/sda2")
        assert log.info.call_args[1]["dispatch_mode"] == "inband"
