"""Tests for logging utilities."""

import logging
import time

import pytest

from hostplay.logging import (
    TRACE,
    configure_logging,
    get_level_from_name,
    get_level_from_verbosity,
    host_logger,
    log_performance,
)


class TestLevels:
    """Tests for verbosity and level name mapping."""

    @pytest.mark.parametrize(
        "verbosity,level",
        [(0, logging.WARNING), (1, logging.INFO), (2, logging.DEBUG), (3, TRACE), (7, TRACE)],
    )
    def test_verbosity(self, verbosity, level):
        assert get_level_from_verbosity(verbosity) == level

    def test_level_names(self):
        assert get_level_from_name("trace") == TRACE
        assert get_level_from_name("DEBUG") == logging.DEBUG
        assert get_level_from_name("error") == logging.ERROR

    def test_invalid_level_name(self):
        with pytest.raises(ValueError, match="Invalid log level"):
            get_level_from_name("chatty")

    def test_trace_level_registered(self):
        assert logging.getLevelName(TRACE) == "TRACE"


class TestConfigureLogging:
    """Tests for configure_logging function."""

    def test_configure_custom_level(self):
        """Test custom log level."""
        configure_logging(level=logging.DEBUG)
        assert logging.root.level == logging.DEBUG

    def test_configure_with_log_file(self, tmp_path):
        """Test file logging at a lower level than the console."""
        log_file = tmp_path / "logs" / "hostplay.log"
        configure_logging(level=logging.WARNING, log_file=log_file, file_level=logging.DEBUG)

        logging.getLogger("hostplay.test").debug("written to file only")
        for handler in logging.root.handlers:
            handler.flush()

        assert logging.root.level == logging.DEBUG
        assert "written to file only" in log_file.read_text()


class TestHostLogger:
    """Tests for the per-host logger adapter."""

    def test_prefixes_host(self, caplog):
        logger = logging.getLogger("test.host")
        log = host_logger(logger, "web01")

        with caplog.at_level(logging.INFO, logger="test.host"):
            log.info("Connected")

        assert "[web01] Connected" in caplog.text

    def test_trace(self, caplog):
        logger = logging.getLogger("test.host.trace")
        log = host_logger(logger, "db01")

        with caplog.at_level(TRACE, logger="test.host.trace"):
            log.trace("ssh: uname -r")

        assert caplog.records[-1].levelno == TRACE
        assert "[db01] ssh: uname -r" in caplog.text


class TestLogPerformance:
    """Tests for log_performance context manager."""

    def test_log_performance_with_context(self, caplog):
        """Test performance logging with context."""
        logger = logging.getLogger("test.perf.context")
        logger.setLevel(logging.INFO)

        with log_performance(logger, "Playbook run", hosts=3):
            time.sleep(0.01)

        assert "Playbook run completed" in caplog.text
        assert "hosts=3" in caplog.text

    def test_log_performance_threshold(self, caplog):
        """Test performance logging with threshold."""
        logger = logging.getLogger("test.perf.threshold")
        logger.setLevel(logging.INFO)

        with log_performance(logger, "Fast operation", threshold=1.0):
            time.sleep(0.01)
        assert "Fast operation" not in caplog.text

        with log_performance(logger, "Slow operation", threshold=0.001):
            time.sleep(0.01)
        assert "Slow operation completed" in caplog.text

    def test_log_performance_exception(self, caplog):
        """Test performance logging with exception."""
        logger = logging.getLogger("test.perf.exception")
        logger.setLevel(logging.INFO)

        with pytest.raises(ValueError):
            with log_performance(logger, "Failing operation"):
                raise ValueError("test error")

        assert "Failing operation completed" in caplog.text
