"""Unit Tests for Logging Utilities
=================================

Test Coverage:
- Hierarchical logger naming under the ``metagrowth`` root
- Level changes through set_log_level
- Performance and operation logging helpers
"""

import logging

import pytest

from metagrowth.utils.logging import (
    configure_logging,
    get_logger,
    log_calls,
    log_operation,
    log_performance,
    set_log_level,
)


class TestLoggerNaming:
    def test_package_loggers_keep_their_name(self):
        assert get_logger("metagrowth.core.models").name == "metagrowth.core.models"

    def test_foreign_names_are_nested(self):
        assert get_logger("scripts.fit").name == "metagrowth.scripts.fit"
        assert get_logger("__main__").name == "metagrowth.main"

    def test_set_log_level(self):
        root = logging.getLogger("metagrowth")
        original = root.level
        try:
            set_log_level("DEBUG")
            assert root.level == logging.DEBUG
        finally:
            root.setLevel(original)


class TestDecorators:
    def test_log_performance_logs_slow_calls(self, caplog):
        logger = get_logger("metagrowth.tests.performance")

        @log_performance(logger=logger, threshold=0.0)
        def work(x):
            return 2 * x

        with caplog.at_level(logging.INFO, logger="metagrowth"):
            assert work(21) == 42
        assert any("completed in" in r.message for r in caplog.records)

    def test_log_calls_reraises(self, caplog):
        @log_calls(logger=get_logger("metagrowth.tests.calls"))
        def broken():
            raise RuntimeError("boom")

        with caplog.at_level(logging.DEBUG, logger="metagrowth"):
            with pytest.raises(RuntimeError):
                broken()
        assert any("Exception in" in r.message for r in caplog.records)

    def test_log_operation(self, caplog):
        logger = get_logger("metagrowth.tests.operation")
        with caplog.at_level(logging.INFO, logger="metagrowth"):
            with log_operation("stratify", logger=logger):
                pass
        messages = [r.message for r in caplog.records]
        assert "Starting operation: stratify" in messages
        assert any(m.startswith("Completed operation: stratify") for m in messages)


class TestConfigureLogging:
    def test_log_file_receives_records(self, temp_dir):
        root = logging.getLogger("metagrowth")
        original = root.level
        log_path = temp_dir / "logs" / "fit.log"
        try:
            configure_logging("DEBUG", log_path)
            get_logger("metagrowth.tests.file").debug("written to file")
        finally:
            configure_logging(logging.getLevelName(original) if original else "INFO", None)
        assert "written to file" in log_path.read_text()

    def test_closing_the_file_detaches_its_handler(self, temp_dir):
        root = logging.getLogger("metagrowth")
        configure_logging("INFO", temp_dir / "fit.log")
        n_handlers = len(root.handlers)
        configure_logging("INFO", None)
        assert len(root.handlers) == n_handlers - 1
