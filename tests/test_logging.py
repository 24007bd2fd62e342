"""
Tests for logging configuration.
"""
import logging
from typing import Iterator

import pytest
from pythonjsonlogger import jsonlogger

from billing_sync.config import Settings
from billing_sync.monitoring.logging import QUIET_LOGGERS, setup_logging


@pytest.fixture
def root_logger() -> Iterator[logging.Logger]:
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.mark.unit
class TestSetupLogging:
    def test_installs_single_json_handler(
        self, test_settings: Settings, root_logger: logging.Logger
    ) -> None:
        setup_logging(test_settings)
        setup_logging(test_settings)

        assert len(root_logger.handlers) == 1
        assert isinstance(root_logger.handlers[0].formatter, jsonlogger.JsonFormatter)
        assert root_logger.level == logging.DEBUG

    def test_quiets_library_loggers(
        self, test_settings: Settings, root_logger: logging.Logger
    ) -> None:
        setup_logging(test_settings.model_copy(update={"log_level": "INFO"}))

        assert root_logger.level == logging.INFO
        for name, level in QUIET_LOGGERS.items():
            assert logging.getLogger(name).level == level
