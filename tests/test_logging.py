"""
Tests for structlog configuration.
"""

import logging

import structlog

from pulse.core.logging_config import NOISY_LOGGERS, configure_logging


class TestConfigureLogging:
    def teardown_method(self):
        configure_logging()

    def test_level_filters_module_loggers(self, capsys):
        configure_logging(logging.WARNING)
        logger = structlog.get_logger("pulse.api.collect")

        logger.info("Batch accepted", events=1)
        logger.warning("Event failed", session_id="sess_1")

        out = capsys.readouterr().out
        assert "Batch accepted" not in out
        assert "Event failed" in out
        assert "sess_1" in out

    def test_bound_context_is_merged(self, capsys):
        configure_logging()
        structlog.contextvars.bind_contextvars(request_id="req_0123456789abcdef")
        try:
            structlog.get_logger("pulse.main").info("Starting collector")
        finally:
            structlog.contextvars.clear_contextvars()

        assert "req_0123456789abcdef" in capsys.readouterr().out

    def test_noisy_libraries_quieted(self):
        configure_logging(logging.DEBUG)
        for name in NOISY_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING
