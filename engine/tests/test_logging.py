"""Tests for structlog logging configuration."""

from __future__ import annotations

import json
import logging
from unittest.mock import patch

import structlog

from tecdsa_engine.logging import configure_logging


class TestConfigureLogging:
    def test_console_format_default(self) -> None:
        with patch.dict("os.environ", {"LOG_FORMAT": "console"}):
            configure_logging()
        assert structlog.get_logger() is not None

    def test_log_level_debug(self) -> None:
        with patch.dict("os.environ", {"LOG_LEVEL": "DEBUG"}):
            configure_logging()
        assert logging.getLogger().level == logging.DEBUG

    def test_unknown_level_falls_back_to_info(self) -> None:
        with patch.dict("os.environ", {"LOG_LEVEL": "LOUD"}):
            configure_logging()
        assert logging.getLogger().level == logging.INFO

    def test_noisy_loggers_quieted(self) -> None:
        configure_logging()
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_json_output_carries_context(self, capsys) -> None:
        with patch.dict("os.environ", {"LOG_FORMAT": "json", "LOG_LEVEL": "INFO"}):
            configure_logging()
        structlog.contextvars.bind_contextvars(request_id="req-1")
        try:
            structlog.get_logger().info("session_opened", phase="keygen")
        finally:
            structlog.contextvars.unbind_contextvars("request_id")
        line = capsys.readouterr().out.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "session_opened"
        assert record["request_id"] == "req-1"
        assert record["level"] == "info"
        with patch.dict("os.environ", {"LOG_FORMAT": "console"}):
            configure_logging()
