"""Tests for structlog setup."""

from __future__ import annotations

import io
import json
import logging

import structlog

from csp_guard.logging_config import _drop_color_message_key, _rename_logger_to_module, setup_logging


class TestProcessors:
    def test_rename_logger_to_module(self):
        event = _rename_logger_to_module(None, "info", {"event": "x", "logger": "csp_guard.snapshot"})
        assert event == {"event": "x", "module": "csp_guard.snapshot"}

    def test_drop_color_message(self):
        event = _drop_color_message_key(None, "info", {"event": "x", "color_message": "\x1b[1mx"})
        assert event == {"event": "x"}


class TestSetupLogging:
    def test_json_output(self):
        stream = io.StringIO()
        setup_logging(log_level="info", json_format=True, stream=stream)

        structlog.get_logger("csp_guard.test").info("csp_policy_built", environment="production")

        record = json.loads(stream.getvalue().strip().splitlines()[-1])
        assert record["event"] == "csp_policy_built"
        assert record["environment"] == "production"
        assert record["module"] == "csp_guard.test"
        assert record["level"] == "info"
        assert "timestamp" in record

    def test_stdlib_records_rendered(self):
        stream = io.StringIO()
        setup_logging(log_level="info", json_format=True, stream=stream)

        logging.getLogger("uvicorn.error").info(
            "Started server", extra={"color_message": "Started", "port": 4200},
        )

        record = json.loads(stream.getvalue().strip().splitlines()[-1])
        assert record["event"] == "Started server"
        assert record["port"] == 4200
        assert "color_message" not in record

    def test_level_filter(self):
        stream = io.StringIO()
        setup_logging(log_level="warning", json_format=True, stream=stream)

        structlog.get_logger("csp_guard.test").info("csp_hidden")

        assert "csp_hidden" not in stream.getvalue()
