"""Tests for log formatting and enrollment-key redaction."""

from __future__ import annotations

import json
import logging

import pytest

from meshverify.core.logging import (
    SensitiveDataFilter,
    StructuredFormatter,
    get_logger,
    run_id_var,
)


def _record(msg, *args) -> logging.LogRecord:
    return logging.LogRecord("meshverify.test", logging.INFO, __file__, 1, msg, args, None)


class TestSensitiveDataFilter:
    @pytest.mark.parametrize(
        "message",
        [
            "Running ['tailscale', 'up', '--authkey', 'key-3f2a9c'] in node",
            "tailscale up --authkey key-3f2a9c --hostname node",
            "authkey=key-3f2a9c",
            '{"authkey": "key-3f2a9c"}',
        ],
    )
    def test_enrollment_key_redacted(self, message):
        record = _record(message)

        assert SensitiveDataFilter().filter(record)

        assert "key-3f2a9c" not in record.getMessage()
        assert "[REDACTED]" in record.getMessage()

    def test_format_args_applied_before_redaction(self):
        record = _record("token=%s for %s", "abc123", "node")

        SensitiveDataFilter().filter(record)

        assert record.getMessage() == "token=[REDACTED] for node"

    def test_plain_messages_untouched(self):
        record = _record("Pinging from %s to %s", "a", "b")

        SensitiveDataFilter().filter(record)

        assert record.getMessage() == "Pinging from a to b"
        assert record.args == ("a", "b")


class TestStructuredFormatter:
    def test_includes_run_id(self):
        token = run_id_var.set("run-123")
        try:
            payload = json.loads(StructuredFormatter().format(_record("hello")))
        finally:
            run_id_var.reset(token)

        assert payload["message"] == "hello"
        assert payload["run_id"] == "run-123"
        assert payload["level"] == "INFO"


def test_logger_namespace():
    assert get_logger("bootstrap").name == "meshverify.bootstrap"
