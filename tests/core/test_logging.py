"""Tests for sciflow.core.logging module."""

from __future__ import annotations

import json
import logging
import sys
from unittest.mock import MagicMock, patch

import pytest

from sciflow.core.logging import (
    CommandLogger,
    JSONFormatter,
    StandardFormatter,
    configure_logging,
    correlation_context,
    generate_correlation_id,
    get_correlation_id,
    set_correlation_id,
)


def _record(level: int = logging.INFO, msg: str = "Test message", **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="sciflow.test",
        level=level,
        pathname="engine.py",
        lineno=42,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


# ============================================================================
# Correlation ID Tests
# ============================================================================


class TestCorrelationId:
    """Tests for correlation ID functionality."""

    def test_get_correlation_id_default_none(self):
        """Should return None when no correlation ID is set."""
        set_correlation_id(None)
        assert get_correlation_id() is None

    def test_generate_correlation_id(self):
        """Should generate unique UUID-shaped IDs."""
        id1 = generate_correlation_id()
        id2 = generate_correlation_id()

        assert id1 != id2
        assert len(id1) == 36

    def test_correlation_context_generates_id(self):
        """Context manager should generate an ID if not provided."""
        set_correlation_id(None)

        with correlation_context() as cid:
            assert len(cid) == 36
            assert get_correlation_id() == cid

        assert get_correlation_id() is None

    def test_correlation_context_uses_provided_id(self):
        set_correlation_id(None)
        with correlation_context("my-custom-id") as cid:
            assert cid == "my-custom-id"
        assert get_correlation_id() is None

    def test_nested_contexts_restore(self):
        """Inner context should restore the outer ID on exit."""
        with correlation_context("outer"):
            with correlation_context("inner"):
                assert get_correlation_id() == "inner"
            assert get_correlation_id() == "outer"


# ============================================================================
# Formatter Tests
# ============================================================================


class TestJSONFormatter:
    """Tests for JSONFormatter."""

    def test_basic_fields(self):
        data = json.loads(JSONFormatter().format(_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "sciflow.test"
        assert data["message"] == "Test message"
        assert "timestamp" in data
        assert "source" not in data

    def test_includes_correlation_and_bounty(self):
        """Records inside a context carry its IDs."""
        with correlation_context("corr-1", bounty_id="bounty-9"):
            data = json.loads(JSONFormatter().format(_record()))

        assert data["correlation_id"] == "corr-1"
        assert data["bounty_id"] == "bounty-9"

    def test_warning_includes_source(self):
        data = json.loads(JSONFormatter().format(_record(logging.WARNING)))
        assert data["source"]["line"] == 42
        assert data["source"]["file"] == "engine.py"

    def test_extra_data(self):
        data = json.loads(JSONFormatter().format(_record(extra_data={"escrow_id": "e-1", "amount": "270"})))
        assert data["extra"] == {"escrow_id": "e-1", "amount": "270"}

    def test_exception(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = _record(logging.ERROR)
            record.exc_info = sys.exc_info()

        data = json.loads(JSONFormatter().format(record))
        assert "ValueError: boom" in data["exception"]


class TestStandardFormatter:
    """Tests for StandardFormatter."""

    def test_plain_output(self):
        formatter = StandardFormatter(use_colors=False)
        output = formatter.format(_record())
        assert "sciflow.test" in output
        assert "INFO" in output
        assert "Test message" in output

    def test_context_prefix(self):
        formatter = StandardFormatter(use_colors=False)
        with correlation_context("abcdef123456", bounty_id="bounty-123456789"):
            output = formatter.format(_record())
        assert "[abcdef12 bounty=bounty-1]" in output

    def test_does_not_mutate_record(self):
        """Other handlers must see the original message."""
        formatter = StandardFormatter(use_colors=False)
        record = _record()
        with correlation_context("abcdef123456"):
            formatter.format(record)
        assert record.msg == "Test message"


# ============================================================================
# configure_logging Tests
# ============================================================================


class TestConfigureLogging:
    @pytest.fixture(autouse=True)
    def restore_root(self, clean_env):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers = handlers
        root.setLevel(level)

    def test_json_format(self):
        configure_logging(level="DEBUG", json_format=True)
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JSONFormatter)

    def test_text_format_from_env(self, monkeypatch):
        monkeypatch.setenv("SCIFLOW_LOG_FORMAT", "text")
        configure_logging(level="INFO")
        assert isinstance(logging.getLogger().handlers[0].formatter, StandardFormatter)

    def test_log_file_is_json(self, tmp_path):
        log_file = tmp_path / "sciflow.log"
        configure_logging(level="INFO", json_format=False, log_file=str(log_file))

        handlers = logging.getLogger().handlers
        assert len(handlers) == 2
        assert isinstance(handlers[1].formatter, JSONFormatter)
        handlers[1].close()

    def test_unknown_level_falls_back_to_info(self):
        configure_logging(level="chatty", json_format=True)
        assert logging.getLogger().level == logging.INFO


# ============================================================================
# CommandLogger Tests
# ============================================================================


class TestCommandLogger:
    """Tests for command logging with redaction."""

    def test_redacts_sensitive_arguments(self):
        mock_logger = MagicMock()
        CommandLogger(mock_logger).log_command(
            "init_funding", "funder-1", {"payer": "0xabc", "amount": "1000", "nested": {"api_key": "k"}}
        )

        extra = mock_logger.log.call_args.kwargs["extra"]["extra_data"]
        assert extra["command"] == "init_funding"
        assert extra["principal_id"] == "funder-1"
        assert extra["arguments"] == {"payer": "[REDACTED]", "amount": "1000", "nested": {"api_key": "[REDACTED]"}}

    def test_truncates_long_strings(self):
        sanitized = CommandLogger(MagicMock())._sanitize({"methodology": "x" * 600})
        assert sanitized["methodology"] == "x" * 500 + "..."

    def test_outcome_levels(self):
        mock_logger = MagicMock()
        command_log = CommandLogger(mock_logger)

        command_log.log_outcome("submit_bounty", "accepted", 1.5)
        command_log.log_outcome("submit_bounty", "rejected (STATE_CONFLICT)")

        first, second = mock_logger.log.call_args_list
        assert first.args[0] == logging.INFO
        assert first.args[1] == "Command submit_bounty -> accepted (1.5ms)"
        assert second.args[0] == logging.WARNING

    def test_default_logger_name(self):
        with patch("sciflow.core.logging.logging.getLogger") as get_logger:
            CommandLogger()
        get_logger.assert_called_once_with("sciflow.commands")
