# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Structured logging configuration for SciFlow.

Provides:
- JSON formatter for production (machine-parseable)
- Standard formatter for development (human-readable)
- Correlation IDs and the bounty being worked on, carried in context vars
- Sanitized command logging for the lifecycle engine
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)
_bounty_id: ContextVar[str | None] = ContextVar("bounty_id", default=None)


def get_correlation_id() -> str | None:
    """Get the current correlation ID, if any."""
    return _correlation_id.get()


def set_correlation_id(correlation_id: str | None) -> None:
    """Set the correlation ID for the current context."""
    _correlation_id.set(correlation_id)


def generate_correlation_id() -> str:
    """Generate a new unique correlation ID."""
    return str(uuid.uuid4())


@contextmanager
def correlation_context(
    correlation_id: str | None = None,
    bounty_id: str | None = None,
) -> Generator[str, None, None]:
    """Scope a correlation ID (and optionally a bounty ID) over a block.

    Args:
        correlation_id: Correlation ID to use. A new one is generated if None.
        bounty_id: Bounty the enclosed work belongs to.

    Yields:
        The correlation ID being used.

    Example:
        with correlation_context(bounty_id=bounty.id) as cid:
            logger.info("Releasing milestone payout")
    """
    cid = correlation_id or generate_correlation_id()
    cid_token = _correlation_id.set(cid)
    bounty_token = _bounty_id.set(bounty_id) if bounty_id is not None else None
    try:
        yield cid
    finally:
        if bounty_token is not None:
            _bounty_id.reset(bounty_token)
        _correlation_id.reset(cid_token)


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production environments."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = _correlation_id.get()
        if correlation_id:
            log_data["correlation_id"] = correlation_id
        bounty_id = _bounty_id.get()
        if bounty_id:
            log_data["bounty_id"] = bounty_id

        if record.levelno >= logging.WARNING:
            log_data["source"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_data"):
            log_data["extra"] = record.extra_data

        return json.dumps(log_data, default=str)


class StandardFormatter(logging.Formatter):
    """Human-readable formatter with optional colors for terminal output."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"
    CONTEXT_COLOR = "\033[90m"

    def __init__(self, use_colors: bool = True):
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        self.use_colors = use_colors and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        # Copy so other handlers see the original record
        record = logging.makeLogRecord(record.__dict__)

        context = []
        correlation_id = _correlation_id.get()
        if correlation_id:
            context.append(correlation_id[:8])
        bounty_id = _bounty_id.get()
        if bounty_id:
            context.append(f"bounty={bounty_id[:8]}")
        if context:
            prefix = f"[{' '.join(context)}] "
            if self.use_colors:
                prefix = f"{self.CONTEXT_COLOR}{prefix}{self.RESET}"
            record.msg = prefix + str(record.msg)

        if self.use_colors:
            color = self.COLORS.get(record.levelname, "")
            record.levelname = f"{color}{record.levelname}{self.RESET}"

        return super().format(record)


def configure_logging(
    level: str | int | None = None,
    json_format: bool | None = None,
    log_file: str | None = None,
) -> None:
    """Configure root logging for SciFlow services.

    Args:
        level: Log level; defaults to SCIFLOW_LOG_LEVEL
        json_format: Use JSON format (SCIFLOW_LOG_FORMAT, else auto-detect)
        log_file: Optional file to write logs to (always JSON)
    """
    from .config import get_config

    config = get_config()

    if level is None:
        level = config.log_level
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    if json_format is None:
        format_env = config.log_format.lower()
        if format_env == "json":
            json_format = True
        elif format_env == "text":
            json_format = False
        else:
            json_format = not sys.stderr.isatty()

    log_file = config.log_file if log_file is None else log_file

    formatter: logging.Formatter = JSONFormatter() if json_format else StandardFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


class CommandLogger:
    """Logs lifecycle commands with sensitive arguments redacted.

    Payer identities, payout destinations and credentials never reach the
    log stream in clear text.
    """

    SENSITIVE_PARAMS = {
        "payer",
        "recipient",
        "destination",
        "secret",
        "token",
        "api_key",
        "password",
        "signature",
    }

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or logging.getLogger("sciflow.commands")

    def log_command(
        self,
        command: str,
        principal_id: str,
        arguments: dict[str, Any],
        level: int = logging.INFO,
    ) -> None:
        self.logger.log(
            level,
            f"Command {command} by {principal_id}",
            extra={
                "extra_data": {
                    "command": command,
                    "principal_id": principal_id,
                    "arguments": self._sanitize(arguments),
                }
            },
        )

    def log_outcome(self, command: str, outcome: str, duration_ms: float | None = None) -> None:
        msg = f"Command {command} -> {outcome}"
        if duration_ms is not None:
            msg += f" ({duration_ms:.1f}ms)"
        level = logging.INFO if outcome == "accepted" else logging.WARNING
        self.logger.log(
            level,
            msg,
            extra={"extra_data": {"command": command, "outcome": outcome, "duration_ms": duration_ms}},
        )

    def _sanitize(self, data: Any) -> Any:
        if isinstance(data, dict):
            result = {}
            for key, value in data.items():
                if any(s in str(key).lower() for s in self.SENSITIVE_PARAMS):
                    result[key] = "[REDACTED]"
                else:
                    result[key] = self._sanitize(value)
            return result
        if isinstance(data, (list, tuple)):
            return [self._sanitize(item) for item in data]
        if isinstance(data, str) and len(data) > 500:
            return data[:500] + "..."
        return data


command_logger = CommandLogger()
