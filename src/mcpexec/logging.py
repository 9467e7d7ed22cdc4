"""
mcpexec Structured Logging

Provides a configured logger for the execution engine using stdlib logging
with structured context.

Usage:
    from mcpexec.logging import get_logger

    logger = get_logger("mcpexec.sandbox")
    logger.info("Sandbox created", extra={"sandbox_id": "sb-1a2b3c4d", "sandbox_type": "process"})

For production, configure with JSON output:
    from mcpexec.logging import configure_logging
    configure_logging(json_output=True, level="INFO")

Operational logs go to stderr. The compliance trail is written separately
by mcpexec.audit.logger.AuditLogger.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

STRUCTURED_KEYS = (
    "request_id",
    "sandbox_id",
    "sandbox_type",
    "container_id",
    "phase",
    "risk_score",
    "tool_name",
    "duration_ms",
)


class McpExecFormatter(logging.Formatter):
    """Structured log formatter.

    Outputs either human-readable or JSON format depending on configuration.
    """

    def __init__(self, json_output: bool = False):
        super().__init__()
        self._json_output = json_output

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in STRUCTURED_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if self._json_output:
            return json.dumps(log_data, default=str)

        extra_keys = {
            k: v for k, v in log_data.items()
            if k not in ("timestamp", "level", "logger", "message", "exception")
        }
        extra_str = ""
        if extra_keys:
            extra_str = " | " + " ".join(f"{k}={v}" for k, v in extra_keys.items())

        line = f"[{log_data['timestamp']}] {record.levelname:8s} {record.name}: {record.getMessage()}{extra_str}"
        if "exception" in log_data:
            line = f"{line}\n{log_data['exception']}"
        return line


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
) -> None:
    """Configure mcpexec logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_output: If True, output JSON format (one object per line).
    """
    root_logger = logging.getLogger("mcpexec")
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(McpExecFormatter(json_output=json_output))
    root_logger.addHandler(handler)

    root_logger.propagate = False


def get_logger(name: str = "mcpexec") -> logging.Logger:
    """Get an mcpexec logger instance.

    Args:
        name: Logger name (usually module path like "mcpexec.sandbox.process").
    """
    return logging.getLogger(name)


# Auto-configure with sensible defaults on import
configure_logging()
