"""Structured JSON audit logging for the relay gateway.

Logs go to stdout as JSON lines (12-factor/cloud-native pattern).
Optional file output via AUDIT_LOG_FILE env var.

Every record emitted while a connection is being handled carries its
session id, so the admission decision, upstream handshake, relayed control
events and the terminal session summary can be correlated downstream.
Credential-looking fields are masked before a record is serialized.
"""

import json
import logging
import sys
import time
import uuid
from datetime import datetime, timezone
from contextvars import ContextVar

from src.config.settings import get_settings

# Connection-scoped context for correlating log entries.
# Forwarding tasks inherit it because they are spawned from the handler task.
session_id_var: ContextVar[str] = ContextVar("session_id", default="")

REDACTED = "***"
_SENSITIVE_KEYS = {"token", "api_key", "api-key", "authorization", "headers"}

# Library loggers that would otherwise log per-frame or per-handshake noise
_QUIET_LOGGERS = ("websockets.client", "websockets.server", "uvicorn.error")


class JSONFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "session_id": session_id_var.get(""),
        }
        # Merge any extra fields passed via `extra={}` kwarg
        if hasattr(record, "audit_data"):
            log_entry.update(redact(record.audit_data))
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def redact(data: dict) -> dict:
    """Copy of `data` with credential-bearing values masked."""
    return {
        key: REDACTED if key.lower() in _SENSITIVE_KEYS and value else value
        for key, value in data.items()
    }


def setup_logging() -> None:
    """Configure the audit logger with JSON output."""
    settings = get_settings()

    logger = logging.getLogger("gateway.audit")
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    logger.handlers.clear()

    formatter = JSONFormatter()

    # Always log to stdout
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    logger.addHandler(stdout_handler)

    # Optional file output
    if settings.audit_log_file:
        file_handler = logging.FileHandler(settings.audit_log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    # Prevent propagation to root logger (avoids duplicate output)
    logger.propagate = False

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_audit_logger() -> logging.Logger:
    return logging.getLogger("gateway.audit")


def generate_session_id() -> str:
    return uuid.uuid4().hex[:12]


class RequestTimer:
    """Context manager to measure elapsed time of a single step."""

    def __init__(self):
        self.start_time: float = 0
        self.elapsed_ms: float = 0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args):
        self.elapsed_ms = round((time.perf_counter() - self.start_time) * 1000, 2)
