"""
Structured logging configuration.

- Development: human-readable colored format, approval context appended
- Production: JSON format (log aggregator compatible)
- Log level: controlled via LOG_LEVEL env variable

Service code logs workflow context through ``extra=`` (``workflow_id``,
``stage_number``, ``approver_id``, ``escalation_level``, ``event_type``).
Records emitted while a request is being served also get its ``request_id``.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

# Attributes passed through ``extra=`` that the JSON formatter promotes to
# top-level keys.
REQUEST_KEYS = ("method", "path", "status", "duration_ms", "remote_addr", "request_id")
APPROVAL_KEYS = (
    "workflow_id",
    "document_id",
    "document_type",
    "stage_number",
    "approver_id",
    "escalation_level",
    "event_type",
)
EXTRA_KEYS = REQUEST_KEYS + APPROVAL_KEYS

# Short labels for the readable suffix, in display order.
_CONTEXT_LABELS = (
    ("workflow_id", "workflow"),
    ("stage_number", "stage"),
    ("approver_id", "approver"),
    ("escalation_level", "level"),
)


class RequestIdFilter(logging.Filter):
    """Copy ``g.request_id`` onto records logged inside a request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None and has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                record.request_id = request_id
        return True


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production / log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        for key in EXTRA_KEYS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val
        return json.dumps(log_entry, ensure_ascii=False, default=str)


def approval_context(record: logging.LogRecord) -> str:
    """``workflow=… stage=… approver=… level=…`` for whichever are set."""
    parts = []
    for key, label in _CONTEXT_LABELS:
        val = getattr(record, key, None)
        if val is not None and val != "":
            parts.append(f"{label}={val}")
    return " ".join(parts)


class ReadableFormatter(logging.Formatter):
    """Human-readable colored formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",      # cyan
        "INFO": "\033[32m",       # green
        "WARNING": "\033[33m",    # yellow
        "ERROR": "\033[31m",      # red
        "CRITICAL": "\033[35m",   # magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        duration = getattr(record, "duration_ms", None)
        dur_str = f" [{duration:.0f}ms]" if duration is not None else ""
        context = approval_context(record)
        ctx_str = f" ({context})" if context else ""
        request_id = getattr(record, "request_id", None)
        rid_str = f" #{request_id}" if request_id else ""
        msg = record.getMessage()
        base = (
            f"{color}{ts} {record.levelname:<8}{self.RESET} {record.name}: "
            f"{msg}{ctx_str}{dur_str}{rid_str}"
        )
        if record.exc_info and record.exc_info[0] is not None:
            base += "\n" + self.formatException(record.exc_info)
        return base


def configure_logging(app):
    """
    Set up structured logging for the Flask app.

    Reads LOG_LEVEL from env (default: DEBUG in dev, INFO in prod).
    Development  → ReadableFormatter on stderr
    Production   → JSONFormatter on stderr
    APPROVAL_LOG_LEVEL optionally overrides the level of the approval_engine
    loggers (e.g. INFO in dev to hide per-sweep debug lines).
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG")
    level = getattr(logging, level_name.upper(), logging.INFO)

    formatter = JSONFormatter() if is_prod else ReadableFormatter()

    # Single root handler; cleared first so repeated app creation in tests
    # does not stack handlers.
    root = logging.getLogger()
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    handler.addFilter(RequestIdFilter())
    handler.setLevel(level)
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("urllib3", "werkzeug", "sqlalchemy.engine", "flask_limiter"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    engine_level = os.getenv("APPROVAL_LOG_LEVEL")
    if engine_level:
        logging.getLogger("approval_engine").setLevel(
            getattr(logging, engine_level.upper(), level)
        )

    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "JSON" if is_prod else "readable")
