"""
Structured logging configuration.

- Development: human-readable colored lines
- Production: one JSON object per line
- LOG_LEVEL env var sets the level, LOG_FORMAT ("json" / "readable")
  overrides the format choice

Services attach domain context with ``extra={"item_id": ..., ...}``; the
keys listed in CONTEXT_FIELDS are carried into the output.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# Request context (timing middleware)
_REQUEST_FIELDS = ("request_id", "method", "path", "status", "duration_ms", "user")

# Domain context (services)
_DOMAIN_FIELDS = {
    "plan_id": "plan",
    "factor_id": "factor",
    "item_id": "item",
    "approver_id": "approver",
    "escalation_id": "escalation",
    "escalation_level": "level",
    "rule_id": "rule",
    "job_name": "job",
}

CONTEXT_FIELDS = _REQUEST_FIELDS + tuple(_DOMAIN_FIELDS)


def _context(record: logging.LogRecord) -> dict:
    return {
        key: getattr(record, key)
        for key in CONTEXT_FIELDS
        if getattr(record, key, None) is not None
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per record, context fields at top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        entry.update(_context(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored single-line output for a terminal."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, "")
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        tags = "".join(
            f" {label}={getattr(record, key)}"
            for key, label in _DOMAIN_FIELDS.items()
            if getattr(record, key, None) is not None
        )
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            tags += f" [{duration:.0f}ms]"

        line = f"{color}{clock} {record.levelname:<8}{self.RESET} {record.name}: {record.getMessage()}{tags}"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """
    Install a single root handler on stderr.

    Level defaults to INFO in production and DEBUG elsewhere. Format
    defaults to JSON in production and readable elsewhere.
    """
    testing = app.config.get("TESTING", False)
    production = not app.config.get("DEBUG", False) and not testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if production else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = os.getenv("LOG_FORMAT", "json" if production else "readable").lower()
    formatter = JSONFormatter() if fmt == "json" else ReadableFormatter()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    handler.setLevel(level)

    # Tests build several apps; replace rather than stack handlers
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in ("werkzeug", "sqlalchemy.engine", "alembic", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, fmt)
