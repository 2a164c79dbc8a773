"""
Structured logging configuration.

Services log with ``extra={"project_id": ..., "task_id": ...}``; both
formatters surface those engagement ids so a single submission can be
followed across requests.

    LOG_LEVEL   DEBUG | INFO | ...   (default DEBUG in dev/test, INFO in prod)
    LOG_FORMAT  json | text          (default json in prod, text otherwise)
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# Engagement ids, in display order
CONTEXT_FIELDS = ("project_id", "step_id", "task_id", "submission_id", "event_type")

# Request fields set by the timing middleware
REQUEST_FIELDS = ("request_id", "method", "path", "status", "duration_ms")


def _present(record, fields):
    return {f: getattr(record, f) for f in fields if getattr(record, f, None) is not None}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, engagement ids under ``context``."""

    def format(self, record):
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        context = _present(record, CONTEXT_FIELDS)
        if context:
            entry["context"] = context
        entry.update(_present(record, REQUEST_FIELDS))
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ReadableFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL logger: message [project=1 task=4]`` with ANSI colors."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[2m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }

    def format(self, record):
        color = self.LEVEL_COLORS.get(record.levelno, "")
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        context = " ".join(
            f"{key.removesuffix('_id')}={value}"
            for key, value in _present(record, CONTEXT_FIELDS).items()
        )
        line = f"{color}{stamp} {record.levelname:<7}\033[0m {record.name}: {record.getMessage()}"
        if context:
            line += f" [{context}]"
        if getattr(record, "duration_ms", None) is not None:
            line += f" ({record.duration_ms:.0f}ms)"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Route all loggers through one stderr handler with the chosen format."""
    production = not (app.debug or app.testing)
    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO" if production else "DEBUG").upper())
    if not isinstance(level, int):
        level = logging.INFO
    fmt = os.getenv("LOG_FORMAT", "json" if production else "text").lower()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if fmt == "json" else ReadableFormatter())

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)
    app.logger.setLevel(level)
    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    app.logger.debug("Logging configured (level=%s, format=%s)", logging.getLevelName(level), fmt)
