"""
Logging setup for the pipeline tracker.

Every record is tagged with the request it belongs to (request id, tenant,
user) by ``RequestContextFilter``; transition logs additionally carry the
application and action they touched. Development prints those tags inline,
production emits one JSON object per line.

LOG_LEVEL overrides the default level (DEBUG in dev, INFO in prod).
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

# Request-scoped tags, filled from flask.g unless passed through ``extra=``
_REQUEST_TAGS = ("request_id", "tenant_id", "user_id")

# Domain tags services pass through ``extra=``
_TRACKING_TAGS = ("application_id", "action_code")

_HTTP_FIELDS = ("method", "path", "status", "duration_ms", "remote_addr")


class RequestContextFilter(logging.Filter):
    """Copy request id, tenant and user from ``g`` onto the record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context():
            defaults = {
                "request_id": g.get("request_id"),
                "tenant_id": g.get("tenant_id"),
                "user_id": getattr(g.get("current_user"), "id", None),
            }
            for key, value in defaults.items():
                if getattr(record, key, None) is None:
                    setattr(record, key, value)
        return True


def _tags(record: logging.LogRecord) -> dict:
    tags = {}
    for key in _REQUEST_TAGS + _TRACKING_TAGS:
        value = getattr(record, key, None)
        if value is not None:
            tags[key] = value
    return tags


class JSONFormatter(logging.Formatter):
    """One JSON object per record for log shipping."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        entry.update(_tags(record))
        for key in _HTTP_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Coloured single-line output for development.

    Example:
        10:42:07 INFO     tracker.services.transition_engine [t=1 app=5f0c2a1e ADVANCE] Action ...
    """

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    @staticmethod
    def _context(record: logging.LogRecord) -> str:
        parts = []
        tenant_id = getattr(record, "tenant_id", None)
        if tenant_id is not None:
            parts.append(f"t={tenant_id}")
        application_id = getattr(record, "application_id", None)
        if application_id:
            parts.append(f"app={str(application_id)[:8]}")
        action_code = getattr(record, "action_code", None)
        if action_code:
            parts.append(str(action_code))
        return f" [{' '.join(parts)}]" if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.now().strftime("%H:%M:%S")
        duration = getattr(record, "duration_ms", None)
        dur_str = f" [{duration:.0f}ms]" if duration is not None else ""
        line = (
            f"{color}{ts} {record.levelname:<8}{self.RESET} "
            f"{record.name}{self._context(record)} {record.getMessage()}{dur_str}"
        )
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install one stderr handler on the root logger for ``app``.

    Re-running it (one app per test module, for instance) replaces the
    handler instead of adding a second one.
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG")
    level = getattr(logging, level_name.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if is_prod else ReadableFormatter())
    handler.addFilter(RequestContextFilter())
    handler.setLevel(level)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("werkzeug", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app.logger.setLevel(level)
    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "JSON" if is_prod else "readable")
