"""
Logging setup.

Every record logged while a request is being served is stamped with the
request id and acting user (``RequestContextFilter``), so ledger and
workflow messages from the service layer can be traced back to a caller.

- LOG_FORMAT: ``json`` (one object per line) or ``text``; defaults to JSON
  outside DEBUG/TESTING
- LOG_LEVEL:  defaults to INFO in production, DEBUG otherwise
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

# Fields lifted from ``extra=`` / the request context into the output
_CONTEXT_FIELDS = (
    "request_id",
    "user_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
    "ticket_id",
    "step_id",
    "kind",
    "detail_id",
)


class RequestContextFilter(logging.Filter):
    """Copy request_id / user_id from ``flask.g`` onto records that lack them."""

    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context():
            if getattr(record, "request_id", None) is None:
                record.request_id = g.get("request_id")
            if getattr(record, "user_id", None) is None:
                record.user_id = g.get("current_user_id")
        return True


def _context(record: logging.LogRecord) -> dict:
    return {
        key: getattr(record, key)
        for key in _CONTEXT_FIELDS
        if getattr(record, key, None) is not None
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

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


class TextFormatter(logging.Formatter):
    """``12:04:31 INFO     worktrack.x: message  [user=3 ticket=12]``"""

    _SHORT = {"request_id": "req", "user_id": "user", "ticket_id": "ticket",
              "step_id": "step", "detail_id": "detail", "kind": "kind"}

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"{ts} {record.levelname:<8} {record.name}: {record.getMessage()}"
        ctx = _context(record)
        tags = " ".join(f"{short}={ctx[key]}" for key, short in self._SHORT.items() if key in ctx)
        if "duration_ms" in ctx:
            tags = f"{tags} {ctx['duration_ms']:.0f}ms".strip()
        if tags:
            line += f"  [{tags}]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger for ``app``."""
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)
    fmt = os.getenv("LOG_FORMAT", "json" if is_prod else "text").lower()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if fmt == "json" else TextFormatter())
    handler.addFilter(RequestContextFilter())
    handler.setLevel(level)

    # tests build several apps; keep exactly one handler
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("werkzeug", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, fmt)
