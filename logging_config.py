"""
Logging setup for the StudyAI service.

Every record emitted while a request is being handled carries that
request's id, so sync, generation and audit lines can be joined to the
access line. LOG_FORMAT=json gives one JSON object per line; anything
else gives plain text.
"""

from __future__ import annotations

import json
import logging
import time
import uuid

from flask import Flask, g, has_request_context, request

_EXTRA_FIELDS = ("request_id", "user_id", "audit_action", "status", "duration_ms")

# Chatty client libraries: the Gemini SDK (httpx), Firebase and requests
_QUIET_LOGGERS = ("werkzeug", "urllib3", "httpx", "google", "firebase_admin")

# Health checks get no access line
_UNLOGGED_PATHS = frozenset({"/health"})


class JSONFormatter(logging.Formatter):
    """Emit log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _EXTRA_FIELDS:
            if hasattr(record, key):
                entry[key] = getattr(record, key)
        if record.exc_info and record.exc_info[0]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class RequestIdFilter(logging.Filter):
    """Stamp the current request id onto records that lack one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = g.get("request_id", "-") if has_request_context() else "-"
        return True


def _text_formatter() -> logging.Formatter:
    return logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s [%(request_id)s]: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def init_logging(app: Flask) -> None:
    """Configure the root logger and the per-request id and access line."""
    level = app.config.get("LOG_LEVEL", "INFO")
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler()
    handler.addFilter(RequestIdFilter())
    handler.setFormatter(JSONFormatter() if app.config.get("LOG_FORMAT") == "json" else _text_formatter())
    root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    @app.before_request
    def _attach_request_id():
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        g.request_start = time.time()

    @app.after_request
    def _log_request(response):
        request_id = g.get("request_id", "-")
        response.headers["X-Request-ID"] = request_id
        if request.path in _UNLOGGED_PATHS:
            return response

        duration_ms = round((time.time() - g.get("request_start", time.time())) * 1000)
        extra = {"request_id": request_id, "status": response.status_code, "duration_ms": duration_ms}
        # Flask-Login caches the loaded user here; reading it never triggers a load
        user = g.get("_login_user")
        if user is not None and user.is_authenticated:
            extra["user_id"] = user.get_id()
        app.logger.info("%s %s %s %dms", request.method, request.path,
                        response.status_code, duration_ms, extra=extra)
        return response
