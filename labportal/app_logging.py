"""Application and access logging for the Lab Portal API.

``app.log`` collects the ``labportal`` logger tree and ``access.log`` receives
one JSON line per HTTP request; both rotate at midnight. Patient national ids
never reach either file in clear: request bodies, query strings and the
``/api/agenda/patients/<id>`` path segment are masked down to their last four
characters, while tokens and cookies are replaced entirely.

Records emitted while a request is in flight are stamped with its request id,
so a booking or handoff line in ``app.log`` can be matched to its access line.

Environment variables: LOG_DIR, LOG_LEVEL, LOG_JSON, LOG_REQUEST_BODIES,
LOG_RETENTION_DAYS, LOG_ROTATE_UTC, LOG_SKIP_PATHS.
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
from contextvars import ContextVar
from logging.handlers import TimedRotatingFileHandler
from typing import Any, cast
from urllib.parse import unquote
from uuid import uuid4

from fastapi import FastAPI, Request

from .core.rate_limit import get_client_ip

APP_LOGGER_NAME = "labportal"
ACCESS_LOGGER_NAME = "uvicorn.access"
DEFAULT_SKIP_PATHS = ("/api/health", "/api/metrics")

SECRET_FIELDS = {
    "authorization",
    "cookie",
    "set-cookie",
    "password",
    "token",
    "access_token",
}
IDENTIFIER_FIELDS = {"national_id", "patient_national_id"}

_PATIENT_PATH = re.compile(r"^(/api/agenda/patients/)([^/]+)")
_request_id: ContextVar[str | None] = ContextVar("labportal_request_id", default=None)


def current_request_id() -> str | None:
    """Request id of the HTTP request being served, if any."""

    return _request_id.get()


class RequestIdFilter(logging.Filter):
    """Stamp ``record.request_id`` so formatters can always reference it."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id.get() or "-"
        return True


class JsonFormatter(logging.Formatter):
    """JSON log formatter used when LOG_JSON=true."""

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "level": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = getattr(record, "request_id", None)
        if request_id and request_id != "-":
            log_record["request_id"] = request_id
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_record)


def _get_formatter(log_json: bool) -> logging.Formatter:
    if log_json:
        return JsonFormatter()
    return logging.Formatter(
        "[%(asctime)s] %(levelname)s in %(name)s [%(request_id)s]: %(message)s"
    )


def mask_identifier(value: object) -> str:
    """Keep the last four characters of a national id: ``******0405``."""

    text = str(value)
    if len(text) <= 4:
        return "***"
    return "*" * (len(text) - 4) + text[-4:]


def _scrub(data: object) -> object:
    """Recursively mask secrets and patient identifiers in dicts and lists."""

    if isinstance(data, dict):
        scrubbed = {}
        for key, value in data.items():
            name = str(key).lower()
            if name in SECRET_FIELDS:
                scrubbed[key] = "***"
            elif name in IDENTIFIER_FIELDS and value is not None:
                scrubbed[key] = mask_identifier(value)
            else:
                scrubbed[key] = _scrub(value)
        return scrubbed
    if isinstance(data, list):
        return [_scrub(v) for v in data]
    return data


def _redact_path(path: str) -> str:
    return _PATIENT_PATH.sub(
        lambda match: match.group(1) + mask_identifier(unquote(match.group(2))), path
    )


def _skip_paths() -> set[str]:
    configured = os.getenv("LOG_SKIP_PATHS")
    if configured is None:
        return set(DEFAULT_SKIP_PATHS)
    return {path.strip() for path in configured.split(",") if path.strip()}


def _install_access_logging(app: FastAPI) -> None:
    """Install the request/response access logging middleware.

    Paths listed in LOG_SKIP_PATHS (health and metrics by default) are not
    logged. The request id is taken from ``X-Request-Id`` or generated, and
    echoed back in the response.
    """

    log_request_bodies = os.getenv("LOG_REQUEST_BODIES", "false").lower() == "true"
    skip_paths = _skip_paths()
    access_logger = logging.getLogger(ACCESS_LOGGER_NAME)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        if request.url.path in skip_paths:
            return await call_next(request)

        request_id = request.headers.get("X-Request-Id") or uuid4().hex
        request.state.request_id = request_id
        context_token = _request_id.set(request_id)

        start = time.time()
        try:
            body_content = None
            if log_request_bodies:
                body_bytes = await request.body()

                async def receive() -> dict:  # pragma: no cover - internal
                    return {"type": "http.request", "body": body_bytes, "more_body": False}

                request._receive = receive  # type: ignore[attr-defined]

                if body_bytes:
                    try:
                        body_content = _scrub(json.loads(body_bytes))
                    except ValueError:
                        body_content = "<non-json body omitted>"

            response = await call_next(request)

            route = request.scope.get("route")
            log_data: dict[str, Any] = {
                "request_id": request_id,
                "method": request.method,
                "path": _redact_path(request.url.path),
                "route": getattr(route, "path", None),
                "status": response.status_code,
                "latency_ms": round((time.time() - start) * 1000, 2),
                "client_ip": get_client_ip(request),
                "headers": _scrub(dict(request.headers)),
            }
            if request.query_params:
                log_data["query"] = _scrub(dict(request.query_params))
            if body_content is not None:
                log_data["body"] = body_content

            response.headers["X-Request-Id"] = request_id
            access_logger.info(json.dumps(log_data, default=str))
            return response
        finally:
            _request_id.reset(context_token)


def _rotating_handler(
    path: str, formatter: logging.Formatter, retention_days: int, rotate_utc: bool
) -> TimedRotatingFileHandler:
    handler = TimedRotatingFileHandler(
        path,
        when="midnight",
        backupCount=retention_days,
        utc=rotate_utc,
    )
    handler.setFormatter(formatter)
    handler.addFilter(RequestIdFilter())
    return handler


def init_logging(app: FastAPI | None = None) -> None:
    """Initialise application and access loggers."""

    log_dir = os.getenv("LOG_DIR", "logs")
    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_json = os.getenv("LOG_JSON", "false").lower() == "true"
    retention_days = int(os.getenv("LOG_RETENTION_DAYS", "7"))
    rotate_utc = os.getenv("LOG_ROTATE_UTC", "false").lower() == "true"

    os.makedirs(log_dir, exist_ok=True)

    formatter = _get_formatter(log_json)
    log_level = getattr(logging, log_level_str, logging.INFO)

    app_logger = logging.getLogger(APP_LOGGER_NAME)
    if not app_logger.handlers:
        app_logger.addHandler(
            _rotating_handler(
                os.path.join(log_dir, "app.log"), formatter, retention_days, rotate_utc
            )
        )
    app_logger.setLevel(log_level)

    access_logger = logging.getLogger(ACCESS_LOGGER_NAME)
    access_logger.handlers.clear()
    access_logger.addHandler(
        _rotating_handler(
            os.path.join(log_dir, "access.log"), formatter, retention_days, rotate_utc
        )
    )
    access_logger.setLevel(log_level)

    if app is not None:
        cast(Any, app).logger = app_logger
        _install_access_logging(app)
