"""JSON logging tagged with the request and the experiment being worked on.

Every record carries the request id plus whichever experiment and
assignment ids the services bound while handling that request, so one
visitor's bucketing and tracking calls can be followed through the logs.
"""

import json
import logging
import sys
import time
import traceback
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from uplift.core.config import Settings

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
experiment_id_var: ContextVar[str | None] = ContextVar("experiment_id", default=None)
assignment_id_var: ContextVar[str | None] = ContextVar("assignment_id", default=None)

_CONTEXT_VARS: dict[str, ContextVar[str | None]] = {
    "request_id": request_id_var,
    "experiment_id": experiment_id_var,
    "assignment_id": assignment_id_var,
}

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 128
REDACTED = "[REDACTED]"

# Matched as substrings of lower-cased keys
SENSITIVE_FIELDS = (
    "password",
    "secret",
    "token",
    "api_key",
    "authorization",
    "database_url",
    "redis_url",
    "offer_applier_url",
)

_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def get_request_id() -> str | None:
    return request_id_var.get()


def get_log_context() -> dict[str, str]:
    """Return the context ids currently bound, skipping unset ones."""
    return {name: value for name, var in _CONTEXT_VARS.items() if (value := var.get())}


def bind_log_context(
    *,
    experiment_id: uuid.UUID | str | None = None,
    assignment_id: uuid.UUID | str | None = None,
) -> None:
    """Tag every later record in this context with the given ids.

    Ids left as None keep whatever was bound before. Each request runs in
    its own context, so bindings end with the request.
    """
    if experiment_id is not None:
        experiment_id_var.set(str(experiment_id))
    if assignment_id is not None:
        assignment_id_var.set(str(assignment_id))


def clear_log_context() -> None:
    for var in _CONTEXT_VARS.values():
        var.set(None)


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(field in lowered for field in SENSITIVE_FIELDS)


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return redact_sensitive_data(value)
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return value


def redact_sensitive_data(data: dict[str, Any]) -> dict[str, Any]:
    """Copy ``data`` with credential-like values masked, recursing into containers."""
    return {
        key: REDACTED if _is_sensitive(key) else _redact(value) for key, value in data.items()
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per record.

    Bound context ids are top-level keys. Anything passed through
    ``extra=`` lands under ``extra`` after redaction.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **get_log_context(),
        }

        if record.levelno >= logging.WARNING or record.exc_info:
            entry["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, exc_tb = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "traceback": "".join(traceback.format_exception(exc_type, exc_value, exc_tb)),
            }

        extra = {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRS}
        if extra:
            entry["extra"] = redact_sensitive_data(extra)

        return json.dumps(entry, default=str)


def _incoming_request_id(request: Request) -> str | None:
    value = request.headers.get(REQUEST_ID_HEADER)
    if not value or len(value) > MAX_REQUEST_ID_LENGTH or not value.isprintable():
        return None
    return value


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Assigns a request id, echoes it back and logs the request's outcome.

    A caller-supplied ``X-Request-ID`` is reused when it is short and
    printable; otherwise a fresh one is generated.
    """

    def __init__(self, app: Any, logger_name: str = "uplift.request") -> None:
        super().__init__(app)
        self._logger = logging.getLogger(logger_name)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        clear_log_context()
        request_id = _incoming_request_id(request) or uuid.uuid4().hex
        token = request_id_var.set(request_id)
        try:
            response = await self._call_logged(request, call_next)
        finally:
            request_id_var.reset(token)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    async def _call_logged(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        route = {"method": request.method, "path": request.url.path}
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self._logger.exception(
                "Request failed",
                extra={**route, "duration_ms": _elapsed_ms(started)},
            )
            raise

        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        self._logger.log(
            level,
            "%s %s -> %d",
            request.method,
            request.url.path,
            response.status_code,
            extra={
                **route,
                "status_code": response.status_code,
                "duration_ms": _elapsed_ms(started),
            },
        )
        return response


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


def setup_logging(settings: Settings) -> None:
    """Route all logging through a single stdout JSON handler."""
    level = getattr(logging, settings.app_log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    logging.getLogger("uplift").setLevel(level)

    for noisy in ("uvicorn.access", "httpx", "httpcore", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def setup_request_logging(app: FastAPI) -> None:
    app.add_middleware(RequestLoggingMiddleware)
