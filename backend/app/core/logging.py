# Structured JSON logging for the service. The middleware records one
# log line per request; engine modules log dotted event names with
# ``extra`` fields (referrer_id, order_id, amount) for traceability.

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from time import monotonic
from typing import Any

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.config import settings


_STANDARD_ATTRS = {
    "args",
    "asctime",
    "created",
    "exc_info",
    "exc_text",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "msg",
    "name",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "taskName",
    "thread",
    "threadName",
}

_ALWAYS_FIELDS = {
    "request_id",
    "route",
    "method",
    "status_code",
    "duration_ms",
    "error_code",
}


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in _STANDARD_ATTRS:
                continue
            if value is None and key not in _ALWAYS_FIELDS:
                continue
            payload[key] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, default=str)


def get_structured_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())
    logger.addHandler(handler)
    logger.setLevel(settings.LOG_LEVEL)
    logger.propagate = False
    return logger


logger = get_structured_logger("api_logger")


def _resolve_route(request: Request) -> str:
    route = request.scope.get("route")
    route_path = getattr(route, "path", None)
    return route_path or request.url.path


def _resolve_actor(request: Request) -> str | None:
    if not request.headers.get(settings.ADMIN_TOKEN_HEADER):
        return None
    return (request.headers.get("X-Admin-Actor") or "").strip() or None


class APILoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start = monotonic()
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = round((monotonic() - start) * 1000.0, 2)
            logger.exception(
                "request.failed",
                extra={
                    "request_id": request_id,
                    "route": _resolve_route(request),
                    "path": request.url.path,
                    "method": request.method,
                    "actor": _resolve_actor(request),
                    "status_code": 500,
                    "duration_ms": duration_ms,
                    "error_code": "unhandled_exception",
                },
            )
            raise

        duration_ms = round((monotonic() - start) * 1000.0, 2)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request.completed",
            extra={
                "request_id": request_id,
                "route": _resolve_route(request),
                "path": request.url.path,
                "method": request.method,
                "actor": _resolve_actor(request),
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                "error_code": response.headers.get("X-Error-Code"),
            },
        )
        return response
