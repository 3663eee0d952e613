"""
Structured JSON logging and per-request log lines.

Every log record carries ts, level and logger name, plus request_id while a
request is being served. RequestLoggingMiddleware writes one line per HTTP
request and merges in whatever the route attached with log_request_data.
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from fastapi import Request, Response
from pythonjsonlogger import jsonlogger
from starlette.middleware.base import BaseHTTPMiddleware

from chatapp.metrics import record_http_request

REQUEST_ID_HEADER = "X-Request-ID"

# Libraries that are chatty at DEBUG and never useful in request logs
_QUIET_LOGGERS = ("botocore", "boto3", "s3transfer", "urllib3", "httpx", "httpcore")

request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Adds ts (ISO-8601, ms, Z), level and the active request_id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record.setdefault(
            'ts', datetime.fromtimestamp(record.created, timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        )
        log_record['level'] = record.levelname
        req_id = request_id_ctx.get()
        if req_id and 'request_id' not in log_record:
            log_record['request_id'] = req_id


def setup_logging(log_level: str = "INFO"):
    """
    Send the root logger and uvicorn's loggers to stdout as JSON.

    Args:
        log_level: Logging level name (DEBUG, INFO, WARNING, ...)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False
    # Replaced by RequestLoggingMiddleware
    logging.getLogger("uvicorn.access").disabled = True

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(root.level, logging.WARNING))

    return root


def _route_path(request: Request) -> str:
    # Route template keeps metric labels low-cardinality (no ids in paths)
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One JSON line per HTTP request.

    Log keys:
    - ts, level, request_id
    - method, path, status, latency_ms
    - user_id when the request was authenticated
    - any domain fields attached with log_request_data
      (conversation_id, message_id, invite_id, result, ...)

    An incoming X-Request-ID is reused so a client can correlate its own logs;
    otherwise a fresh one is minted. Either way it is echoed on the response.
    """

    logger = logging.getLogger("chatapp.requests")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        ctx_token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            elapsed = time.perf_counter() - started
            response.headers[REQUEST_ID_HEADER] = request_id

            route_path = _route_path(request)
            if route_path != "/metrics":
                record_http_request(request.method, route_path, response.status_code, elapsed)

            entry = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
            }
            user_id = getattr(request.state, "user_id", None)
            if user_id:
                entry["user_id"] = user_id
            entry.update(getattr(request.state, "log_data", {}))

            self.logger.log(_level_for(response.status_code), "Request completed", extra=entry)
            return response
        finally:
            request_id_ctx.reset(ctx_token)


def log_request_data(request: Request, **fields: Any) -> None:
    """
    Attach domain fields to the request state. The middleware merges them
    into the request log line. None values are skipped.
    """
    data = getattr(request.state, "log_data", {})
    data.update({key: value for key, value in fields.items() if value is not None})
    request.state.log_data = data
