"""
Structured JSON logging and per-request access logs.

Every request gets an X-Request-ID (reused from the caller when supplied)
that is stamped on every log line emitted while the request is handled.
Route handlers can attach extra fields to the access log line through
annotate_request_log().
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from app.metrics import record_http_request


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Libraries that are noisy at INFO
QUIET_LOGGERS = ("sqlalchemy.engine", "multipart", "PIL")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON lines with an ISO-8601 `ts`, the level name and the current request_id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            now = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record["ts"] = now.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
        log_record["level"] = record.levelname

        if "request_id" not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record["request_id"] = req_id


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Route the root logger and uvicorn's loggers through one JSON stdout handler.

    uvicorn.access is disabled; RequestLoggingMiddleware writes the access log.
    """
    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = []

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))
    root.addHandler(handler)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False
    logging.getLogger("uvicorn.access").disabled = True

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(root.level, logging.WARNING))

    return root


def annotate_request_log(request: Request, **fields: Any) -> None:
    """Merge fields into the access log line written for this request."""
    extra = getattr(request.state, "audit_log_data", None) or {}
    extra.update({key: value for key, value in fields.items() if value is not None})
    request.state.audit_log_data = extra


def log_webhook_data(
    request: Request,
    provider: str,
    result: str,
    external_id: Optional[str] = None,
    events: Optional[int] = None
):
    """
    Attach provider webhook fields to the access log line.

    Args:
        request: FastAPI request object
        provider: SendGrid or Twilio
        result: applied, unknown, invalid_signature or validation_error
        external_id: Provider message id for single-event callbacks
        events: Number of events in a batched payload
    """
    annotate_request_log(request, provider=provider, result=result, external_id=external_id, events=events)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured access log line per request.

    Keys: ts, level, request_id, method, path, status, latency_ms, plus
    whatever the handler attached with annotate_request_log() (user_id,
    organization_id, export format/mode/job_id, webhook provider/result).
    Also feeds the HTTP metrics, except for /metrics itself.
    """

    access_logger = logging.getLogger("app.requests")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Caller-supplied X-Request-ID wins
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            latency_seconds = time.perf_counter() - started

            if request.url.path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=request.url.path,
                    status=response.status_code,
                    latency_seconds=latency_seconds
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
            }
            log_data.update(getattr(request.state, "audit_log_data", None) or {})
            self.access_logger.log(self._level_for(response.status_code), "Request completed", extra=log_data)
            return response
        finally:
            request_id_ctx.reset(token)

    @staticmethod
    def _level_for(status_code: int) -> int:
        if status_code >= 500:
            return logging.ERROR
        if status_code >= 400:
            return logging.WARNING
        return logging.INFO
