import logging
import re
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from spenly_whatsapp.metrics import record_http_request
from spenly_whatsapp.utils import mask_phone


REQUEST_ID_HEADER = "X-Request-ID"

# Upstream ids are echoed back only when they look like ids
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,128}$")

# Probes hit every few seconds; keep them out of INFO
_QUIET_PATHS = ("/health/live", "/health/ready", "/metrics")

# Third-party loggers that are chatty at INFO
_NOISY_LOGGERS = ("twilio.http_client", "sqlalchemy.engine", "multipart")

request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
message_sid_ctx: ContextVar[Optional[str]] = ContextVar("message_sid", default=None)


def get_request_id() -> Optional[str]:
    return request_id_ctx.get()


def bind_message_sid(message_sid: Optional[str]) -> None:
    """Tag every log line emitted while handling this inbound message."""
    if message_sid:
        message_sid_ctx.set(message_sid)


class SpenlyJsonFormatter(jsonlogger.JsonFormatter):
    """JSON lines with ts, level, request_id and, inside the webhook, message_sid."""

    def add_fields(self, log_record, record, message_dict):
        super(SpenlyJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            log_record['ts'] = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        for key, ctx in (('request_id', request_id_ctx), ('message_sid', message_sid_ctx)):
            if key not in log_record:
                value = ctx.get()
                if value:
                    log_record[key] = value


def setup_logging(log_level: str = "INFO"):
    """
    Send all application and uvicorn logs to stdout as JSON lines.

    Args:
        log_level: Root logging level name
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(SpenlyJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False

    # RequestLoggingMiddleware replaces the access log
    logging.getLogger("uvicorn.access").disabled = True

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


def _route_path(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


def _incoming_request_id(request: Request) -> str:
    candidate = request.headers.get(REQUEST_ID_HEADER, "")
    if _REQUEST_ID_RE.match(candidate):
        return candidate
    return str(uuid.uuid4())


def _level_for(path: str, status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    if path in _QUIET_PATHS:
        return logging.DEBUG
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured log line and one metrics sample per HTTP request.

    Keys: request_id, method, path (route template), status, latency_ms, plus
    message_sid, intent, result and a masked sender for webhook calls.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = _incoming_request_id(request)
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id

            latency_seconds = time.perf_counter() - started
            path = _route_path(request)
            if path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=path,
                    status=response.status_code,
                    latency_seconds=latency_seconds
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
            }
            log_data.update(getattr(request.state, "webhook_log_data", {}))

            logging.getLogger("spenly_whatsapp.requests").log(
                _level_for(path, response.status_code), "Request completed", extra=log_data
            )
            return response
        finally:
            request_id_ctx.reset(token)


def log_webhook_data(
    request: Request,
    message_sid: Optional[str] = None,
    intent: Optional[str] = None,
    result: Optional[str] = None,
    from_phone: Optional[str] = None,
):
    """
    Attach webhook fields to the request log line written by the middleware.

    The sender number is masked before it reaches the log.
    """
    fields = {
        "message_sid": message_sid,
        "intent": intent,
        "result": result,
        "from": mask_phone(from_phone) if from_phone else None,
    }
    request.state.webhook_log_data = {k: v for k, v in fields.items() if v is not None}
