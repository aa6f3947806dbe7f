"""
Structured request logging.

Every request gets an ID that is exposed as ``X-Request-ID`` and stored on
``request.state`` so the security pipeline can attach it to its denial
logs. Requests the pipeline turns away (403/429) are logged as warnings.
"""
import logging
import json
import time
import uuid
from typing import Callable, Optional
from datetime import datetime, timezone

from fastapi import Request, Response, status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from gatekeeper.settings import Settings, settings as default_settings

REQUEST_ID_HEADER = "X-Request-ID"

DENIAL_STATUS_CODES = frozenset({
    status.HTTP_403_FORBIDDEN,
    status.HTTP_429_TOO_MANY_REQUESTS,
})


class JSONFormatter(logging.Formatter):
    """One JSON object per line with request ID and structured fields."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat()
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = getattr(record, 'request_id', None)
        if request_id:
            log_data['request_id'] = request_id

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Assign request IDs and log each request's outcome, including denials."""

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.logger = logging.getLogger("gatekeeper.requests")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        started = time.perf_counter()
        fields = {
            'method': request.method,
            'path': request.url.path,
            'client_ip': request.client.host if request.client else None,
        }
        self.logger.debug(
            f"Request started: {request.method} {request.url.path}",
            extra={'request_id': request_id, 'extra_fields': fields}
        )

        try:
            response = await call_next(request)
        except Exception as e:
            fields['duration_ms'] = round((time.perf_counter() - started) * 1000, 2)
            fields['error'] = str(e)
            self.logger.error(
                f"Request failed: {request.method} {request.url.path} - {e}",
                extra={'request_id': request_id, 'extra_fields': fields},
                exc_info=True
            )
            raise

        fields['status_code'] = response.status_code
        fields['duration_ms'] = round((time.perf_counter() - started) * 1000, 2)

        if response.status_code in DENIAL_STATUS_CODES:
            fields['denied'] = True
            self.logger.warning(
                f"Request denied: {request.method} {request.url.path} - {response.status_code}",
                extra={'request_id': request_id, 'extra_fields': fields}
            )
        else:
            self.logger.info(
                f"Request completed: {request.method} {request.url.path} - {response.status_code}",
                extra={'request_id': request_id, 'extra_fields': fields}
            )

        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def setup_logging(config: Optional[Settings] = None):
    """Configure root logging from LOG_LEVEL, LOG_FORMAT and LOG_FILE."""
    config = config or default_settings

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, config.LOG_LEVEL.upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    if config.LOG_FORMAT == "json":
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(
            logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        )
    root_logger.addHandler(console_handler)

    if config.LOG_FILE:
        file_handler = logging.FileHandler(config.LOG_FILE)
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    # gatekeeper.requests already records every request
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    logging.getLogger("gatekeeper").info(
        f"Logging configured: level={config.LOG_LEVEL}, format={config.LOG_FORMAT}"
    )
