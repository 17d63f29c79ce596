"""Request logging and structlog setup.

Every request gets a request_id bound into structlog contextvars, so log
lines emitted while it is handled (webhook ingestion, enqueues, manual
drains) carry it. The id is echoed back as X-Request-ID; the Notion webhook
reuses it as its correlationId.

Health probes and /metrics scrapes are logged at debug level only.
"""

from __future__ import annotations

import logging
import sys
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.backoffice.config import Environment, get_settings

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

_QUIET_PATHS = ("/metrics", "/v1/health")
# Third-party loggers that narrate every Notion call or SQL statement at INFO.
_NOISY_LOGGERS = ("httpx", "httpcore", "notion_client", "sqlalchemy.engine")


def configure_structlog() -> None:
    """Route stdlib logging and structlog to stdout.

    JSON lines in production, colored console output elsewhere.
    """
    settings = get_settings()
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.ENVIRONMENT == Environment.production
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _webhook_source(path: str) -> str | None:
    if "/webhooks/" not in path:
        return None
    return path.rstrip("/").rsplit("/", 1)[-1]


class LoggingMiddleware(BaseHTTPMiddleware):
    """Bind a request id and log one line per request with its timing."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        path = request.url.path
        context = {"request_id": request_id}
        source = _webhook_source(path)
        if source:
            context["webhook_source"] = source

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(**context)
        started = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "request_error",
                method=request.method,
                path=path,
                duration_ms=round((time.monotonic() - started) * 1000, 2),
            )
            raise
        finally:
            structlog.contextvars.unbind_contextvars(*context)

        response.headers[REQUEST_ID_HEADER] = request_id
        fields = {
            "method": request.method,
            "path": path,
            "status_code": response.status_code,
            "duration_ms": round((time.monotonic() - started) * 1000, 2),
            **context,
        }
        if response.status_code >= 500:
            logger.error("request_completed", **fields)
        elif response.status_code >= 400:
            logger.warning("request_completed", **fields)
        elif path.startswith(_QUIET_PATHS):
            logger.debug("request_completed", **fields)
        else:
            logger.info("request_completed", **fields)
        return response
