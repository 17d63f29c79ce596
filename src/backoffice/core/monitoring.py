"""Prometheus metrics, Sentry integration, and sync job tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- init_sentry(): Initialize Sentry with sync-context tagging
- track_sync_job(): Context manager for sync job metrics
- record_notion_call() / record_webhook_event(): counters for the sync edges
- get_metrics_response(): Prometheus exposition for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import sentry_sdk
import structlog
from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

sync_jobs_total = Counter(
    "sync_jobs_total",
    "Sync jobs processed",
    ["entity_type", "operation", "outcome"],
)

sync_job_duration_seconds = Histogram(
    "sync_job_duration_seconds",
    "Sync job execution time in seconds",
    ["entity_type", "operation"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

sync_jobs_in_flight = Gauge(
    "sync_jobs_in_flight",
    "Sync jobs currently executing in this process",
)

notion_api_calls_total = Counter(
    "notion_api_calls_total",
    "Notion API calls",
    ["operation", "outcome"],
)

webhook_events_total = Counter(
    "webhook_events_total",
    "Inbound webhook events",
    ["source", "result"],
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        # Route pattern (set by the router during dispatch) keeps label cardinality bounded
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()
        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Sync Metrics Helpers ────────────────────────────────────────────────────


@asynccontextmanager
async def track_sync_job(
    entity_type: str,
    operation: str,
) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks one sync job execution.

    Usage:
        async with track_sync_job("PROJECT", "CREATE") as tracker:
            result = await handler.create(adapter, snapshot)
            tracker["outcome"] = "synced" if result.success else "retry"

    Records duration, in-flight gauge, and a count by outcome. An exception
    escaping the block is counted as ``error`` and re-raised.
    """
    tracker: dict[str, Any] = {"outcome": "synced"}
    start_time = time.perf_counter()
    sync_jobs_in_flight.inc()

    try:
        yield tracker
    except Exception:
        tracker["outcome"] = "error"
        raise
    finally:
        sync_jobs_in_flight.dec()
        sync_job_duration_seconds.labels(
            entity_type=entity_type,
            operation=operation,
        ).observe(time.perf_counter() - start_time)
        sync_jobs_total.labels(
            entity_type=entity_type,
            operation=operation,
            outcome=tracker["outcome"],
        ).inc()


def record_notion_call(operation: str, success: bool) -> None:
    notion_api_calls_total.labels(
        operation=operation,
        outcome="success" if success else "error",
    ).inc()


def record_webhook_event(source: str, result: str) -> None:
    webhook_events_total.labels(source=source, result=result).inc()


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK with request/sync context tagging.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        """Copy bound structlog context (request_id, job_id) onto Sentry tags."""
        context = structlog.contextvars.get_contextvars()
        if context:
            tags = event.setdefault("tags", {})
            for key in ("request_id", "job_id", "entity_type"):
                if key in context:
                    tags[key] = str(context[key])
        return event

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=before_send,
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
