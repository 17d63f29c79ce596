"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
the v1 API router, and a lifespan that wires the sync engine:
entity store -> job queue -> Notion adapter -> queue processor -> sync
service, plus the webhook services and the reconciliation reporter.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.backoffice.config import get_settings
from src.backoffice.core.database import close_db, get_session, init_db
from src.backoffice.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.backoffice.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.backoffice.api.v1.router import router as v1_router

_COMPONENTS = (
    "entity_store",
    "sync_queue",
    "notion_adapter",
    "queue_processor",
    "sync_service",
    "payment_webhooks",
    "notion_webhooks",
    "reconciler",
    "processor_task",
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and the sync engine; tear down on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    await init_db()

    for name in _COMPONENTS:
        setattr(app.state, name, None)

    # ── Queue + store ───────────────────────────────────────────────────
    # Enqueueing works without Notion credentials; jobs wait until a
    # processor with an adapter drains them.
    try:
        from src.backoffice.sync.queue import SyncJobQueue
        from src.backoffice.sync.repository import EntityStore

        app.state.entity_store = EntityStore(session_factory=get_session)
        app.state.sync_queue = SyncJobQueue(
            session_factory=get_session,
            max_retries=settings.SYNC_MAX_RETRIES,
            backoff_base=settings.SYNC_BACKOFF_BASE_SECONDS,
            backoff_max=settings.SYNC_BACKOFF_MAX_SECONDS,
        )
        log.info("sync.queue_initialized", max_retries=settings.SYNC_MAX_RETRIES)
    except Exception:
        log.warning("sync.queue_init_failed", exc_info=True)

    store = app.state.entity_store
    queue = app.state.sync_queue

    # ── Notion adapter, handlers, processor ─────────────────────────────
    handlers = None
    if store is not None and queue is not None:
        try:
            from src.backoffice.sync.handlers import build_handlers
            from src.backoffice.sync.notion import NotionWorkspaceAdapter
            from src.backoffice.sync.processor import QueueProcessor
            from src.backoffice.sync.ratelimit import RateLimiter

            handlers = build_handlers(settings)
            if settings.NOTION_TOKEN:
                adapter = NotionWorkspaceAdapter.from_token(
                    settings.NOTION_TOKEN,
                    rate_limiter=RateLimiter(settings.SYNC_RATE_LIMIT_PER_SECOND),
                )
                app.state.notion_adapter = adapter
                app.state.queue_processor = QueueProcessor(
                    queue=queue,
                    store=store,
                    adapter=adapter,
                    handlers=handlers,
                    concurrency=settings.SYNC_CONCURRENCY,
                    poll_interval=settings.SYNC_POLL_INTERVAL_SECONDS,
                )
                log.info("sync.notion_adapter_initialized")
            else:
                log.warning("sync.notion_not_configured", hint="NOTION_TOKEN is empty")
        except Exception:
            log.warning("sync.notion_init_failed", exc_info=True)
            app.state.notion_adapter = None
            app.state.queue_processor = None

    # ── Sync service ────────────────────────────────────────────────────
    if store is not None and queue is not None:
        try:
            from src.backoffice.sync.service import SyncService

            app.state.sync_service = SyncService(
                queue=queue, store=store, processor=app.state.queue_processor
            )
        except Exception:
            log.warning("sync.service_init_failed", exc_info=True)

    # ── Webhooks ────────────────────────────────────────────────────────
    if store is not None:
        try:
            from src.backoffice.payments.service import PaymentHandlers
            from src.backoffice.webhooks.payments import PaymentWebhookService

            if settings.STRIPE_WEBHOOK_SECRET:
                app.state.payment_webhooks = PaymentWebhookService(
                    store=store,
                    handlers=PaymentHandlers(get_session, app.state.sync_service),
                    signing_secret=settings.STRIPE_WEBHOOK_SECRET,
                    tolerance_seconds=settings.STRIPE_SIGNATURE_TOLERANCE_SECONDS,
                )
                log.info("webhook.payments_initialized")
            else:
                log.warning("webhook.payments_not_configured", hint="STRIPE_WEBHOOK_SECRET is empty")
        except Exception:
            log.warning("webhook.payments_init_failed", exc_info=True)

    adapter = app.state.notion_adapter
    if store is not None and adapter is not None and handlers is not None:
        try:
            from src.backoffice.sync.reconciliation import ReconciliationReporter
            from src.backoffice.webhooks.notion import NotionWebhookService

            app.state.notion_webhooks = NotionWebhookService(
                store=store,
                adapter=adapter,
                handlers=handlers,
                signing_secret=settings.NOTION_WEBHOOK_SIGNING_SECRET,
                recency_seconds=settings.NOTION_EVENT_RECENCY_SECONDS,
            )
            app.state.reconciler = ReconciliationReporter(
                store=store,
                adapter=adapter,
                handlers=handlers,
                tolerance_seconds=settings.RECONCILIATION_TOLERANCE_SECONDS,
                drift_threshold=settings.RECONCILIATION_DRIFT_THRESHOLD,
            )
            log.info("webhook.notion_initialized", signed=bool(settings.NOTION_WEBHOOK_SIGNING_SECRET))
        except Exception:
            log.warning("webhook.notion_init_failed", exc_info=True)

    # ── Background worker ───────────────────────────────────────────────
    processor = app.state.queue_processor
    if processor is not None and settings.SYNC_WORKER_ENABLED:
        try:
            recovered = await queue.recover_stale(settings.SYNC_STALE_CLAIM_SECONDS)
            if recovered:
                log.info("sync.stale_jobs_recovered", count=recovered)
            app.state.processor_task = asyncio.create_task(processor.run())
        except Exception:
            log.warning("sync.worker_start_failed", exc_info=True)

    yield

    processor_task = app.state.processor_task
    if processor_task is not None and not processor_task.done():
        processor.stop()
        try:
            await asyncio.wait_for(processor_task, timeout=10)
        except asyncio.TimeoutError:
            processor_task.cancel()
            try:
                await processor_task
            except asyncio.CancelledError:
                pass
        log.info("sync.worker_stopped")

    if adapter is not None:
        try:
            await adapter.aclose()
        except Exception:
            log.warning("sync.notion_close_failed", exc_info=True)

    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Backoffice Sync API",
        version="0.1.0",
        description="Notion workspace sync engine with payment and Notion webhooks",
        lifespan=lifespan,
    )

    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(LoggingMiddleware)

    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


app = create_app()
