"""FastAPI dependencies resolving sync components from app.state.

Components are built in the application lifespan; any that failed to
initialize (or are not configured, e.g. no NOTION_TOKEN) are left as None
and endpoints depending on them respond 503.
"""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request, status

from src.backoffice.sync.processor import QueueProcessor
from src.backoffice.sync.queue import SyncJobQueue
from src.backoffice.sync.reconciliation import ReconciliationReporter
from src.backoffice.sync.service import SyncService
from src.backoffice.webhooks.notion import NotionWebhookService
from src.backoffice.webhooks.payments import PaymentWebhookService


def _get_component(request: Request, name: str) -> Any:
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Component '{name}' is not available.",
        )
    return component


def get_sync_queue(request: Request) -> SyncJobQueue:
    return _get_component(request, "sync_queue")


def get_sync_service(request: Request) -> SyncService:
    return _get_component(request, "sync_service")


def get_queue_processor(request: Request) -> QueueProcessor:
    return _get_component(request, "queue_processor")


def get_reconciler(request: Request) -> ReconciliationReporter:
    return _get_component(request, "reconciler")


def get_payment_webhooks(request: Request) -> PaymentWebhookService:
    return _get_component(request, "payment_webhooks")


def get_notion_webhooks(request: Request) -> NotionWebhookService:
    return _get_component(request, "notion_webhooks")
