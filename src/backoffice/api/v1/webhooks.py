"""Inbound webhook endpoints (Stripe, Notion).

Both endpoints read the raw body (signatures are computed over the exact
bytes), run their service under WEBHOOK_TIMEOUT_SECONDS, and translate
domain errors into 400 ``{error, code}`` responses. A timeout answers 503
so the sender redelivers.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from src.backoffice.api.deps import get_notion_webhooks, get_payment_webhooks
from src.backoffice.config import get_settings
from src.backoffice.core.exceptions import MalformedPayloadError, SignatureVerificationError
from src.backoffice.webhooks.notion import NotionWebhookService
from src.backoffice.webhooks.payments import PaymentWebhookService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _client_error(error: str, code: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": error, "code": code},
    )


def _timeout_response(source: str) -> JSONResponse:
    logger.error("webhook.timeout", source=source)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": "Webhook processing timed out", "code": "TIMEOUT"},
    )


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    service: PaymentWebhookService = Depends(get_payment_webhooks),
) -> Any:
    """Stripe event receiver. 400 on signature/body problems."""
    raw_body = await request.body()
    signature = request.headers.get("Stripe-Signature")
    try:
        result = await asyncio.wait_for(
            service.handle(raw_body, signature),
            timeout=get_settings().WEBHOOK_TIMEOUT_SECONDS,
        )
    except SignatureVerificationError as exc:
        return _client_error(exc.message, exc.code)
    except MalformedPayloadError as exc:
        return _client_error(str(exc), exc.code)
    except asyncio.TimeoutError:
        return _timeout_response("stripe")

    return result.model_dump(by_alias=True, exclude_none=True)


@router.post("/notion")
async def notion_webhook(
    request: Request,
    service: NotionWebhookService = Depends(get_notion_webhooks),
) -> Any:
    """Notion receiver: echoes the handshake challenge, syncs change events."""
    raw_body = await request.body()
    try:
        result = await asyncio.wait_for(
            service.handle(
                raw_body,
                request.headers.get("X-Notion-Signature"),
                request.headers.get("X-Notion-Timestamp"),
            ),
            timeout=get_settings().WEBHOOK_TIMEOUT_SECONDS,
        )
    except SignatureVerificationError as exc:
        return _client_error(exc.message, exc.code)
    except MalformedPayloadError as exc:
        return _client_error(str(exc), exc.code)
    except asyncio.TimeoutError:
        return _timeout_response("notion")

    if isinstance(result, dict):
        return result
    return result.model_dump(by_alias=True)
