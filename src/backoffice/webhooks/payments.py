"""Stripe webhook ingestion.

Verifies the ``Stripe-Signature`` header against the raw body, short-circuits
events already in the processed-event ledger, dispatches the three handled
event types to PaymentHandlers, and appends the event id to the ledger once
handling finished.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from src.backoffice.core.exceptions import MalformedPayloadError, SignatureVerificationError
from src.backoffice.core.monitoring import record_webhook_event
from src.backoffice.payments.service import PaymentHandlers
from src.backoffice.sync.repository import EntityStore
from src.backoffice.sync.schemas import PaymentWebhookResult

logger = structlog.get_logger(__name__)


def parse_signature_header(header: str) -> tuple[int | None, list[str]]:
    """Split ``t=<ts>,v1=<sig>[,v1=<sig>...]`` into timestamp and v1 signatures."""
    timestamp: int | None = None
    signatures: list[str] = []
    for item in header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                timestamp = None
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def verify_stripe_signature(
    raw_body: bytes,
    signature_header: str | None,
    secret: str,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> None:
    """Raise SignatureVerificationError unless the header signs ``raw_body``.

    The signed payload is ``"{t}.{raw_body}"`` (HMAC-SHA256, hex). Any one
    matching v1 signature is accepted, which covers secret rotation.
    """
    if not signature_header:
        raise SignatureVerificationError("MISSING_SIGNATURE", "Missing Stripe signature")
    if not raw_body:
        raise SignatureVerificationError("MISSING_BODY", "Missing request body")

    timestamp, signatures = parse_signature_header(signature_header)
    if timestamp is None or not signatures:
        raise SignatureVerificationError(
            "INVALID_SIGNATURE", "Unable to extract timestamp and signatures from header"
        )

    current = time.time() if now is None else now
    if tolerance_seconds > 0 and abs(current - timestamp) > tolerance_seconds:
        raise SignatureVerificationError(
            "INVALID_SIGNATURE", "Timestamp outside the tolerance zone"
        )

    signed_payload = f"{timestamp}.".encode() + raw_body
    expected = hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise SignatureVerificationError(
            "INVALID_SIGNATURE", "No signatures found matching the expected signature"
        )


class PaymentWebhookService:
    """Verify, de-duplicate and dispatch Stripe events.

    Args:
        store: EntityStore holding the processed-event ledger.
        handlers: PaymentHandlers applying events to business records.
        signing_secret: Stripe endpoint secret (``whsec_...``).
        tolerance_seconds: Maximum signature timestamp age.
    """

    def __init__(
        self,
        store: EntityStore,
        handlers: PaymentHandlers,
        signing_secret: str,
        tolerance_seconds: int = 300,
    ) -> None:
        self._store = store
        self._handlers = handlers
        self._secret = signing_secret
        self._tolerance = tolerance_seconds
        self._dispatch: dict[str, Callable[[dict[str, Any]], Awaitable[bool]]] = {
            "checkout.session.completed": handlers.handle_checkout_completed,
            "payment_intent.succeeded": handlers.handle_payment_succeeded,
            "payment_intent.payment_failed": handlers.handle_payment_failed,
        }

    async def handle(self, raw_body: bytes, signature_header: str | None) -> PaymentWebhookResult:
        try:
            verify_stripe_signature(raw_body, signature_header, self._secret, self._tolerance)
        except SignatureVerificationError as exc:
            logger.warning("webhook.payment_signature_rejected", code=exc.code, error=exc.message)
            record_webhook_event("stripe", "rejected")
            raise

        event = self._parse(raw_body)
        event_id = event["id"]
        event_type = event["type"]
        log = logger.bind(event_id=event_id, event_type=event_type)
        log.info("webhook.payment_received")

        if await self._store.is_event_processed(event_id):
            log.info("webhook.payment_duplicate")
            record_webhook_event("stripe", "duplicate")
            return PaymentWebhookResult(
                event_id=event_id,
                event_type=event_type,
                processed=False,
                message="Event already processed",
            )

        handler = self._dispatch.get(event_type)
        if handler is None:
            log.info("webhook.payment_unhandled_type")
            processed = False
            message = f"Unhandled event type: {event_type}"
        else:
            obj = (event.get("data") or {}).get("object") or {}
            processed = await handler(obj)
            message = None

        await self._store.record_processed_event(event_id, event_type, {"processed": processed})
        record_webhook_event("stripe", "processed" if processed else "ignored")
        log.info("webhook.payment_handled", processed=processed)
        return PaymentWebhookResult(
            event_id=event_id,
            event_type=event_type,
            processed=processed,
            message=message,
        )

    @staticmethod
    def _parse(raw_body: bytes) -> dict[str, Any]:
        try:
            event = json.loads(raw_body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise MalformedPayloadError(f"Invalid JSON body: {exc}") from exc
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise MalformedPayloadError("Event must carry id and type")
        return event
