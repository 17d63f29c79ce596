"""Notion webhook ingestion.

Handles the registration handshake and page change events. A change event
names a page id and (usually) its last-edited time; the service resolves
the linked local entity, fetches the page once, and applies whitelisted
fields under last-write-wins: the remote value lands only when the remote
edit is strictly newer than the entity's ``updated_at``.

Every substantive event is written to the sync event log, which doubles as
the idempotency lookup for redeliveries.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog

from src.backoffice.core.clock import ensure_utc, parse_timestamp, utcnow
from src.backoffice.core.exceptions import (
    MalformedPayloadError,
    RemoteAccessError,
    SignatureVerificationError,
)
from src.backoffice.core.monitoring import record_webhook_event
from src.backoffice.sync.adapter import WorkspaceAdapter
from src.backoffice.sync.handlers.base import EntitySyncHandler
from src.backoffice.sync.repository import INBOUND_FIELD_WHITELIST, EntityStore
from src.backoffice.sync.schemas import EntityType, NotionWebhookResult

logger = structlog.get_logger(__name__)

CHALLENGE_TYPE = "webhook_challenge"

ACTION_APPLIED = "notion_event_applied"
ACTION_CONFLICT_SKIPPED = "notion_event_conflict_skipped"
ACTION_UNLINKED = "notion_event_unlinked"
ACTION_NOOP = "notion_event_noop"
ACTION_FETCH_FAILED = "notion_event_fetch_failed"


def verify_notion_signature(
    raw_body: bytes, signature_header: str | None, timestamp: str | None, secret: str
) -> None:
    """Check ``X-Notion-Signature: v1=<hex>`` over ``"{timestamp}.{body}"``."""
    if not signature_header or not timestamp:
        raise SignatureVerificationError("MISSING_SIGNATURE", "Missing Notion signature")
    version, _, signature = signature_header.partition("=")
    if version != "v1" or not signature:
        raise SignatureVerificationError("INVALID_SIGNATURE", "Unsupported signature format")
    signed = f"{timestamp}.".encode() + raw_body
    expected = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature):
        raise SignatureVerificationError("INVALID_SIGNATURE", "Notion signature mismatch")


def current_correlation_id() -> str:
    """Request id bound by LoggingMiddleware, or a fresh one outside requests."""
    request_id = structlog.contextvars.get_contextvars().get("request_id")
    return str(request_id) if request_id else str(uuid.uuid4())


class NotionWebhookService:
    """Process Notion webhook deliveries.

    Args:
        store: EntityStore for entity lookups, LWW writes and the event log.
        adapter: WorkspaceAdapter used for the single page fetch per event.
        handlers: Sync handlers keyed by entity type (remote field mapping).
        signing_secret: Verification secret; empty disables signature checks.
        recency_seconds: Window for de-duplicating events that carry no
            timestamp. Best effort only.
        clock: Injectable time source for tests.
    """

    def __init__(
        self,
        store: EntityStore,
        adapter: WorkspaceAdapter,
        handlers: dict[EntityType, EntitySyncHandler],
        *,
        signing_secret: str = "",
        recency_seconds: int = 60,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._adapter = adapter
        self._handlers = handlers
        self._secret = signing_secret
        self._recency_seconds = recency_seconds
        self._clock = clock

    async def handle(
        self,
        raw_body: bytes,
        signature_header: str | None = None,
        timestamp_header: str | None = None,
    ) -> dict[str, Any] | NotionWebhookResult:
        """Handle one delivery.

        Returns:
            ``{"challenge": value}`` for the handshake, otherwise a
            NotionWebhookResult.

        Raises:
            MalformedPayloadError: Body is not JSON or names no page.
            SignatureVerificationError: A secret is configured and the
                signature is missing or wrong.
        """
        payload = self._parse(raw_body)

        if payload.get("type") == CHALLENGE_TYPE:
            logger.info("webhook.notion_challenge")
            record_webhook_event("notion", "challenge")
            return {"challenge": payload.get("challenge")}

        if self._secret:
            try:
                verify_notion_signature(raw_body, signature_header, timestamp_header, self._secret)
            except SignatureVerificationError as exc:
                logger.warning("webhook.notion_signature_rejected", code=exc.code)
                record_webhook_event("notion", "rejected")
                raise

        obj = payload.get("object") or payload.get("entity") or {}
        page_id = obj.get("id") if isinstance(obj, dict) else None
        if not page_id:
            raise MalformedPayloadError("Notion event does not name a page id")
        edited_raw = obj.get("last_edited_time") or payload.get("timestamp")
        if edited_raw is not None and not isinstance(edited_raw, str):
            raise MalformedPayloadError("Notion event timestamp must be an ISO-8601 string")
        event_edited_at = parse_timestamp(edited_raw)

        correlation_id = current_correlation_id()
        log = logger.bind(
            page_id=page_id, event_type=payload.get("type"), correlation_id=correlation_id
        )

        if await self._already_handled(page_id, event_edited_at):
            log.info("webhook.notion_duplicate")
            record_webhook_event("notion", "duplicate")
            return NotionWebhookResult(synced=False, correlation_id=correlation_id)

        linked = await self._store.find_by_page_id(page_id)
        if linked is None:
            await self._store.record_event(
                ACTION_UNLINKED,
                remote_page_id=page_id,
                remote_edited_at=event_edited_at,
                correlation_id=correlation_id,
                details={"event_type": payload.get("type")},
            )
            log.info("webhook.notion_unlinked")
            record_webhook_event("notion", "unlinked")
            return NotionWebhookResult(synced=False, correlation_id=correlation_id)

        entity_type, entity = linked
        log = log.bind(entity_type=entity_type.value, entity_id=entity.id)

        try:
            page = await self._adapter.get_page(page_id)
        except RemoteAccessError as exc:
            # No timestamp on the record: a redelivery must not be skipped.
            await self._store.record_event(
                ACTION_FETCH_FAILED,
                entity_type=entity_type,
                entity_id=entity.id,
                remote_page_id=page_id,
                correlation_id=correlation_id,
                details={"error": str(exc)},
            )
            log.warning("webhook.notion_fetch_failed", error=str(exc))
            record_webhook_event("notion", "fetch_failed")
            return NotionWebhookResult(synced=False, correlation_id=correlation_id)

        remote_edited_at = ensure_utc(page.last_edited_time) or event_edited_at
        handler = self._handlers[entity_type]
        allowed = INBOUND_FIELD_WHITELIST[entity_type]
        remote = {k: v for k, v in handler.map_remote_fields(page).items() if k in allowed}
        local = handler.local_fields(entity)
        changed = {k: v for k, v in remote.items() if local.get(k) != v}

        applied = False
        if not changed:
            action = ACTION_NOOP
        elif remote_edited_at is None:
            action = ACTION_CONFLICT_SKIPPED
        else:
            applied = await self._store.apply_remote_fields(
                entity_type, entity.id, changed, remote_edited_at
            )
            action = ACTION_APPLIED if applied else ACTION_CONFLICT_SKIPPED

        local_updated_at = ensure_utc(entity.updated_at)
        await self._store.record_event(
            action,
            entity_type=entity_type,
            entity_id=entity.id,
            remote_page_id=page_id,
            remote_edited_at=remote_edited_at,
            correlation_id=correlation_id,
            details={
                "fields": changed,
                "previous": {k: local.get(k) for k in changed},
                "local_updated_at": local_updated_at.isoformat() if local_updated_at else None,
            },
        )
        log.info("webhook.notion_processed", action=action, fields=sorted(changed))
        record_webhook_event("notion", "applied" if applied else "skipped")
        return NotionWebhookResult(synced=applied, correlation_id=correlation_id)

    async def _already_handled(self, page_id: str, edited_at: datetime | None) -> bool:
        prior = await self._store.latest_event_for_page(page_id)
        if prior is None:
            return False
        prior_edited = ensure_utc(prior.remote_edited_at)
        if edited_at is not None:
            return prior_edited is not None and prior_edited >= edited_at
        age = (self._clock() - ensure_utc(prior.created_at)).total_seconds()
        return age < self._recency_seconds

    @staticmethod
    def _parse(raw_body: bytes) -> dict[str, Any]:
        if not raw_body:
            raise MalformedPayloadError("Empty request body")
        try:
            payload = json.loads(raw_body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise MalformedPayloadError(f"Invalid JSON body: {exc}") from exc
        if not isinstance(payload, dict):
            raise MalformedPayloadError("Notion event must be a JSON object")
        return payload
