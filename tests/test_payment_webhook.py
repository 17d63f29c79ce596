"""Tests for Stripe webhook verification, idempotency and payment handlers.

Signatures are computed with the same HMAC-SHA256 scheme Stripe uses, so
the tests exercise the real verification path end to end.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from src.backoffice.core.exceptions import MalformedPayloadError, SignatureVerificationError
from src.backoffice.models.entities import Client, Lead, Payment, Project
from src.backoffice.payments.service import PaymentHandlers
from src.backoffice.sync.schemas import EntityType, SyncOperation
from src.backoffice.sync.service import SyncService
from src.backoffice.webhooks.payments import (
    PaymentWebhookService,
    parse_signature_header,
    verify_stripe_signature,
)

SECRET = "whsec_test"


# ── Helpers ──────────────────────────────────────────────────────────────────


def _sign(body: bytes, secret: str = SECRET, timestamp: int | None = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode(), f"{ts}.".encode() + body, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def _event(event_id: str, event_type: str, obj: dict) -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode()


def _checkout(lead_id: str, session_id: str = "cs_1", **extra) -> dict:
    obj = {
        "id": session_id,
        "metadata": {"leadId": lead_id, "tier": "2"},
        "amount_total": 149900,
        "currency": "usd",
        "payment_intent": "pi_1",
    }
    obj.update(extra)
    return obj


async def _all(session_factory, model) -> list:
    async for session in session_factory():
        return list((await session.execute(select(model))).scalars().all())


@pytest.fixture
def sync_service(queue, store) -> SyncService:
    return SyncService(queue=queue, store=store)


@pytest.fixture
def payment_handlers(session_factory, sync_service) -> PaymentHandlers:
    return PaymentHandlers(session_factory, sync_service)


@pytest.fixture
def service(store, payment_handlers) -> PaymentWebhookService:
    return PaymentWebhookService(store=store, handlers=payment_handlers, signing_secret=SECRET)


# ── Signature Verification ───────────────────────────────────────────────────


class TestVerifySignature:
    def test_parse_header(self) -> None:
        assert parse_signature_header("t=12,v1=aa,v0=zz,v1=bb") == (12, ["aa", "bb"])
        assert parse_signature_header("garbage") == (None, [])

    def test_valid(self) -> None:
        body = b'{"id":"evt_1"}'
        verify_stripe_signature(body, _sign(body), SECRET)

    def test_missing_header(self) -> None:
        with pytest.raises(SignatureVerificationError) as exc_info:
            verify_stripe_signature(b"{}", None, SECRET)
        assert exc_info.value.code == "MISSING_SIGNATURE"

    def test_missing_body(self) -> None:
        with pytest.raises(SignatureVerificationError) as exc_info:
            verify_stripe_signature(b"", _sign(b""), SECRET)
        assert exc_info.value.code == "MISSING_BODY"

    def test_wrong_secret(self) -> None:
        body = b'{"id":"evt_1"}'
        with pytest.raises(SignatureVerificationError) as exc_info:
            verify_stripe_signature(body, _sign(body, secret="whsec_other"), SECRET)
        assert exc_info.value.code == "INVALID_SIGNATURE"

    def test_stale_timestamp(self) -> None:
        body = b'{"id":"evt_1"}'
        header = _sign(body, timestamp=1_000_000)
        with pytest.raises(SignatureVerificationError):
            verify_stripe_signature(body, header, SECRET, tolerance_seconds=300, now=1_000_301)
        verify_stripe_signature(body, header, SECRET, tolerance_seconds=300, now=1_000_299)

    def test_any_matching_v1_accepted(self) -> None:
        body = b'{"id":"evt_1"}'
        good = _sign(body)
        ts, sigs = parse_signature_header(good)
        header = f"t={ts},v1={'0' * 64},v1={sigs[0]}"
        verify_stripe_signature(body, header, SECRET)


# ── Webhook Service ──────────────────────────────────────────────────────────


class TestPaymentWebhookService:
    @pytest.mark.asyncio
    async def test_rejects_bad_signature(self, service) -> None:
        body = _event("evt_1", "checkout.session.completed", {})
        with pytest.raises(SignatureVerificationError):
            await service.handle(body, "t=1,v1=deadbeef")

    @pytest.mark.asyncio
    async def test_replay_does_not_reinvoke_handler(self, store) -> None:
        handlers = MagicMock(spec=PaymentHandlers)
        handlers.handle_checkout_completed = AsyncMock(return_value=True)
        handlers.handle_payment_succeeded = AsyncMock(return_value=True)
        handlers.handle_payment_failed = AsyncMock(return_value=True)
        service = PaymentWebhookService(store=store, handlers=handlers, signing_secret=SECRET)
        body = _event("evt_1", "checkout.session.completed", {"id": "cs_1"})

        first = await service.handle(body, _sign(body))
        second = await service.handle(body, _sign(body))

        assert first.processed is True
        assert second.processed is False
        assert second.message == "Event already processed"
        assert handlers.handle_checkout_completed.await_count == 1
        assert await store.is_event_processed("evt_1") is True

    @pytest.mark.asyncio
    async def test_unhandled_type_acknowledged(self, service, store) -> None:
        body = _event("evt_2", "customer.created", {})

        result = await service.handle(body, _sign(body))

        assert result.processed is False
        assert result.message == "Unhandled event type: customer.created"
        assert await store.is_event_processed("evt_2") is True

    @pytest.mark.asyncio
    async def test_event_without_id_is_malformed(self, service) -> None:
        body = json.dumps({"type": "checkout.session.completed"}).encode()
        with pytest.raises(MalformedPayloadError):
            await service.handle(body, _sign(body))


# ── Checkout ─────────────────────────────────────────────────────────────────


class TestCheckoutCompleted:
    @pytest.mark.asyncio
    async def test_converts_lead(self, service, session_factory, queue, seed) -> None:
        lead = await seed(
            Lead(email="ann@example.com", name="Ann", project_address="1 Main St")
        )
        body = _event("evt_1", "checkout.session.completed", _checkout(lead.id))

        result = await service.handle(body, _sign(body))

        assert result.processed is True
        [client] = await _all(session_factory, Client)
        assert client.email == "ann@example.com"
        [project] = await _all(session_factory, Project)
        assert project.name == "1 Main St Project"
        assert project.status == "ONBOARDING"
        assert project.payment_status == "paid"
        assert project.tier == 2
        assert project.client_id == client.id
        [payment] = await _all(session_factory, Payment)
        assert payment.amount == 149900
        assert payment.provider_payment_id == "pi_1"
        assert payment.status == "SUCCEEDED"
        [converted] = await _all(session_factory, Lead)
        assert converted.status == "CONVERTED"

        project_job = await queue.outstanding_for(EntityType.PROJECT, project.id)
        assert project_job.operation == SyncOperation.CREATE
        assert await queue.outstanding_for(EntityType.LEAD, lead.id) is not None

    @pytest.mark.asyncio
    async def test_amount_falls_back_to_tier_price(self, payment_handlers, session_factory, seed) -> None:
        lead = await seed(Lead(email="ann@example.com"))
        obj = _checkout(lead.id)
        del obj["amount_total"]
        obj["metadata"]["tier"] = "1"

        assert await payment_handlers.handle_checkout_completed(obj) is True
        [payment] = await _all(session_factory, Payment)
        assert payment.amount == 29900

    @pytest.mark.asyncio
    async def test_existing_project_marked_in_progress(
        self, payment_handlers, session_factory, queue, seed
    ) -> None:
        lead = await seed(Lead(email="ann@example.com"))
        project = await seed(Project(name="Garden", status="ONBOARDING", notion_page_id="page-1"))
        obj = _checkout(lead.id)
        obj["metadata"]["projectId"] = project.id

        assert await payment_handlers.handle_checkout_completed(obj) is True

        [reloaded] = await _all(session_factory, Project)
        assert reloaded.status == "IN_PROGRESS"
        assert reloaded.payment_status == "paid"
        job = await queue.outstanding_for(EntityType.PROJECT, project.id)
        assert job.operation == SyncOperation.UPDATE

    @pytest.mark.asyncio
    async def test_same_session_twice_creates_one_payment(
        self, service, session_factory, seed
    ) -> None:
        lead = await seed(Lead(email="ann@example.com"))
        first = _event("evt_1", "checkout.session.completed", _checkout(lead.id))
        second = _event("evt_2", "checkout.session.completed", _checkout(lead.id))

        assert (await service.handle(first, _sign(first))).processed is True
        assert (await service.handle(second, _sign(second))).processed is False
        assert len(await _all(session_factory, Payment)) == 1
        assert len(await _all(session_factory, Project)) == 1

    @pytest.mark.asyncio
    async def test_missing_or_unknown_lead(self, payment_handlers, session_factory) -> None:
        assert await payment_handlers.handle_checkout_completed({"id": "cs_1", "metadata": {}}) is False
        assert await payment_handlers.handle_checkout_completed(_checkout("no-such-lead")) is False
        assert await _all(session_factory, Payment) == []

    @pytest.mark.asyncio
    async def test_without_sync_service(self, session_factory, seed) -> None:
        handlers = PaymentHandlers(session_factory)
        lead = await seed(Lead(email="ann@example.com"))
        assert await handlers.handle_checkout_completed(_checkout(lead.id)) is True


# ── Payment Intents ──────────────────────────────────────────────────────────


class TestPaymentIntents:
    @pytest.mark.asyncio
    async def test_failure_then_success(self, payment_handlers, session_factory, queue, seed) -> None:
        project = await seed(Project(name="Garden", payment_status="pending"))
        await seed(
            Payment(project_id=project.id, provider_payment_id="pi_9", amount=100, status="PENDING")
        )

        failed = {"id": "pi_9", "last_payment_error": {"message": "Card declined"}}
        assert await payment_handlers.handle_payment_failed(failed) is True
        [payment] = await _all(session_factory, Payment)
        assert payment.status == "FAILED"
        assert payment.failure_reason == "Card declined"
        assert (await _all(session_factory, Project))[0].payment_status == "failed"
        assert await queue.outstanding_for(EntityType.PROJECT, project.id) is not None

        assert await payment_handlers.handle_payment_succeeded({"id": "pi_9"}) is True
        [payment] = await _all(session_factory, Payment)
        assert payment.status == "SUCCEEDED"
        assert payment.failure_reason is None
        assert payment.paid_at is not None
        assert (await _all(session_factory, Project))[0].payment_status == "paid"

    @pytest.mark.asyncio
    async def test_unknown_intent(self, payment_handlers) -> None:
        assert await payment_handlers.handle_payment_succeeded({"id": "pi_unknown"}) is False
        assert await payment_handlers.handle_payment_failed({}) is False


# ── HTTP ─────────────────────────────────────────────────────────────────────


def _make_app(service: PaymentWebhookService | None) -> FastAPI:
    from src.backoffice.api.v1.webhooks import router

    app = FastAPI()
    app.include_router(router)
    app.state.payment_webhooks = service
    return app


class TestStripeEndpoint:
    @pytest.mark.asyncio
    async def test_missing_signature_is_400(self, service) -> None:
        transport = ASGITransport(app=_make_app(service))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post("/webhooks/stripe", content=b'{"id":"evt_1"}')

        assert response.status_code == 400
        assert response.json() == {"error": "Missing Stripe signature", "code": "MISSING_SIGNATURE"}

    @pytest.mark.asyncio
    async def test_invalid_signature_is_400(self, service) -> None:
        transport = ASGITransport(app=_make_app(service))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post(
                "/webhooks/stripe",
                content=b'{"id":"evt_1"}',
                headers={"Stripe-Signature": "t=1,v1=abc"},
            )

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_SIGNATURE"

    @pytest.mark.asyncio
    async def test_valid_event(self, service) -> None:
        body = _event("evt_7", "invoice.paid", {})
        transport = ASGITransport(app=_make_app(service))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post(
                "/webhooks/stripe", content=body, headers={"Stripe-Signature": _sign(body)}
            )

        assert response.status_code == 200
        assert response.json() == {
            "received": True,
            "eventId": "evt_7",
            "eventType": "invoice.paid",
            "processed": False,
            "message": "Unhandled event type: invoice.paid",
        }

    @pytest.mark.asyncio
    async def test_not_configured_is_503(self) -> None:
        transport = ASGITransport(app=_make_app(None))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post("/webhooks/stripe", content=b"{}")

        assert response.status_code == 503
