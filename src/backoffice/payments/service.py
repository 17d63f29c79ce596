"""Payment domain handlers.

Turns verified Stripe objects into business records: a completed checkout
converts a lead into a client + paid project, and payment-intent events
update the matching Payment row. Every business write is followed by a
Notion sync enqueue so the workspace reflects the new state.

Handlers return True when they changed something and False when the event
was valid but had nothing to act on. Database errors propagate so the
webhook responds 5xx and Stripe redelivers.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.backoffice.core.clock import utcnow
from src.backoffice.models.entities import Client, Lead, Payment, Project
from src.backoffice.sync.schemas import EntityType
from src.backoffice.sync.service import SyncService

logger = structlog.get_logger(__name__)

# Fallback amounts (cents) when the session carries no amount_total.
TIER_PRICES: dict[int, int] = {1: 29900, 2: 149900, 3: 499900, 4: 0}


def _parse_tier(value: Any) -> int | None:
    try:
        tier = int(value)
    except (TypeError, ValueError):
        return None
    return tier if tier in TIER_PRICES else None


class PaymentHandlers:
    """Apply Stripe checkout and payment-intent events to the entity store.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        sync_service: SyncService for Notion enqueues. None when Notion sync
            is not configured; business writes still happen.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        sync_service: SyncService | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._sync = sync_service

    async def handle_checkout_completed(self, session_obj: dict[str, Any]) -> bool:
        metadata = session_obj.get("metadata") or {}
        lead_id = metadata.get("leadId") or metadata.get("lead_id")
        checkout_id = session_obj.get("id")
        if not lead_id:
            logger.warning("payment.checkout_missing_lead", session_id=checkout_id)
            return False
        tier = _parse_tier(metadata.get("tier"))
        existing_project_id = metadata.get("projectId") or None

        project_created = False
        async for session in self._session_factory():
            duplicate = await session.execute(
                select(Payment.id).where(Payment.provider_session_id == checkout_id).limit(1)
            )
            if duplicate.scalar_one_or_none() is not None:
                logger.info("payment.checkout_already_recorded", session_id=checkout_id)
                return False

            lead = await session.get(Lead, lead_id)
            if lead is None:
                logger.warning("payment.checkout_unknown_lead", lead_id=lead_id)
                return False

            email = (
                lead.email
                or session_obj.get("customer_email")
                or (session_obj.get("customer_details") or {}).get("email")
            )
            result = await session.execute(select(Client).where(Client.email == email))
            client = result.scalar_one_or_none()
            if client is None:
                client = Client(name=lead.name, email=email)
                session.add(client)
                await session.flush()

            project = None
            if existing_project_id:
                project = await session.get(Project, existing_project_id)
            if project is None:
                project = Project(
                    name=f"{lead.project_address or lead.name or email} Project",
                    status="ONBOARDING",
                    tier=tier,
                    payment_status="paid",
                    project_address=lead.project_address,
                    client_id=client.id,
                    lead_id=lead.id,
                )
                session.add(project)
                await session.flush()
                project_created = True
            else:
                project.payment_status = "paid"
                project.status = "IN_PROGRESS"

            amount = session_obj.get("amount_total")
            if amount is None:
                amount = TIER_PRICES.get(tier or 0, 0)
            session.add(
                Payment(
                    project_id=project.id,
                    lead_id=lead.id,
                    provider_session_id=checkout_id,
                    provider_payment_id=session_obj.get("payment_intent") or checkout_id,
                    amount=amount,
                    currency=session_obj.get("currency") or "usd",
                    status="SUCCEEDED",
                    paid_at=utcnow(),
                )
            )
            lead.status = "CONVERTED"
            await session.commit()
            project_id = project.id

        logger.info(
            "payment.checkout_completed",
            session_id=checkout_id,
            lead_id=lead_id,
            project_id=project_id,
            project_created=project_created,
            tier=tier,
        )

        if self._sync is not None:
            if project_created:
                await self._sync.on_entity_created(EntityType.PROJECT, project_id)
            else:
                await self._sync.on_entity_updated(EntityType.PROJECT, project_id)
            await self._sync.on_entity_updated(EntityType.LEAD, lead_id)
        return True

    async def handle_payment_succeeded(self, intent: dict[str, Any]) -> bool:
        intent_id = intent.get("id")
        async for session in self._session_factory():
            payment = await self._find_payment(session, intent_id)
            if payment is None:
                logger.info("payment.intent_unmatched", payment_intent=intent_id)
                return False
            payment.status = "SUCCEEDED"
            payment.failure_reason = None
            payment.paid_at = payment.paid_at or utcnow()
            project_id = payment.project_id
            if project_id:
                project = await session.get(Project, project_id)
                if project is not None:
                    project.payment_status = "paid"
            await session.commit()

        logger.info("payment.intent_succeeded", payment_intent=intent_id, project_id=project_id)
        await self._sync_project(project_id)
        return True

    async def handle_payment_failed(self, intent: dict[str, Any]) -> bool:
        intent_id = intent.get("id")
        reason = (intent.get("last_payment_error") or {}).get("message")
        async for session in self._session_factory():
            payment = await self._find_payment(session, intent_id)
            if payment is None:
                logger.info("payment.intent_unmatched", payment_intent=intent_id)
                return False
            payment.status = "FAILED"
            payment.failure_reason = reason
            project_id = payment.project_id
            if project_id:
                project = await session.get(Project, project_id)
                if project is not None:
                    project.payment_status = "failed"
            await session.commit()

        logger.warning(
            "payment.intent_failed",
            payment_intent=intent_id,
            project_id=project_id,
            reason=reason,
        )
        await self._sync_project(project_id)
        return True

    @staticmethod
    async def _find_payment(session: AsyncSession, intent_id: str | None) -> Payment | None:
        if not intent_id:
            return None
        result = await session.execute(
            select(Payment).where(Payment.provider_payment_id == intent_id).limit(1)
        )
        return result.scalar_one_or_none()

    async def _sync_project(self, project_id: str | None) -> None:
        if self._sync is not None and project_id:
            await self._sync.on_entity_updated(EntityType.PROJECT, project_id)
