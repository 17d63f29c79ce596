"""Business entity models -- the relational source of truth.

Lead, Project, Milestone and Deliverable each carry the Notion sync overlay
(notion_page_id, sync_status, last_synced_at, sync_error) via SyncableMixin.
Client and Payment are plain records written by the payment webhook flow.

Identifiers are application-generated UUID strings so the same schema runs
on PostgreSQL and SQLite. No foreign key constraints: referential integrity
is application-level, matching the repository pattern.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from src.backoffice.core.clock import utcnow
from src.backoffice.core.database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class SyncableMixin:
    """Sync metadata overlaid on entities mirrored into the Notion workspace.

    Written only by the queue processor and inbound event ingestion.
    """

    notion_page_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    sync_status: Mapped[str] = mapped_column(String(20), default="PENDING", nullable=False)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


class Lead(SyncableMixin, TimestampMixin, Base):
    """Inbound prospect captured by the intake form."""

    __tablename__ = "leads"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    project_address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    project_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    budget_range: Mapped[str | None] = mapped_column(String(50), nullable=True)
    timeline: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="NEW", nullable=False)
    recommended_tier: Mapped[int | None] = mapped_column(Integer, nullable=True)
    has_survey: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    has_drawings: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    routing_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)


class Client(TimestampMixin, Base):
    """Paying customer, created when a checkout completes."""

    __tablename__ = "clients"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)


class Project(SyncableMixin, TimestampMixin, Base):
    """Paid engagement for a client."""

    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    status: Mapped[str] = mapped_column(String(30), default="INTAKE", nullable=False)
    tier: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payment_status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    project_address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    client_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    lead_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)


class Milestone(SyncableMixin, TimestampMixin, Base):
    """Checkpoint within a project, mirrored as a to-do on the project page."""

    __tablename__ = "milestones"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="PENDING", nullable=False)
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class Deliverable(SyncableMixin, TimestampMixin, Base):
    """File delivered to a client as part of a project."""

    __tablename__ = "deliverables"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    file_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    uploaded_by: Mapped[str | None] = mapped_column(String(200), nullable=True)


class Payment(TimestampMixin, Base):
    """Payment attempt tracked against a Stripe checkout session / intent."""

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    project_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    lead_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    provider_session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)  # minor units
    currency: Mapped[str] = mapped_column(String(10), default="usd", nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="PENDING", nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
