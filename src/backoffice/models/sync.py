"""Sync bookkeeping tables: job queue, payment event ledger, event log.

- SyncJobModel: durable queue of outstanding Notion sync intents. A partial
  unique index keeps at most one PENDING/PROCESSING row per entity.
- ProcessedEventModel: append-only ledger of handled Stripe event ids.
- SyncEventLogModel: audit trail of sync activity, also used to de-duplicate
  inbound Notion change events by page id and last-edited time.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from src.backoffice.core.clock import utcnow
from src.backoffice.core.database import Base

_OUTSTANDING = text("status IN ('PENDING', 'PROCESSING')")


class SyncJobModel(Base):
    """One queued intent to propagate an entity's state to Notion.

    Integer primary key doubles as insertion order for FIFO tie-breaking.
    """

    __tablename__ = "sync_jobs"
    __table_args__ = (
        Index(
            "uq_sync_jobs_outstanding_entity",
            "entity_type",
            "entity_id",
            unique=True,
            postgresql_where=_OUTSTANDING,
            sqlite_where=_OUTSTANDING,
        ),
        Index("ix_sync_jobs_claim", "status", "priority", "scheduled_for"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False)
    operation: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="PENDING", nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    notion_page_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    scheduled_for: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rerun_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


class ProcessedEventModel(Base):
    """Stripe event id recorded once fully handled. Never updated."""

    __tablename__ = "processed_events"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class SyncEventLogModel(Base):
    """Audit record of sync activity, keyed by remote page id for lookups."""

    __tablename__ = "sync_event_log"
    __table_args__ = (
        Index("ix_sync_event_log_page_created", "remote_page_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    remote_page_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    remote_edited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
