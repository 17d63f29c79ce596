"""Pydantic schemas and enums for the Notion sync subsystem.

Defines:
- Enums: EntityType, SyncOperation, JobStatus, EntitySyncStatus, ReconciliationStatus
- Queue payloads: SyncJob, QueueStatus, DrainSummary
- Adapter results: AdapterResult, PageSnapshot, PagePayload
- Reconciliation: Discrepancy, ReconciliationReport
- Webhook responses: PaymentWebhookResult, NotionWebhookResult
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from src.backoffice.core.clock import utcnow


# ── Enums ───────────────────────────────────────────────────────────────────


class EntityType(str, Enum):
    """Entity kinds mirrored into the Notion workspace."""

    LEAD = "LEAD"
    PROJECT = "PROJECT"
    MILESTONE = "MILESTONE"
    DELIVERABLE = "DELIVERABLE"


class SyncOperation(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class JobStatus(str, Enum):
    """Lifecycle of a SyncJob row. SYNCED and FAILED are terminal."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"


class EntitySyncStatus(str, Enum):
    """Sync overlay status stored on each syncable entity."""

    PENDING = "PENDING"
    SYNCING = "SYNCING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"


class ReconciliationStatus(str, Enum):
    HEALTHY = "healthy"
    MOSTLY_SYNCED = "mostly_synced"
    NEEDS_ATTENTION = "needs_attention"
    ERROR = "error"


# Parents sync before children so milestone/deliverable pages can link back.
DEFAULT_PRIORITIES: dict[EntityType, int] = {
    EntityType.PROJECT: 6,
    EntityType.MILESTONE: 5,
    EntityType.DELIVERABLE: 5,
    EntityType.LEAD: 4,
}


# ── Queue ───────────────────────────────────────────────────────────────────


class SyncJob(BaseModel):
    """Read model for a sync_jobs row."""

    id: int
    entity_type: EntityType
    entity_id: str
    operation: SyncOperation
    status: JobStatus
    priority: int = 0
    retry_count: int = 0
    max_retries: int = 3
    last_error: str | None = None
    notion_page_id: str | None = None
    payload: dict[str, Any] | None = None
    scheduled_for: datetime | None = None
    rerun_requested: bool = False
    claimed_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class QueueStatus(BaseModel):
    """Aggregate queue health for the operator status endpoint."""

    counts: dict[str, int] = Field(default_factory=dict)
    by_entity_type: dict[str, dict[str, int]] = Field(default_factory=dict)
    oldest_pending_age_seconds: float | None = None


class DrainSummary(BaseModel):
    """Outcome counts for one drain pass of the queue processor."""

    processed: int = 0
    synced: int = 0
    retried: int = 0
    failed: int = 0


# ── Remote Workspace ────────────────────────────────────────────────────────


class AdapterResult(BaseModel):
    """Typed outcome of a remote workspace call.

    Failures carry a reason string instead of raising, so the processor can
    map them straight onto the retry state machine.
    """

    success: bool
    page_id: str | None = None
    error: str | None = None

    @classmethod
    def ok(cls, page_id: str | None = None) -> AdapterResult:
        return cls(success=True, page_id=page_id)

    @classmethod
    def failure(cls, error: str) -> AdapterResult:
        return cls(success=False, error=error)


class PageSnapshot(BaseModel):
    """Subset of a Notion page object used for comparison."""

    id: str
    properties: dict[str, Any] = Field(default_factory=dict)
    last_edited_time: datetime | None = None
    archived: bool = False
    url: str | None = None


class PagePayload(BaseModel):
    """Properties and content blocks for creating a Notion page."""

    properties: dict[str, Any] = Field(default_factory=dict)
    children: list[dict[str, Any]] = Field(default_factory=list)


# ── Reconciliation ──────────────────────────────────────────────────────────


class DiscrepancyIssue(BaseModel):
    """One field-level difference between local and remote state.

    ``field`` is one of name, status, timestamp, notion_access.
    """

    field: str
    local_value: Any = None
    remote_value: Any = None
    time_diff_seconds: int | None = None
    error: str | None = None


class Discrepancy(BaseModel):
    """All issues found for one linked entity."""

    entity_type: EntityType
    entity_id: str
    notion_page_id: str | None = None
    issues: list[DiscrepancyIssue] = Field(default_factory=list)


class NotionSummary(BaseModel):
    total: int = 0
    in_sync: int = 0


class LocalSummary(BaseModel):
    total: int = 0
    linked: int = 0
    unlinked: int = 0


class ReconciliationReport(BaseModel):
    """Read-only diff between the entity store and the Notion workspace."""

    status: ReconciliationStatus
    timestamp: datetime = Field(default_factory=utcnow)
    notion: NotionSummary = Field(default_factory=NotionSummary)
    postgres: LocalSummary = Field(default_factory=LocalSummary)
    discrepancies: list[Discrepancy] = Field(default_factory=list)
    discrepancy_count: int = 0
    error: str | None = None


# ── Webhook Responses ───────────────────────────────────────────────────────


class PaymentWebhookResult(BaseModel):
    """Response body for the Stripe webhook endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    received: bool = True
    event_id: str = Field(serialization_alias="eventId")
    event_type: str = Field(serialization_alias="eventType")
    processed: bool = False
    message: str | None = None


class NotionWebhookResult(BaseModel):
    """Response body for substantive Notion change events."""

    model_config = ConfigDict(populate_by_name=True)

    received: bool = True
    synced: bool = False
    correlation_id: str = Field(serialization_alias="correlationId")
