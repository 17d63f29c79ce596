"""Initial schema: business entities, sync job queue, event ledger and log.

Revision ID: 001_sync_engine
Revises:
Create Date: 2026-10-18

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_sync_engine"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_SYNCED_TABLES = ("leads", "projects", "milestones", "deliverables")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def _sync_overlay() -> list[sa.Column]:
    return [
        sa.Column("notion_page_id", sa.String(64), nullable=True),
        sa.Column("sync_status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sync_error", sa.Text(), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "leads",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(200), nullable=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("project_address", sa.String(500), nullable=True),
        sa.Column("project_type", sa.String(100), nullable=True),
        sa.Column("budget_range", sa.String(50), nullable=True),
        sa.Column("timeline", sa.String(50), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="NEW"),
        sa.Column("recommended_tier", sa.Integer(), nullable=True),
        sa.Column("has_survey", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("has_drawings", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("routing_reason", sa.Text(), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        *_sync_overlay(),
        *_timestamps(),
    )
    op.create_index("ix_leads_email", "leads", ["email"])

    op.create_table(
        "clients",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(200), nullable=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        *_timestamps(),
    )

    op.create_table(
        "projects",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("status", sa.String(30), nullable=False, server_default="INTAKE"),
        sa.Column("tier", sa.Integer(), nullable=True),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("project_address", sa.String(500), nullable=True),
        sa.Column("client_id", sa.String(36), nullable=True),
        sa.Column("lead_id", sa.String(36), nullable=True),
        *_sync_overlay(),
        *_timestamps(),
    )
    op.create_index("ix_projects_client_id", "projects", ["client_id"])
    op.create_index("ix_projects_lead_id", "projects", ["lead_id"])

    op.create_table(
        "milestones",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("project_id", sa.String(36), nullable=False),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        *_sync_overlay(),
        *_timestamps(),
    )
    op.create_index("ix_milestones_project_id", "milestones", ["project_id"])

    op.create_table(
        "deliverables",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("project_id", sa.String(36), nullable=False),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(50), nullable=True),
        sa.Column("file_url", sa.String(1000), nullable=True),
        sa.Column("file_size", sa.Integer(), nullable=True),
        sa.Column("mime_type", sa.String(100), nullable=True),
        sa.Column("uploaded_by", sa.String(200), nullable=True),
        *_sync_overlay(),
        *_timestamps(),
    )
    op.create_index("ix_deliverables_project_id", "deliverables", ["project_id"])

    for table in _SYNCED_TABLES:
        op.create_index(f"ix_{table}_notion_page_id", table, ["notion_page_id"])

    op.create_table(
        "payments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("project_id", sa.String(36), nullable=True),
        sa.Column("lead_id", sa.String(36), nullable=True),
        sa.Column("provider_session_id", sa.String(255), nullable=True),
        sa.Column("provider_payment_id", sa.String(255), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(10), nullable=False, server_default="usd"),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_payments_project_id", "payments", ["project_id"])
    op.create_index("ix_payments_provider_payment_id", "payments", ["provider_payment_id"])

    op.create_table(
        "sync_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("entity_id", sa.String(36), nullable=False),
        sa.Column("operation", sa.String(10), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("notion_page_id", sa.String(64), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rerun_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    # At most one PENDING/PROCESSING job per entity.
    outstanding = sa.text("status IN ('PENDING', 'PROCESSING')")
    op.create_index(
        "uq_sync_jobs_outstanding_entity",
        "sync_jobs",
        ["entity_type", "entity_id"],
        unique=True,
        postgresql_where=outstanding,
        sqlite_where=outstanding,
    )
    op.create_index("ix_sync_jobs_claim", "sync_jobs", ["status", "priority", "scheduled_for"])

    op.create_table(
        "processed_events",
        sa.Column("id", sa.String(255), primary_key=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "sync_event_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("entity_type", sa.String(20), nullable=True),
        sa.Column("entity_id", sa.String(36), nullable=True),
        sa.Column("remote_page_id", sa.String(64), nullable=True),
        sa.Column("remote_edited_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("correlation_id", sa.String(64), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_sync_event_log_page_created", "sync_event_log", ["remote_page_id", "created_at"]
    )


def downgrade() -> None:
    op.drop_table("sync_event_log")
    op.drop_table("processed_events")
    op.drop_table("sync_jobs")
    op.drop_table("payments")
    op.drop_table("deliverables")
    op.drop_table("milestones")
    op.drop_table("projects")
    op.drop_table("clients")
    op.drop_table("leads")
