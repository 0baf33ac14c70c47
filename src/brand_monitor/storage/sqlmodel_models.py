"""SQLModel ORM tables for runs, snapshots, incidents and collaborator data."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
    text,
)
from sqlmodel import Field, SQLModel

from brand_monitor.storage.common import DEFAULT_TENANT_ID

RUN_RESULT_CHECK = (
    "(status IN ('pending', 'running') AND output_json IS NULL AND error_kind IS NULL)"
    " OR (status IN ('completed', 'pending_review')"
    " AND output_json IS NOT NULL AND error_kind IS NULL)"
    " OR (status = 'failed' AND output_json IS NULL AND error_kind IS NOT NULL)"
)


class Run(SQLModel, table=True):
    __tablename__ = "runs"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_runs_active_idempotency_key",
            "tenant_id",
            "kind",
            "idempotency_key",
            unique=True,
            sqlite_where=text("status IN ('pending', 'running')"),
        ),
        Index("idx_runs_claim", "tenant_id", "status", "created_at"),
        Index("idx_runs_key_lookup", "tenant_id", "kind", "idempotency_key", "created_at"),
        CheckConstraint(RUN_RESULT_CHECK, name="ck_runs_result_exclusive"),
    )

    run_id: str = Field(primary_key=True)
    tenant_id: str = Field(default=DEFAULT_TENANT_ID, index=True)
    kind: str = Field(index=True)
    idempotency_key: str
    status: str = Field(index=True)
    input_descriptor_json: str = Field(sa_column=Column(Text, nullable=False))
    input_count: int | None = None
    output_json: str | None = Field(default=None, sa_column=Column(Text))
    error_kind: str | None = Field(default=None, index=True)
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    worker_id: str | None = Field(default=None, index=True)
    timeout_seconds: int
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    deadline_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RunEvent(SQLModel, table=True):
    __tablename__ = "run_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_run_events_run_time", "run_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(
        sa_column=Column(
            ForeignKey("runs.run_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    tenant_id: str = Field(default=DEFAULT_TENANT_ID, index=True)
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class KpiSnapshotRow(SQLModel, table=True):
    __tablename__ = "kpi_snapshots"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "idx_kpi_snapshots_window",
            "tenant_id",
            "source_type",
            "formula_version",
            "window_start",
            "window_end",
            "computed_at",
        ),
    )

    snapshot_id: str = Field(primary_key=True)
    tenant_id: str = Field(default=DEFAULT_TENANT_ID)
    source_type: str
    formula_version: str
    window_start: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    window_end: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    insufficient_data: bool = Field(default=False)
    snapshot_json: str = Field(sa_column=Column(Text, nullable=False))
    computed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Incident(SQLModel, table=True):
    __tablename__ = "incidents"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_incidents_active_signature",
            "tenant_id",
            "signature",
            unique=True,
            sqlite_where=text("status IN ('open', 'acknowledged')"),
        ),
        Index("idx_incidents_status_time", "tenant_id", "status", "updated_at"),
    )

    incident_id: str = Field(primary_key=True)
    tenant_id: str = Field(default=DEFAULT_TENANT_ID)
    signature: str = Field(index=True)
    scope: str
    source_type: str
    status: str
    severity: str
    trigger_metric: str
    trigger_value: float
    classified_items: int
    owner_user_id: str | None = None
    sla_due_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    snapshot_id: str = Field(
        sa_column=Column(ForeignKey("kpi_snapshots.snapshot_id"), nullable=False),
    )
    window_start: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    window_end: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    resolved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class IncidentNote(SQLModel, table=True):
    __tablename__ = "incident_notes"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    incident_id: str = Field(
        sa_column=Column(
            ForeignKey("incidents.incident_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    author_user_id: str
    note: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TrackedTerm(SQLModel, table=True):
    __tablename__ = "tracked_terms"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_tracked_terms_name"),)

    term_id: str = Field(primary_key=True)
    tenant_id: str = Field(default=DEFAULT_TENANT_ID, index=True)
    name: str
    scope: str | None = None
    is_active: bool = Field(default=True)
    max_articles_per_run: int = Field(default=2)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ContentItem(SQLModel, table=True):
    __tablename__ = "content_items"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_content_items_window", "tenant_id", "source_type", "state", "published_at"),
        Index("idx_content_items_term_feed", "tenant_id", "term_id", "published_at"),
    )

    content_id: str = Field(primary_key=True)
    tenant_id: str = Field(default=DEFAULT_TENANT_ID)
    term_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("tracked_terms.term_id", ondelete="SET NULL"), index=True),
    )
    source_type: str
    provider: str
    source_name: str | None = None
    source_id: str | None = None
    state: str = Field(default="active")
    title: str
    summary: str | None = Field(default=None, sa_column=Column(Text))
    content: str | None = Field(default=None, sa_column=Column(Text))
    canonical_url: str
    image_url: str | None = None
    language: str | None = None
    category: str | None = None
    source_score: float | None = None
    published_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Classification(SQLModel, table=True):
    __tablename__ = "classifications"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_classifications_content_time", "content_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    content_id: str = Field(
        sa_column=Column(
            ForeignKey("content_items.content_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    tenant_id: str = Field(default=DEFAULT_TENANT_ID)
    sentimiento: str | None = None
    categoria: str | None = None
    is_override: bool = Field(default=False)
    prompt_version: str | None = None
    created_by: str = Field(default="system")
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SourceWeightRow(SQLModel, table=True):
    __tablename__ = "source_weights"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_source_weights_lookup", "tenant_id", "provider", "source_name"),)

    id: int | None = Field(default=None, primary_key=True)
    tenant_id: str = Field(default=DEFAULT_TENANT_ID)
    provider: str
    source_name: str | None = None
    weight: float
    is_active: bool = Field(default=True)
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ReportSchedule(SQLModel, table=True):
    __tablename__ = "report_schedules"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_report_schedules_due", "tenant_id", "enabled", "next_run_at"),)

    schedule_id: str = Field(primary_key=True)
    tenant_id: str = Field(default=DEFAULT_TENANT_ID)
    template_id: str
    name: str
    enabled: bool = Field(default=True)
    frequency: str
    day_of_week: int | None = None
    time_local: str
    timezone: str
    recipients_json: str = Field(sa_column=Column(Text, nullable=False))
    source_type: str = Field(default="news")
    next_run_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_run_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
