"""Create runs and run event tables with single-active-run guard."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "runs",
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("input_descriptor_json", sa.Text(), nullable=False),
        sa.Column("input_count", sa.Integer(), nullable=True),
        sa.Column("output_json", sa.Text(), nullable=True),
        sa.Column("error_kind", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("timeout_seconds", sa.Integer(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deadline_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("run_id"),
        sa.CheckConstraint(
            "(status IN ('pending', 'running') AND output_json IS NULL AND error_kind IS NULL)"
            " OR (status IN ('completed', 'pending_review')"
            " AND output_json IS NOT NULL AND error_kind IS NULL)"
            " OR (status = 'failed' AND output_json IS NULL AND error_kind IS NOT NULL)",
            name="ck_runs_result_exclusive",
        ),
    )
    op.create_index("ix_runs_tenant_id", "runs", ["tenant_id"])
    op.create_index("ix_runs_kind", "runs", ["kind"])
    op.create_index("ix_runs_status", "runs", ["status"])
    op.create_index("ix_runs_error_kind", "runs", ["error_kind"])
    op.create_index("ix_runs_worker_id", "runs", ["worker_id"])
    op.create_index("idx_runs_claim", "runs", ["tenant_id", "status", "created_at"])
    op.create_index(
        "idx_runs_key_lookup",
        "runs",
        ["tenant_id", "kind", "idempotency_key", "created_at"],
    )
    op.create_index(
        "uq_runs_active_idempotency_key",
        "runs",
        ["tenant_id", "kind", "idempotency_key"],
        unique=True,
        sqlite_where=sa.text("status IN ('pending', 'running')"),
    )

    op.create_table(
        "run_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["run_id"], ["runs.run_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_run_events_run_id", "run_events", ["run_id"])
    op.create_index("ix_run_events_tenant_id", "run_events", ["tenant_id"])
    op.create_index("ix_run_events_event_type", "run_events", ["event_type"])
    op.create_index("idx_run_events_run_time", "run_events", ["run_id", "created_at"])


def downgrade() -> None:
    op.drop_table("run_events")
    op.drop_table("runs")
