"""Persistence for versioned KPI snapshots."""

from __future__ import annotations

import json
from uuid import uuid4

from sqlalchemy import literal_column
from sqlmodel import Session, col, select

from brand_monitor.aggregation.models import KpiSnapshot, SnapshotView, Window
from brand_monitor.errors import InsufficientDataError
from brand_monitor.storage.common import (
    SqliteRepository,
    to_db_datetime,
    to_utc_aware_datetime,
)
from brand_monitor.storage.sqlmodel_models import KpiSnapshotRow


class SnapshotRepository(SqliteRepository):
    """Append-only snapshot store; consumers always address a snapshot by id."""

    def save_snapshot(self, snapshot: KpiSnapshot) -> SnapshotView:
        now = self._now()
        row = KpiSnapshotRow(
            snapshot_id=str(uuid4()),
            tenant_id=self.tenant_id,
            source_type=snapshot.source_type,
            formula_version=snapshot.formula_version,
            window_start=to_db_datetime(snapshot.window.start),
            window_end=to_db_datetime(snapshot.window.end),
            insufficient_data=snapshot.insufficient_data,
            snapshot_json=snapshot.to_json(),
            computed_at=to_db_datetime(now),
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_snapshot_view(row)

    def get_snapshot(self, snapshot_id: str) -> SnapshotView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(KpiSnapshotRow).where(
                    KpiSnapshotRow.snapshot_id == snapshot_id,
                    KpiSnapshotRow.tenant_id == self.tenant_id,
                ),
            ).one_or_none()
        return _to_snapshot_view(row) if row is not None else None

    def latest_snapshot(
        self,
        *,
        window: Window,
        source_type: str,
        formula_version: str,
        sufficient_only: bool = False,
    ) -> SnapshotView | None:
        """Most recently computed snapshot for exactly this window."""

        with Session(self.engine) as session:
            statement = select(KpiSnapshotRow).where(
                KpiSnapshotRow.tenant_id == self.tenant_id,
                KpiSnapshotRow.source_type == source_type,
                KpiSnapshotRow.formula_version == formula_version,
                KpiSnapshotRow.window_start == to_db_datetime(window.start),
                KpiSnapshotRow.window_end == to_db_datetime(window.end),
            )
            if sufficient_only:
                statement = statement.where(col(KpiSnapshotRow.insufficient_data).is_(False))
            row = session.exec(
                statement.order_by(
                    col(KpiSnapshotRow.computed_at).desc(),
                    literal_column("kpi_snapshots.rowid").desc(),
                ).limit(1),
            ).one_or_none()
        return _to_snapshot_view(row) if row is not None else None

    def require_sufficient_snapshot(
        self,
        *,
        window: Window,
        source_type: str,
        formula_version: str,
    ) -> SnapshotView:
        """Latest snapshot for the window that met the minimum sample size."""

        snapshot = self.latest_snapshot(
            window=window,
            source_type=source_type,
            formula_version=formula_version,
            sufficient_only=True,
        )
        if snapshot is None:
            raise InsufficientDataError(
                f"No sufficient {formula_version} snapshot for {source_type} window",
                details=window.to_dict(),
            )
        return snapshot

    def list_snapshots(
        self,
        *,
        source_type: str | None = None,
        limit: int = 20,
    ) -> list[SnapshotView]:
        with Session(self.engine) as session:
            statement = select(KpiSnapshotRow).where(KpiSnapshotRow.tenant_id == self.tenant_id)
            if source_type is not None:
                statement = statement.where(KpiSnapshotRow.source_type == source_type)
            rows = session.exec(
                statement.order_by(col(KpiSnapshotRow.computed_at).desc()).limit(limit),
            ).all()
        return [_to_snapshot_view(row) for row in rows]


def _to_snapshot_view(row: KpiSnapshotRow) -> SnapshotView:
    return SnapshotView(
        snapshot_id=row.snapshot_id,
        computed_at=to_utc_aware_datetime(row.computed_at),
        snapshot=KpiSnapshot.from_dict(json.loads(row.snapshot_json)),
    )
