"""Report schedule persistence."""

from __future__ import annotations

import json
from datetime import datetime
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from brand_monitor.content.models import SourceType
from brand_monitor.errors import ValidationError
from brand_monitor.scheduling.schedule import (
    Frequency,
    ScheduleCreate,
    ScheduleTiming,
    ScheduleView,
    compute_next_run_at,
    sanitize_recipients,
    validate_timing,
)
from brand_monitor.storage.common import (
    SqliteRepository,
    dump_json,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
)
from brand_monitor.storage.sqlmodel_models import ReportSchedule


class ScheduleRepository(SqliteRepository):
    """Report schedules; ``advance_schedule`` is a compare-and-set on ``next_run_at``."""

    def add_schedule(self, payload: ScheduleCreate) -> ScheduleView:
        validate_timing(payload.timing)
        if not payload.template_id.strip() or not payload.name.strip():
            raise ValidationError("template_id and name are required.")
        if payload.source_type not in {item.value for item in SourceType}:
            raise ValidationError(f"Unsupported source_type: {payload.source_type!r}")

        now = self._now()
        row = ReportSchedule(
            schedule_id=str(uuid4()),
            tenant_id=self.tenant_id,
            template_id=payload.template_id.strip(),
            name=payload.name.strip(),
            enabled=payload.enabled,
            frequency=payload.timing.frequency.value,
            day_of_week=payload.timing.day_of_week,
            time_local=payload.timing.time_local,
            timezone=payload.timing.timezone,
            recipients_json=dump_json(sanitize_recipients(payload.recipients)),
            source_type=payload.source_type,
            next_run_at=to_db_datetime(compute_next_run_at(payload.timing, now)),
            created_at=to_db_datetime(now),
            updated_at=to_db_datetime(now),
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_schedule_view(row)

    def get_schedule(self, schedule_id: str) -> ScheduleView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ReportSchedule).where(
                    ReportSchedule.schedule_id == schedule_id,
                    ReportSchedule.tenant_id == self.tenant_id,
                ),
            ).one_or_none()
        return _to_schedule_view(row) if row is not None else None

    def list_schedules(self, *, include_disabled: bool = True) -> list[ScheduleView]:
        with Session(self.engine) as session:
            statement = (
                select(ReportSchedule)
                .where(ReportSchedule.tenant_id == self.tenant_id)
                .order_by(col(ReportSchedule.next_run_at).asc(), col(ReportSchedule.created_at).desc())
            )
            if not include_disabled:
                statement = statement.where(col(ReportSchedule.enabled).is_(True))
            rows = session.exec(statement).all()
        return [_to_schedule_view(row) for row in rows]

    def list_due(self, now: datetime) -> list[ScheduleView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ReportSchedule)
                .where(
                    ReportSchedule.tenant_id == self.tenant_id,
                    col(ReportSchedule.enabled).is_(True),
                    col(ReportSchedule.next_run_at) <= to_db_datetime(now),
                )
                .order_by(col(ReportSchedule.next_run_at).asc(), col(ReportSchedule.schedule_id).asc()),
            ).all()
        return [_to_schedule_view(row) for row in rows]

    def advance_schedule(
        self,
        *,
        schedule_id: str,
        expected_next_run_at: datetime,
        next_run_at: datetime,
        last_run_at: datetime,
    ) -> bool:
        """Move the schedule to its next slot unless another trigger already did."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ReportSchedule)
                .where(
                    col(ReportSchedule.schedule_id) == schedule_id,
                    col(ReportSchedule.tenant_id) == self.tenant_id,
                    col(ReportSchedule.next_run_at) == to_db_datetime(expected_next_run_at),
                )
                .values(
                    next_run_at=to_db_datetime(next_run_at),
                    last_run_at=to_db_datetime(last_run_at),
                    updated_at=to_db_datetime(self._now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        return True

    def set_enabled(self, schedule_id: str, *, enabled: bool) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ReportSchedule)
                .where(
                    col(ReportSchedule.schedule_id) == schedule_id,
                    col(ReportSchedule.tenant_id) == self.tenant_id,
                )
                .values(enabled=enabled, updated_at=to_db_datetime(self._now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        return True


def _to_schedule_view(row: ReportSchedule) -> ScheduleView:
    return ScheduleView(
        schedule_id=row.schedule_id,
        template_id=row.template_id,
        name=row.name,
        enabled=bool(row.enabled),
        timing=ScheduleTiming(
            frequency=Frequency(row.frequency),
            time_local=row.time_local,
            timezone=row.timezone,
            day_of_week=row.day_of_week,
        ),
        recipients=[str(item) for item in json.loads(row.recipients_json)],
        source_type=row.source_type,
        next_run_at=to_utc_aware_datetime(row.next_run_at),
        last_run_at=optional_utc(row.last_run_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
