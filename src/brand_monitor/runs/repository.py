"""Persistent run store with conditional state transitions."""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import literal_column
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from brand_monitor.runs.models import (
    ACTIVE_STATUSES,
    RunCreate,
    RunDetails,
    RunEventView,
    RunKind,
    RunStatus,
    RunView,
)
from brand_monitor.storage.common import (
    SqliteRepository,
    dump_json,
    load_json_object,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
)
from brand_monitor.storage.sqlmodel_models import Run, RunEvent

logger = logging.getLogger(__name__)

_ACTIVE_VALUES = [status.value for status in ACTIVE_STATUSES]


class RunRepository(SqliteRepository):
    """Run persistence facade backed by SQLModel + SQLite.

    Every transition is a single conditional UPDATE on the expected source
    status; a ``False`` return means another actor moved the run first.
    """

    def insert_pending_run(self, payload: RunCreate) -> RunView | None:
        """Create a pending run unless an active one already holds the key.

        Returns ``None`` when the partial unique index rejects the insert.
        """

        now = to_db_datetime(self._now())
        run_id = str(uuid4())
        with Session(self.engine) as session:
            row = Run(
                run_id=run_id,
                tenant_id=self.tenant_id,
                kind=payload.kind.value,
                idempotency_key=payload.idempotency_key,
                status=RunStatus.PENDING.value,
                input_descriptor_json=dump_json(payload.input_descriptor),
                input_count=payload.input_count,
                timeout_seconds=payload.timeout_seconds,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                run_id=run_id,
                event_type="accepted",
                status_from=None,
                status_to=RunStatus.PENDING,
                details={
                    "kind": payload.kind.value,
                    "idempotency_key": payload.idempotency_key,
                    "input_count": payload.input_count,
                },
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.info(
                    "Active run already holds key: kind=%s key=%s",
                    payload.kind.value,
                    payload.idempotency_key,
                )
                return None
            session.refresh(row)
            return _to_run_view(row)

    def find_latest_run(self, *, kind: RunKind, idempotency_key: str) -> RunView | None:
        """Active run for the key if any, otherwise the most recently created one."""

        with Session(self.engine) as session:
            base = select(Run).where(
                Run.tenant_id == self.tenant_id,
                Run.kind == kind.value,
                Run.idempotency_key == idempotency_key,
            )
            active = session.exec(
                base.where(col(Run.status).in_(_ACTIVE_VALUES)).limit(1),
            ).one_or_none()
            if active is not None:
                return _to_run_view(active)
            latest = session.exec(
                base.order_by(
                    col(Run.created_at).desc(),
                    literal_column("runs.rowid").desc(),
                ).limit(1),
            ).one_or_none()
        return _to_run_view(latest) if latest is not None else None

    def get_run(self, run_id: str) -> RunView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Run).where(Run.run_id == run_id, Run.tenant_id == self.tenant_id),
            ).one_or_none()
        return _to_run_view(row) if row is not None else None

    def get_run_details(self, run_id: str) -> RunDetails | None:
        """Return run details with event stream."""

        with Session(self.engine) as session:
            row = session.exec(
                select(Run).where(Run.run_id == run_id, Run.tenant_id == self.tenant_id),
            ).one_or_none()
            if row is None:
                return None
            event_rows = session.exec(
                select(RunEvent)
                .where(RunEvent.run_id == run_id, RunEvent.tenant_id == self.tenant_id)
                .order_by(col(RunEvent.created_at).asc(), col(RunEvent.id).asc()),
            ).all()

        events = [
            RunEventView(
                event_id=event.id or 0,
                run_id=event.run_id,
                event_type=event.event_type,
                status_from=RunStatus(event.status_from) if event.status_from else None,
                status_to=RunStatus(event.status_to) if event.status_to else None,
                created_at=to_utc_aware_datetime(event.created_at),
                details=load_json_object(event.details_json),
            )
            for event in event_rows
        ]
        return RunDetails(run=_to_run_view(row), events=events)

    def list_runs(
        self,
        *,
        kind: RunKind | None = None,
        status: RunStatus | None = None,
        limit: int = 50,
    ) -> list[RunView]:
        """List recent runs, optionally filtered by kind and status."""

        with Session(self.engine) as session:
            statement = (
                select(Run)
                .where(Run.tenant_id == self.tenant_id)
                .order_by(col(Run.created_at).desc(), literal_column("runs.rowid").desc())
                .limit(limit)
            )
            if kind is not None:
                statement = statement.where(Run.kind == kind.value)
            if status is not None:
                statement = statement.where(Run.status == status.value)
            rows = session.exec(statement).all()
        return [_to_run_view(row) for row in rows]

    def claim_next_pending(self, *, worker_id: str) -> RunView | None:
        """Atomically claim the oldest pending run."""

        while True:
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(Run)
                    .where(
                        Run.tenant_id == self.tenant_id,
                        Run.status == RunStatus.PENDING.value,
                    )
                    .order_by(col(Run.created_at).asc(), literal_column("runs.rowid").asc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None
                candidate_id = candidate.run_id
            claimed = self.claim_run(run_id=candidate_id, worker_id=worker_id)
            if claimed is not None:
                return claimed

    def claim_run(self, *, run_id: str, worker_id: str) -> RunView | None:
        """Move one run pending -> running; exactly one concurrent claimer wins."""

        now = self._now()
        with Session(self.engine) as session:
            row = session.exec(
                select(Run).where(Run.run_id == run_id, Run.tenant_id == self.tenant_id),
            ).one_or_none()
            if row is None:
                return None
            deadline = now + timedelta(seconds=row.timeout_seconds)
            result = session.exec(
                sa_update(Run)
                .where(
                    col(Run.run_id) == run_id,
                    col(Run.tenant_id) == self.tenant_id,
                    col(Run.status) == RunStatus.PENDING.value,
                )
                .values(
                    status=RunStatus.RUNNING.value,
                    worker_id=worker_id,
                    started_at=to_db_datetime(now),
                    deadline_at=to_db_datetime(deadline),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                run_id=run_id,
                event_type="claimed",
                status_from=RunStatus.PENDING,
                status_to=RunStatus.RUNNING,
                details={"worker_id": worker_id, "deadline_at": deadline.isoformat()},
            )
            session.commit()
            claimed = session.exec(select(Run).where(Run.run_id == run_id)).one()
            return _to_run_view(claimed)

    def complete_run(self, *, run_id: str, output: dict[str, Any]) -> bool:
        """Mark a running run as completed."""

        return self._settle_running(
            run_id=run_id,
            status_to=RunStatus.COMPLETED,
            event_type="completed",
            values={"output_json": dump_json(output)},
            details={},
        )

    def submit_for_review(
        self,
        *,
        run_id: str,
        output: dict[str, Any],
        reason: str | None = None,
    ) -> bool:
        """Park a running run's output behind human approval."""

        return self._settle_running(
            run_id=run_id,
            status_to=RunStatus.PENDING_REVIEW,
            event_type="review_requested",
            values={"output_json": dump_json(output)},
            details={"reason": reason} if reason else {},
        )

    def fail_run(self, *, run_id: str, error_kind: str, error_message: str) -> bool:
        """Mark a running run as failed."""

        return self._settle_running(
            run_id=run_id,
            status_to=RunStatus.FAILED,
            event_type="failed",
            values={"error_kind": error_kind, "error_message": error_message},
            details={"error_kind": error_kind, "error_message": error_message},
        )

    def approve_run(self, *, run_id: str, actor_user_id: str) -> bool:
        """Release a pending_review run as completed."""

        now = to_db_datetime(self._now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Run)
                .where(
                    col(Run.run_id) == run_id,
                    col(Run.tenant_id) == self.tenant_id,
                    col(Run.status) == RunStatus.PENDING_REVIEW.value,
                )
                .values(
                    status=RunStatus.COMPLETED.value,
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                run_id=run_id,
                event_type="approved",
                status_from=RunStatus.PENDING_REVIEW,
                status_to=RunStatus.COMPLETED,
                details={"actor_user_id": actor_user_id},
            )
            session.commit()
            return True

    def fail_expired_runs(self, *, error_kind: str, error_message: str) -> list[str]:
        """Fail running runs whose deadline has passed; returns the reaped ids."""

        now = to_db_datetime(self._now())
        with Session(self.engine) as session:
            expired_ids = session.exec(
                select(Run.run_id).where(
                    Run.tenant_id == self.tenant_id,
                    Run.status == RunStatus.RUNNING.value,
                    col(Run.deadline_at).is_not(None),
                    col(Run.deadline_at) <= now,
                ),
            ).all()

        reaped: list[str] = []
        for run_id in expired_ids:
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(Run)
                    .where(
                        col(Run.run_id) == run_id,
                        col(Run.tenant_id) == self.tenant_id,
                        col(Run.status) == RunStatus.RUNNING.value,
                        col(Run.deadline_at) <= now,
                    )
                    .values(
                        status=RunStatus.FAILED.value,
                        error_kind=error_kind,
                        error_message=error_message,
                        completed_at=now,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                self._add_event(
                    session=session,
                    run_id=run_id,
                    event_type="reaped",
                    status_from=RunStatus.RUNNING,
                    status_to=RunStatus.FAILED,
                    details={"error_kind": error_kind, "error_message": error_message},
                )
                session.commit()
                reaped.append(run_id)
        if reaped:
            logger.warning("Reaped %d run(s) past their deadline: %s", len(reaped), reaped)
        return reaped

    def _settle_running(  # noqa: PLR0913
        self,
        *,
        run_id: str,
        status_to: RunStatus,
        event_type: str,
        values: dict[str, Any],
        details: dict[str, object],
    ) -> bool:
        now = to_db_datetime(self._now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Run)
                .where(
                    col(Run.run_id) == run_id,
                    col(Run.tenant_id) == self.tenant_id,
                    col(Run.status) == RunStatus.RUNNING.value,
                )
                .values(
                    status=status_to.value,
                    completed_at=now,
                    updated_at=now,
                    **values,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                run_id=run_id,
                event_type=event_type,
                status_from=RunStatus.RUNNING,
                status_to=status_to,
                details=details,
            )
            session.commit()
            return True

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        run_id: str,
        event_type: str,
        status_from: RunStatus | None,
        status_to: RunStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            RunEvent(
                run_id=run_id,
                tenant_id=self.tenant_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(self._now()),
            ),
        )


def _to_run_view(row: Run) -> RunView:
    output = json.loads(row.output_json) if row.output_json is not None else None
    return RunView(
        run_id=row.run_id,
        tenant_id=row.tenant_id,
        kind=RunKind(row.kind),
        idempotency_key=row.idempotency_key,
        status=RunStatus(row.status),
        input_descriptor=load_json_object(row.input_descriptor_json),
        input_count=row.input_count,
        output=output,
        error_kind=row.error_kind,
        error_message=row.error_message,
        worker_id=row.worker_id,
        timeout_seconds=row.timeout_seconds,
        started_at=optional_utc(row.started_at),
        deadline_at=optional_utc(row.deadline_at),
        completed_at=optional_utc(row.completed_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
