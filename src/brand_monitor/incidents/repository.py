"""Incident persistence with one active incident per signature."""

from __future__ import annotations

import logging
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from brand_monitor.aggregation.models import Severity
from brand_monitor.errors import ConflictError, NotFoundError, ValidationError
from brand_monitor.incidents.models import (
    ACTIVE_INCIDENT_STATUSES,
    ALLOWED_TRANSITIONS,
    IncidentNoteView,
    IncidentPatch,
    IncidentStatus,
    IncidentTrigger,
    IncidentView,
    sla_for,
)
from brand_monitor.storage.common import (
    SqliteRepository,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
)
from brand_monitor.storage.sqlmodel_models import Incident, IncidentNote

logger = logging.getLogger(__name__)

_ACTIVE_VALUES = [status.value for status in ACTIVE_INCIDENT_STATUSES]
MAX_UPSERT_ATTEMPTS = 5


class IncidentRepository(SqliteRepository):
    """Incident persistence facade backed by SQLModel + SQLite."""

    def upsert_trigger(self, trigger: IncidentTrigger) -> tuple[IncidentView, bool]:
        """Open an incident for the signature, or refresh the active one.

        Returns the incident and whether it was newly opened. A concurrent
        evaluator that loses the insert race refreshes the winner instead.
        """

        for _ in range(MAX_UPSERT_ATTEMPTS):
            refreshed = self._refresh_active(trigger)
            if refreshed is not None:
                return refreshed, False
            opened = self._open(trigger)
            if opened is not None:
                return opened, True
        raise ConflictError(
            f"Incident for signature {trigger.signature} kept changing concurrently.",
        )

    def _refresh_active(self, trigger: IncidentTrigger) -> IncidentView | None:
        now = self._now()
        with Session(self.engine) as session:
            row = session.exec(
                select(Incident).where(
                    Incident.tenant_id == self.tenant_id,
                    Incident.signature == trigger.signature,
                    col(Incident.status).in_(_ACTIVE_VALUES),
                ),
            ).one_or_none()
            if row is None:
                return None

            sla_due_at = to_utc_aware_datetime(row.sla_due_at)
            if _rank(trigger.severity) < _rank(Severity(row.severity)):
                sla_due_at = min(sla_due_at, now + sla_for(trigger.severity))
                logger.warning(
                    "Incident escalated: incident_id=%s %s -> %s",
                    row.incident_id,
                    row.severity,
                    trigger.severity.value,
                )
            result = session.exec(
                sa_update(Incident)
                .where(
                    col(Incident.incident_id) == row.incident_id,
                    col(Incident.status) == row.status,
                )
                .values(
                    severity=trigger.severity.value,
                    trigger_value=trigger.trigger_value,
                    classified_items=trigger.classified_items,
                    snapshot_id=trigger.snapshot_id,
                    window_start=to_db_datetime(trigger.window_start),
                    window_end=to_db_datetime(trigger.window_end),
                    sla_due_at=to_db_datetime(sla_due_at),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            incident_id = row.incident_id
        return self.get_incident(incident_id)

    def _open(self, trigger: IncidentTrigger) -> IncidentView | None:
        now = self._now()
        incident_id = str(uuid4())
        with Session(self.engine) as session:
            session.add(
                Incident(
                    incident_id=incident_id,
                    tenant_id=self.tenant_id,
                    signature=trigger.signature,
                    scope=trigger.scope,
                    source_type=trigger.source_type,
                    status=IncidentStatus.OPEN.value,
                    severity=trigger.severity.value,
                    trigger_metric=trigger.trigger_metric,
                    trigger_value=trigger.trigger_value,
                    classified_items=trigger.classified_items,
                    sla_due_at=to_db_datetime(now + sla_for(trigger.severity)),
                    snapshot_id=trigger.snapshot_id,
                    window_start=to_db_datetime(trigger.window_start),
                    window_end=to_db_datetime(trigger.window_end),
                    created_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.info("Lost incident open race for signature=%s", trigger.signature)
                return None
        logger.warning(
            "Incident opened: incident_id=%s signature=%s severity=%s value=%s",
            incident_id,
            trigger.signature,
            trigger.severity.value,
            trigger.trigger_value,
        )
        return self.get_incident(incident_id)

    def patch_incident(self, incident_id: str, patch: IncidentPatch) -> IncidentView:
        """Apply a human status/owner change and record the reason as a note."""

        reason = patch.reason.strip()
        if not reason:
            raise ValidationError("A non-empty reason is required to change an incident.")
        if not patch.actor_user_id.strip():
            raise ValidationError("actor_user_id is required.")

        now = to_db_datetime(self._now())
        with Session(self.engine) as session:
            row = self._get_row(session=session, incident_id=incident_id)
            current = IncidentStatus(row.status)
            target = patch.status or current
            if target is not current:
                if current is IncidentStatus.RESOLVED:
                    raise ConflictError(f"Incident {incident_id} is resolved and cannot change.")
                if target not in ALLOWED_TRANSITIONS[current]:
                    raise ValidationError(
                        f"Invalid incident transition {current.value} -> {target.value}.",
                    )

            values: dict[str, object] = {"status": target.value, "updated_at": now}
            if patch.owner_user_id is not None:
                values["owner_user_id"] = patch.owner_user_id.strip() or None
            if target is IncidentStatus.RESOLVED and current is not IncidentStatus.RESOLVED:
                values["resolved_at"] = now

            try:
                result = session.exec(
                    sa_update(Incident)
                    .where(
                        col(Incident.incident_id) == incident_id,
                        col(Incident.status) == current.value,
                    )
                    .values(**values),
                )
            except IntegrityError as error:
                # Reopening while the evaluator already opened a newer incident for the signature.
                session.rollback()
                raise ConflictError(
                    f"Another active incident already exists for {row.signature}.",
                ) from error
            if result.rowcount != 1:
                session.rollback()
                raise ConflictError(
                    "Incident state changed concurrently; "
                    f"please retry (incident_id={incident_id}).",
                )
            session.add(
                IncidentNote(
                    incident_id=incident_id,
                    author_user_id=patch.actor_user_id,
                    note=_format_note(reason=reason, current=current, target=target, patch=patch),
                    created_at=now,
                ),
            )
            session.commit()
        return self._require(incident_id)

    def add_note(self, *, incident_id: str, author_user_id: str, note: str) -> IncidentNoteView:
        text = note.strip()
        if not text:
            raise ValidationError("Note must not be empty.")
        with Session(self.engine) as session:
            self._get_row(session=session, incident_id=incident_id)
            row = IncidentNote(
                incident_id=incident_id,
                author_user_id=author_user_id,
                note=text,
                created_at=to_db_datetime(self._now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_note_view(row)

    def get_incident(self, incident_id: str) -> IncidentView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Incident).where(
                    Incident.incident_id == incident_id,
                    Incident.tenant_id == self.tenant_id,
                ),
            ).one_or_none()
            if row is None:
                return None
            notes = session.exec(
                select(IncidentNote)
                .where(IncidentNote.incident_id == incident_id)
                .order_by(col(IncidentNote.created_at).asc(), col(IncidentNote.id).asc()),
            ).all()
            return _to_incident_view(row, notes=[_to_note_view(note) for note in notes])

    def list_incidents(
        self,
        *,
        status: IncidentStatus | None = None,
        limit: int = 50,
    ) -> list[IncidentView]:
        with Session(self.engine) as session:
            statement = (
                select(Incident)
                .where(Incident.tenant_id == self.tenant_id)
                .order_by(col(Incident.updated_at).desc(), col(Incident.incident_id).asc())
                .limit(limit)
            )
            if status is not None:
                statement = statement.where(Incident.status == status.value)
            rows = session.exec(statement).all()
        return [_to_incident_view(row, notes=[]) for row in rows]

    def count_active(self) -> int:
        with Session(self.engine) as session:
            total = session.exec(
                select(func.count())
                .select_from(Incident)
                .where(
                    Incident.tenant_id == self.tenant_id,
                    col(Incident.status).in_(_ACTIVE_VALUES),
                ),
            ).one()
        return int(total)

    def _require(self, incident_id: str) -> IncidentView:
        incident = self.get_incident(incident_id)
        if incident is None:
            raise NotFoundError(f"Incident not found: {incident_id}")
        return incident

    def _get_row(self, *, session: Session, incident_id: str) -> Incident:
        row = session.exec(
            select(Incident).where(
                Incident.incident_id == incident_id,
                Incident.tenant_id == self.tenant_id,
            ),
        ).one_or_none()
        if row is None:
            raise NotFoundError(f"Incident not found: {incident_id}")
        return row


def _rank(severity: Severity) -> int:
    return int(severity.value[-1])


def _format_note(
    *,
    reason: str,
    current: IncidentStatus,
    target: IncidentStatus,
    patch: IncidentPatch,
) -> str:
    changes: list[str] = []
    if target is not current:
        changes.append(f"status {current.value} -> {target.value}")
    if patch.owner_user_id is not None:
        changes.append(f"owner -> {patch.owner_user_id.strip() or 'unassigned'}")
    if not changes:
        return reason
    return f"[{'; '.join(changes)}] {reason}"


def _to_note_view(row: IncidentNote) -> IncidentNoteView:
    return IncidentNoteView(
        note_id=row.id or 0,
        incident_id=row.incident_id,
        author_user_id=row.author_user_id,
        note=row.note,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_incident_view(row: Incident, *, notes: list[IncidentNoteView]) -> IncidentView:
    return IncidentView(
        incident_id=row.incident_id,
        signature=row.signature,
        scope=row.scope,
        source_type=row.source_type,
        status=IncidentStatus(row.status),
        severity=Severity(row.severity),
        trigger_metric=row.trigger_metric,
        trigger_value=row.trigger_value,
        classified_items=row.classified_items,
        owner_user_id=row.owner_user_id,
        sla_due_at=to_utc_aware_datetime(row.sla_due_at),
        snapshot_id=row.snapshot_id,
        window_start=to_utc_aware_datetime(row.window_start),
        window_end=to_utc_aware_datetime(row.window_end),
        resolved_at=optional_utc(row.resolved_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        notes=notes,
    )
