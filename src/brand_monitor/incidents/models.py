"""Domain models for incidents."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from brand_monitor.aggregation.models import Severity


class IncidentStatus(str, Enum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


ACTIVE_INCIDENT_STATUSES = frozenset({IncidentStatus.OPEN, IncidentStatus.ACKNOWLEDGED})

ALLOWED_TRANSITIONS: dict[IncidentStatus, frozenset[IncidentStatus]] = {
    IncidentStatus.OPEN: frozenset({IncidentStatus.ACKNOWLEDGED, IncidentStatus.RESOLVED}),
    IncidentStatus.ACKNOWLEDGED: frozenset({IncidentStatus.OPEN, IncidentStatus.RESOLVED}),
    IncidentStatus.RESOLVED: frozenset(),
}

SLA_BY_SEVERITY: dict[Severity, timedelta] = {
    Severity.SEV1: timedelta(minutes=30),
    Severity.SEV2: timedelta(hours=4),
}
DEFAULT_SLA = timedelta(hours=24)


def sla_for(severity: Severity) -> timedelta:
    return SLA_BY_SEVERITY.get(severity, DEFAULT_SLA)


@dataclass(slots=True)
class IncidentNoteView:
    note_id: int
    incident_id: str
    author_user_id: str
    note: str
    created_at: datetime


@dataclass(slots=True)
class IncidentView:
    """Readable incident view with its notes."""

    incident_id: str
    signature: str
    scope: str
    source_type: str
    status: IncidentStatus
    severity: Severity
    trigger_metric: str
    trigger_value: float
    classified_items: int
    owner_user_id: str | None
    sla_due_at: datetime
    snapshot_id: str
    window_start: datetime
    window_end: datetime
    resolved_at: datetime | None
    created_at: datetime
    updated_at: datetime
    notes: list[IncidentNoteView] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "incident_id": self.incident_id,
            "signature": self.signature,
            "scope": self.scope,
            "source_type": self.source_type,
            "status": self.status.value,
            "severity": self.severity.value,
            "trigger_metric": self.trigger_metric,
            "trigger_value": self.trigger_value,
            "classified_items": self.classified_items,
            "owner_user_id": self.owner_user_id,
            "sla_due_at": self.sla_due_at.isoformat(),
            "snapshot_id": self.snapshot_id,
            "window": {"start": self.window_start.isoformat(), "end": self.window_end.isoformat()},
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "notes": [
                {
                    "note_id": note.note_id,
                    "author_user_id": note.author_user_id,
                    "note": note.note,
                    "created_at": note.created_at.isoformat(),
                }
                for note in self.notes
            ],
        }


@dataclass(slots=True)
class IncidentTrigger:
    """One scope that crossed a threshold in a snapshot."""

    signature: str
    scope: str
    source_type: str
    severity: Severity
    trigger_metric: str
    trigger_value: float
    classified_items: int
    snapshot_id: str
    window_start: datetime
    window_end: datetime


@dataclass(slots=True)
class IncidentPatch:
    """Human mutation; reason is mandatory and recorded as a note."""

    actor_user_id: str
    reason: str
    status: IncidentStatus | None = None
    owner_user_id: str | None = None


@dataclass(slots=True)
class EvaluationResult:
    incidents_opened: int = 0
    incidents_updated: int = 0
    skipped: int = 0
    snapshot_id: str | None = None
    insufficient_data: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "incidents_opened": self.incidents_opened,
            "incidents_updated": self.incidents_updated,
            "skipped": self.skipped,
            "snapshot_id": self.snapshot_id,
            "insufficient_data": self.insufficient_data,
        }
