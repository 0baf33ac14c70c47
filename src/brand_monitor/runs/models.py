"""Domain models for the run lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class RunKind(str, Enum):
    """Kinds of expensive work accepted by the orchestrator."""

    ANALYSIS = "analysis"
    REPORT = "report"
    EXPORT = "export"
    INCIDENT_EVALUATION = "incident-evaluation"


class RunStatus(str, Enum):
    """Durable run lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    PENDING_REVIEW = "pending_review"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        """Still owned by the orchestrator; at most one per idempotency key."""

        return self in ACTIVE_STATUSES

    @property
    def is_settled(self) -> bool:
        """Callers may stop polling."""

        return self not in ACTIVE_STATUSES


ACTIVE_STATUSES = frozenset({RunStatus.PENDING, RunStatus.RUNNING})
TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED})


@dataclass(slots=True)
class RunCreate:
    """Input payload for inserting a pending run."""

    kind: RunKind
    idempotency_key: str
    input_descriptor: dict[str, Any]
    timeout_seconds: int
    input_count: int | None = None


@dataclass(slots=True)
class RunView:
    """Readable run view for the API, CLI and dispatcher."""

    run_id: str
    tenant_id: str
    kind: RunKind
    idempotency_key: str
    status: RunStatus
    input_descriptor: dict[str, Any]
    input_count: int | None
    output: dict[str, Any] | None
    error_kind: str | None
    error_message: str | None
    worker_id: str | None
    timeout_seconds: int
    started_at: datetime | None
    deadline_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready representation used by the API layer."""

        return {
            "run_id": self.run_id,
            "kind": self.kind.value,
            "idempotency_key": self.idempotency_key,
            "status": self.status.value,
            "input": self.input_descriptor,
            "input_count": self.input_count,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
            "worker_id": self.worker_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "started_at": _iso(self.started_at),
            "deadline_at": _iso(self.deadline_at),
            "completed_at": _iso(self.completed_at),
        }


@dataclass(slots=True)
class RunEventView:
    """Run event entry for audit trail."""

    event_id: int
    run_id: str
    event_type: str
    status_from: RunStatus | None
    status_to: RunStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RunDetails:
    """Run with its event stream."""

    run: RunView
    events: list[RunEventView]


@dataclass(slots=True)
class AcquireResult:
    """Outcome of an idempotent create."""

    run: RunView
    created: bool

    @property
    def reused(self) -> bool:
        return not self.created


@dataclass(slots=True)
class HandlerOutcome:
    """What a kind handler produced for one run."""

    output: dict[str, Any]
    needs_review: bool = False
    review_reason: str | None = None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
