"""Turns due report schedules into report runs through the idempotency gate."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from brand_monitor.clock import Clock
from brand_monitor.errors import ValidationError
from brand_monitor.runs.gate import IdempotencyGate
from brand_monitor.runs.models import RunKind
from brand_monitor.runs.policy import TerminalReuse
from brand_monitor.scheduling.repository import ScheduleRepository
from brand_monitor.scheduling.schedule import ScheduleView, compute_next_run_at

logger = logging.getLogger(__name__)

REPORT_WINDOW = timedelta(days=7)


@dataclass(slots=True, frozen=True)
class DueSlot:
    schedule_id: str
    scheduled_instant: datetime
    template_id: str
    recipients: tuple[str, ...]
    source_type: str

    @property
    def idempotency_key(self) -> str:
        return f"schedule:{self.schedule_id}:{self.scheduled_instant.isoformat()}"

    def report_descriptor(self) -> dict[str, Any]:
        return {
            "template_id": self.template_id,
            "schedule_id": self.schedule_id,
            "scheduled_for": self.scheduled_instant.isoformat(),
            "recipients": list(self.recipients),
            "source_type": self.source_type,
            "window": {
                "start": (self.scheduled_instant - REPORT_WINDOW).isoformat(),
                "end": self.scheduled_instant.isoformat(),
            },
        }


@dataclass(slots=True)
class TriggerSummary:
    created: int = 0
    reused: int = 0
    skipped: int = 0
    run_ids: list[str] = field(default_factory=list)


class ScheduleTrigger:
    """Fires due schedule slots.

    A slot maps to a fixed idempotency key and the gate is called with
    ``TerminalReuse.REUSE``, so firing the same slot twice (two ticks, two
    processes, a crash between acquire and advance) yields one report run.
    """

    def __init__(
        self,
        *,
        schedules: ScheduleRepository,
        gate: IdempotencyGate,
        clock: Clock,
    ) -> None:
        self.schedules = schedules
        self.gate = gate
        self.clock = clock

    def due(self, now: datetime) -> list[DueSlot]:
        return [_slot(schedule) for schedule in self.schedules.list_due(now)]

    def fire(self, now: datetime | None = None) -> TriggerSummary:
        current = now or self.clock.now()
        summary = TriggerSummary()
        for schedule in self.schedules.list_due(current):
            slot = _slot(schedule)
            try:
                next_run_at = compute_next_run_at(schedule.timing, current)
            except ValidationError as error:
                logger.warning(
                    "Skipping schedule %s with invalid timing: %s",
                    schedule.schedule_id,
                    error.message,
                )
                summary.skipped += 1
                continue

            result = self.gate.acquire(
                RunKind.REPORT,
                slot.idempotency_key,
                slot.report_descriptor(),
                terminal_reuse=TerminalReuse.REUSE,
            )
            summary.run_ids.append(result.run.run_id)
            if result.created:
                summary.created += 1
            else:
                summary.reused += 1

            advanced = self.schedules.advance_schedule(
                schedule_id=schedule.schedule_id,
                expected_next_run_at=schedule.next_run_at,
                next_run_at=next_run_at,
                last_run_at=current,
            )
            if not advanced:
                logger.info(
                    "Schedule %s was already advanced by another trigger",
                    schedule.schedule_id,
                )
            logger.info(
                "Schedule slot fired: schedule_id=%s slot=%s run_id=%s reused=%s next=%s",
                schedule.schedule_id,
                slot.scheduled_instant.isoformat(),
                result.run.run_id,
                result.reused,
                next_run_at.isoformat(),
            )
        return summary


def _slot(schedule: ScheduleView) -> DueSlot:
    return DueSlot(
        schedule_id=schedule.schedule_id,
        scheduled_instant=schedule.next_run_at,
        template_id=schedule.template_id,
        recipients=tuple(schedule.recipients),
        source_type=schedule.source_type,
    )
