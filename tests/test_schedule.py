from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from brand_monitor.clock import FrozenClock
from brand_monitor.errors import ValidationError
from brand_monitor.runs.models import RunKind, RunStatus
from brand_monitor.runs.policy import TerminalReuse
from brand_monitor.runtime import Runtime
from brand_monitor.scheduling.schedule import (
    Frequency,
    ScheduleCreate,
    ScheduleTiming,
    compute_next_run_at,
    sanitize_recipients,
)

pytestmark = [
    allure.epic("Reports"),
    allure.feature("Schedule Trigger"),
]

# 2026-03-02 is a Monday; Bogota is UTC-5 all year.
MONDAY_0700_BOGOTA = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


def test_daily_slot_later_today() -> None:
    timing = ScheduleTiming(frequency=Frequency.DAILY, time_local="08:00")

    assert compute_next_run_at(timing, MONDAY_0700_BOGOTA) == datetime(2026, 3, 2, 13, 0, tzinfo=UTC)


def test_daily_slot_rolls_to_tomorrow_when_time_passed() -> None:
    timing = ScheduleTiming(frequency=Frequency.DAILY, time_local="07:00")

    assert compute_next_run_at(timing, MONDAY_0700_BOGOTA) == datetime(2026, 3, 3, 12, 0, tzinfo=UTC)


def test_weekly_slot_uses_sunday_based_day_of_week() -> None:
    monday = ScheduleTiming(frequency=Frequency.WEEKLY, time_local="08:00", day_of_week=1)
    sunday = ScheduleTiming(frequency=Frequency.WEEKLY, time_local="08:00", day_of_week=0)
    monday_passed = ScheduleTiming(frequency=Frequency.WEEKLY, time_local="06:30", day_of_week=1)

    assert compute_next_run_at(monday, MONDAY_0700_BOGOTA) == datetime(2026, 3, 2, 13, 0, tzinfo=UTC)
    assert compute_next_run_at(sunday, MONDAY_0700_BOGOTA) == datetime(2026, 3, 8, 13, 0, tzinfo=UTC)
    assert compute_next_run_at(monday_passed, MONDAY_0700_BOGOTA) == datetime(
        2026,
        3,
        9,
        11,
        30,
        tzinfo=UTC,
    )


def test_daily_slot_keeps_local_time_across_dst_change() -> None:
    timing = ScheduleTiming(frequency=Frequency.DAILY, time_local="08:00", timezone="America/New_York")
    # 09:00 EST on the day before clocks move forward.
    reference = datetime(2026, 3, 7, 14, 0, tzinfo=UTC)

    assert compute_next_run_at(timing, reference) == datetime(2026, 3, 8, 12, 0, tzinfo=UTC)


@pytest.mark.parametrize(
    "timing",
    [
        ScheduleTiming(frequency=Frequency.DAILY, time_local="8:00"),
        ScheduleTiming(frequency=Frequency.DAILY, time_local="24:00"),
        ScheduleTiming(frequency=Frequency.DAILY, time_local="08:00", timezone="Mars/Olympus"),
        ScheduleTiming(frequency=Frequency.WEEKLY, time_local="08:00"),
        ScheduleTiming(frequency=Frequency.WEEKLY, time_local="08:00", day_of_week=7),
    ],
)
def test_invalid_timing_is_rejected(timing: ScheduleTiming) -> None:
    with pytest.raises(ValidationError):
        compute_next_run_at(timing, MONDAY_0700_BOGOTA)


def test_sanitize_recipients() -> None:
    values = [" Ana@Example.com", "ana@example.com", "", "bob@example.com"] + [
        f"user{index}@example.com" for index in range(60)
    ]

    cleaned = sanitize_recipients(values)

    assert cleaned[:2] == ["ana@example.com", "bob@example.com"]
    assert len(cleaned) == 50


def _add_daily(runtime: Runtime, *, time_local: str = "08:00") -> str:
    schedule = runtime.schedules.add_schedule(
        ScheduleCreate(
            template_id="weekly-exec",
            name="Resumen ejecutivo",
            timing=ScheduleTiming(frequency=Frequency.DAILY, time_local=time_local),
            recipients=["CMO@example.com"],
        ),
    )
    assert schedule.next_run_at == datetime(2026, 3, 2, 13, 0, tzinfo=UTC)
    return schedule.schedule_id


def test_trigger_fires_due_slot_once_and_advances(runtime: Runtime, clock: FrozenClock) -> None:
    schedule_id = _add_daily(runtime)

    assert runtime.trigger.fire().created == 0
    clock.advance(timedelta(hours=1, minutes=5))
    summary = runtime.trigger.fire()

    assert summary.created == 1
    [run] = runtime.runs.list_runs(kind=RunKind.REPORT)
    assert run.idempotency_key == f"schedule:{schedule_id}:2026-03-02T13:00:00+00:00"
    assert run.input_descriptor["recipients"] == ["cmo@example.com"]
    assert run.input_descriptor["window"] == {
        "start": "2026-02-23T13:00:00+00:00",
        "end": "2026-03-02T13:00:00+00:00",
    }
    schedule = runtime.schedules.get_schedule(schedule_id)
    assert schedule.next_run_at == datetime(2026, 3, 3, 13, 0, tzinfo=UTC)
    assert schedule.last_run_at == clock.now()

    again = runtime.trigger.fire()
    assert again.created == 0
    assert again.run_ids == []


def test_slot_already_acquired_is_reused(runtime: Runtime, clock: FrozenClock) -> None:
    _add_daily(runtime)
    clock.advance(timedelta(hours=2))
    [slot] = runtime.trigger.due(clock.now())
    existing = runtime.gate.acquire(
        RunKind.REPORT,
        slot.idempotency_key,
        slot.report_descriptor(),
        terminal_reuse=TerminalReuse.REUSE,
    )
    runtime.runs.claim_run(run_id=existing.run.run_id, worker_id="w1")
    runtime.runs.fail_run(run_id=existing.run.run_id, error_kind="DependencyError", error_message="x")

    summary = runtime.trigger.fire()

    assert summary.created == 0
    assert summary.reused == 1
    assert summary.run_ids == [existing.run.run_id]
    assert len(runtime.runs.list_runs(kind=RunKind.REPORT)) == 1
    assert runtime.runs.get_run(existing.run.run_id).status is RunStatus.FAILED


def test_disabled_schedule_is_not_due(runtime: Runtime, clock: FrozenClock) -> None:
    schedule_id = _add_daily(runtime)
    assert runtime.schedules.set_enabled(schedule_id, enabled=False)
    clock.advance(timedelta(hours=2))

    assert runtime.trigger.fire().created == 0


def test_lost_advance_race_is_tolerated(runtime: Runtime, clock: FrozenClock) -> None:
    schedule_id = _add_daily(runtime)
    clock.advance(timedelta(hours=2))
    stale = runtime.schedules.get_schedule(schedule_id)
    runtime.trigger.fire()

    assert runtime.schedules.advance_schedule(
        schedule_id=schedule_id,
        expected_next_run_at=stale.next_run_at,
        next_run_at=stale.next_run_at + timedelta(days=1),
        last_run_at=clock.now(),
    ) is False


def test_add_schedule_validates_input(runtime: Runtime) -> None:
    with pytest.raises(ValidationError):
        runtime.schedules.add_schedule(
            ScheduleCreate(
                template_id="t",
                name="Semanal",
                timing=ScheduleTiming(frequency=Frequency.WEEKLY, time_local="08:00"),
            ),
        )
    with pytest.raises(ValidationError):
        runtime.schedules.add_schedule(
            ScheduleCreate(
                template_id="t",
                name="Diario",
                timing=ScheduleTiming(frequency=Frequency.DAILY, time_local="08:00"),
                source_type="print",
            ),
        )
