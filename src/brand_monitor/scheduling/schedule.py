"""Report schedule timing: next-slot computation in the schedule's local timezone."""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from brand_monitor.errors import ValidationError

DEFAULT_TIMEZONE = "America/Bogota"
MAX_RECIPIENTS = 50

_TIME_LOCAL_RE = re.compile(r"^(\d{2}):(\d{2})$")


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"


@dataclass(slots=True, frozen=True)
class ScheduleTiming:
    """When a schedule fires. ``day_of_week`` counts from 0 = Sunday."""

    frequency: Frequency
    time_local: str
    timezone: str = DEFAULT_TIMEZONE
    day_of_week: int | None = None


@dataclass(slots=True)
class ScheduleCreate:
    template_id: str
    name: str
    timing: ScheduleTiming
    recipients: list[str] = field(default_factory=list)
    source_type: str = "news"
    enabled: bool = True


@dataclass(slots=True)
class ScheduleView:
    schedule_id: str
    template_id: str
    name: str
    enabled: bool
    timing: ScheduleTiming
    recipients: list[str]
    source_type: str
    next_run_at: datetime
    last_run_at: datetime | None
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "schedule_id": self.schedule_id,
            "template_id": self.template_id,
            "name": self.name,
            "enabled": self.enabled,
            "frequency": self.timing.frequency.value,
            "day_of_week": self.timing.day_of_week,
            "time_local": self.timing.time_local,
            "timezone": self.timing.timezone,
            "recipients": list(self.recipients),
            "source_type": self.source_type,
            "next_run_at": self.next_run_at.isoformat(),
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
        }


def parse_time_local(value: str) -> time:
    match = _TIME_LOCAL_RE.match(value.strip())
    if match is None:
        raise ValidationError("time_local must be HH:mm")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:  # noqa: PLR2004
        raise ValidationError("time_local must be HH:mm")
    return time(hour=hour, minute=minute)


def load_timezone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError) as error:
        raise ValidationError(f"Unknown timezone: {name!r}") from error


def validate_timing(timing: ScheduleTiming) -> None:
    parse_time_local(timing.time_local)
    load_timezone(timing.timezone)
    if timing.frequency is Frequency.WEEKLY and (
        timing.day_of_week is None or not 0 <= timing.day_of_week <= 6  # noqa: PLR2004
    ):
        raise ValidationError("day_of_week is required for weekly frequency and must be 0..6")


def compute_next_run_at(timing: ScheduleTiming, reference: datetime) -> datetime:
    """First slot strictly after ``reference``, returned in UTC.

    Slots sit at ``time_local`` wall-clock time in the schedule timezone, so a
    daily 08:00 schedule stays at 08:00 local across DST changes.
    """

    validate_timing(timing)
    zone = load_timezone(timing.timezone)
    target = parse_time_local(timing.time_local)
    local_ref = reference.astimezone(zone)
    passed = (local_ref.hour, local_ref.minute) >= (target.hour, target.minute)

    if timing.frequency is Frequency.DAILY:
        delta = 1 if passed else 0
    else:
        assert timing.day_of_week is not None
        sunday_based = (local_ref.weekday() + 1) % 7
        delta = (timing.day_of_week - sunday_based + 7) % 7
        if delta == 0 and passed:
            delta = 7

    slot_day = local_ref.date() + timedelta(days=delta)
    return _local_to_utc(slot_day, target, zone)


def _local_to_utc(day: date, at: time, zone: ZoneInfo) -> datetime:
    return datetime.combine(day, at, tzinfo=zone).astimezone(UTC)


def sanitize_recipients(values: Iterable[str]) -> list[str]:
    """Trim, lowercase and dedupe (first occurrence wins), keeping at most 50."""

    seen: dict[str, None] = {}
    for value in values:
        normalized = value.strip().lower()
        if normalized:
            seen.setdefault(normalized, None)
    return list(seen)[:MAX_RECIPIENTS]
