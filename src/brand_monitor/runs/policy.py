"""Per-kind run policy table.

Behavioral differences between run kinds live here as data instead of in
per-kind control flow: how a settled run is treated on a repeated request,
whether failed runs are reusable, how long a settled run stays reusable, the
execution deadline and whether output passes through human review.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import timedelta
from enum import Enum

from brand_monitor.config import RunSettings
from brand_monitor.runs.models import RunKind


class TerminalReuse(str, Enum):
    """What a repeated request does once the previous run has settled."""

    REUSE = "reuse"
    FRESH = "fresh"


@dataclass(slots=True, frozen=True)
class RunPolicy:
    terminal_reuse: TerminalReuse
    timeout_seconds: int
    reuse_failed: bool = False
    retention: timedelta | None = None
    approval_gate: bool = False


DEFAULT_POLICIES: dict[RunKind, RunPolicy] = {
    RunKind.ANALYSIS: RunPolicy(
        terminal_reuse=TerminalReuse.REUSE,
        timeout_seconds=900,
        reuse_failed=False,
        retention=timedelta(hours=24),
    ),
    RunKind.REPORT: RunPolicy(
        terminal_reuse=TerminalReuse.FRESH,
        timeout_seconds=600,
        approval_gate=True,
    ),
    RunKind.EXPORT: RunPolicy(
        terminal_reuse=TerminalReuse.FRESH,
        timeout_seconds=300,
    ),
    # Keys are hour-aligned windows, so reuse is bounded by the key itself.
    RunKind.INCIDENT_EVALUATION: RunPolicy(
        terminal_reuse=TerminalReuse.REUSE,
        timeout_seconds=120,
        reuse_failed=False,
    ),
}


@dataclass(slots=True)
class PolicyTable:
    """Lookup of RunPolicy by kind."""

    policies: dict[RunKind, RunPolicy] = field(default_factory=lambda: dict(DEFAULT_POLICIES))

    def for_kind(self, kind: RunKind) -> RunPolicy:
        return self.policies[kind]

    def timeout_seconds(self, kind: RunKind) -> int:
        return self.policies[kind].timeout_seconds

    @classmethod
    def from_settings(cls, settings: RunSettings) -> PolicyTable:
        """Apply configured timeouts and reuse knobs on top of the defaults."""

        policies = dict(DEFAULT_POLICIES)
        policies[RunKind.ANALYSIS] = replace(
            policies[RunKind.ANALYSIS],
            timeout_seconds=settings.analysis_timeout_seconds,
            reuse_failed=settings.analysis_reuse_failed,
            retention=(
                timedelta(hours=settings.analysis_retention_hours)
                if settings.analysis_retention_hours > 0
                else None
            ),
        )
        policies[RunKind.REPORT] = replace(
            policies[RunKind.REPORT],
            timeout_seconds=settings.report_timeout_seconds,
            approval_gate=settings.report_approval_gate,
        )
        policies[RunKind.EXPORT] = replace(
            policies[RunKind.EXPORT],
            timeout_seconds=settings.export_timeout_seconds,
        )
        policies[RunKind.INCIDENT_EVALUATION] = replace(
            policies[RunKind.INCIDENT_EVALUATION],
            timeout_seconds=settings.incident_evaluation_timeout_seconds,
        )
        return cls(policies=policies)
