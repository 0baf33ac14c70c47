"""Controllers for brand-monitor CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from brand_monitor.aggregation.models import Window
from brand_monitor.config import Settings
from brand_monitor.content.models import (
    ClassificationWrite,
    ContentCreate,
    ContentState,
    SourceType,
    TermCreate,
    TermScope,
)
from brand_monitor.errors import ValidationError
from brand_monitor.runs.models import RunKind
from brand_monitor.runs.services import RunService
from brand_monitor.runtime import Runtime, open_runtime
from brand_monitor.scheduling.schedule import Frequency, ScheduleCreate, ScheduleTiming


@dataclass(slots=True)
class RunCreateCommand:
    """CLI input for accepting a run."""

    db_path: Path | None
    kind: str
    payload_json: str
    idempotency_key: str | None = None


@dataclass(slots=True)
class RunShowCommand:
    db_path: Path | None
    run_id: str
    show_events: bool = False


@dataclass(slots=True)
class RunListCommand:
    db_path: Path | None
    kind: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class RunApproveCommand:
    db_path: Path | None
    run_id: str
    actor_user_id: str


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for dispatcher execution."""

    db_path: Path | None
    once: bool
    max_runs: int | None
    max_idle_polls: int = 1
    pool_size: int | None = None


@dataclass(slots=True)
class WorkerReapCommand:
    db_path: Path | None


@dataclass(slots=True)
class ScheduleAddCommand:
    db_path: Path | None
    template_id: str
    name: str
    frequency: str
    time_local: str
    timezone: str
    day_of_week: int | None
    recipients: tuple[str, ...]
    source_type: str


@dataclass(slots=True)
class ScheduleTickCommand:
    db_path: Path | None


@dataclass(slots=True)
class IncidentsEvaluateCommand:
    db_path: Path | None
    source_type: str
    window_days: int | None


@dataclass(slots=True)
class IncidentsListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class IncidentsPatchCommand:
    db_path: Path | None
    incident_id: str
    actor_user_id: str
    reason: str
    status: str | None
    owner_user_id: str | None


@dataclass(slots=True)
class TermAddCommand:
    db_path: Path | None
    name: str
    scope: str | None
    max_articles_per_run: int


@dataclass(slots=True)
class ContentAddCommand:
    """CLI input for storing one content record (optionally pre-classified)."""

    db_path: Path | None
    source_type: str
    provider: str
    title: str
    canonical_url: str
    term_id: str | None
    source_name: str | None
    published_at: datetime | None
    sentimiento: str | None
    categoria: str | None


@dataclass(slots=True)
class WeightSetCommand:
    db_path: Path | None
    provider: str
    source_name: str | None
    weight: float
    is_active: bool


@dataclass(slots=True)
class FeedShowCommand:
    db_path: Path | None
    term_id: str
    limit: int


@dataclass(slots=True)
class SnapshotComputeCommand:
    db_path: Path | None
    source_type: str
    window_days: int | None
    formula_version: str | None


class BrandMonitorCliController:
    """Coordinates run, worker, schedule, incident and data CLI operations."""

    def create_run(self, command: RunCreateCommand) -> list[str]:
        payload = _parse_payload(command.payload_json)
        if command.idempotency_key is not None:
            payload["idempotency_key"] = command.idempotency_key
        with _runtime(command.db_path) as runtime:
            result = RunService(runtime).create_run(command.kind, payload)
        run = result.run
        lines = [
            "Run accepted: "
            f"run_id={run.run_id} kind={run.kind.value} status={run.status.value} "
            f"reused={str(result.reused).lower()}",
            f"Idempotency key: {run.idempotency_key}",
        ]
        if run.kind is RunKind.ANALYSIS:
            lines.append(f"Input count: {run.input_count}")
        return lines

    def show_run(self, command: RunShowCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            details = RunService(runtime).get_run_details(command.run_id)
        run = details.run
        lines = [
            f"Run: {run.run_id}",
            f"Kind: {run.kind.value}",
            f"Status: {run.status.value}",
            f"Idempotency key: {run.idempotency_key}",
            f"Created: {run.created_at.isoformat()}",
            f"Worker: {run.worker_id or '-'}",
        ]
        if run.deadline_at is not None:
            lines.append(f"Deadline: {run.deadline_at.isoformat()}")
        if run.error_kind is not None:
            lines.append(f"Error: {run.error_kind}: {run.error_message}")
        if run.output is not None:
            lines.append("Output:")
            lines.extend(json.dumps(run.output, indent=2, sort_keys=True, ensure_ascii=False).splitlines())
        if command.show_events:
            lines.append("Events:")
            for event in details.events:
                transition = (
                    f"{event.status_from.value if event.status_from else '-'}"
                    f" -> {event.status_to.value if event.status_to else '-'}"
                )
                lines.append(f"- {event.created_at.isoformat()} {event.event_type} {transition}")
        return lines

    def list_runs(self, command: RunListCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            runs = RunService(runtime).list_runs(
                kind=command.kind,
                status=command.status,
                limit=command.limit,
            )
        if not runs:
            return ["No runs found."]
        return [
            f"{run.run_id} kind={run.kind.value} status={run.status.value} "
            f"created={run.created_at.isoformat()}"
            for run in runs
        ]

    def approve_run(self, command: RunApproveCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            run = RunService(runtime).approve_report(
                command.run_id,
                actor_user_id=command.actor_user_id,
            )
        return [f"Report approved: run_id={run.run_id} status={run.status.value}"]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            pool_size = command.pool_size or runtime.settings.worker.pool_size
            if command.once:
                summary = runtime.dispatcher().run_once()
            elif pool_size > 1:
                pool = runtime.dispatcher_pool(pool_size)
                pool.start(max_idle_polls=command.max_idle_polls)
                try:
                    summary = pool.join(timeout=None)
                except KeyboardInterrupt:
                    summary = pool.stop()
            else:
                summary = runtime.dispatcher().run_loop(
                    max_runs=command.max_runs,
                    max_idle_polls=command.max_idle_polls,
                )
        return [
            "Worker summary: "
            f"processed={summary.processed} completed={summary.completed} "
            f"pending_review={summary.pending_review} failed={summary.failed} "
            f"timeouts={summary.timeouts} reaped={summary.reaped} "
            f"idle_polls={summary.idle_polls}",
        ]

    def reap(self, command: WorkerReapCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            reaped = runtime.dispatcher().reap()
        return [f"Reaped runs: {len(reaped)}", *[f"- {run_id}" for run_id in reaped]]

    def add_schedule(self, command: ScheduleAddCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            schedule = runtime.schedules.add_schedule(
                ScheduleCreate(
                    template_id=command.template_id,
                    name=command.name,
                    timing=ScheduleTiming(
                        frequency=Frequency(command.frequency),
                        time_local=command.time_local,
                        timezone=command.timezone,
                        day_of_week=command.day_of_week,
                    ),
                    recipients=list(command.recipients),
                    source_type=command.source_type,
                ),
            )
        return [
            f"Schedule added: schedule_id={schedule.schedule_id} "
            f"next_run_at={schedule.next_run_at.isoformat()}",
        ]

    def tick_schedules(self, command: ScheduleTickCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            summary = runtime.trigger.fire()
        return [
            "Schedule tick: "
            f"created={summary.created} reused={summary.reused} skipped={summary.skipped}",
            *[f"- {run_id}" for run_id in summary.run_ids],
        ]

    def evaluate_incidents(self, command: IncidentsEvaluateCommand) -> list[str]:
        payload: dict[str, Any] = {"source_type": command.source_type}
        if command.window_days is not None:
            payload["window_days"] = command.window_days
        with _runtime(command.db_path) as runtime:
            result = RunService(runtime).evaluate_incidents(payload)
        return [
            "Incident evaluation accepted: "
            f"run_id={result.run.run_id} status={result.run.status.value} "
            f"reused={str(result.reused).lower()}",
        ]

    def list_incidents(self, command: IncidentsListCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            incidents = RunService(runtime).list_incidents(
                status=command.status,
                limit=command.limit,
            )
        if not incidents:
            return ["No incidents found."]
        return [
            f"{incident.incident_id} {incident.severity.value} status={incident.status.value} "
            f"signature={incident.signature} value={incident.trigger_value:.2f} "
            f"sla_due={incident.sla_due_at.isoformat()} owner={incident.owner_user_id or '-'}"
            for incident in incidents
        ]

    def patch_incident(self, command: IncidentsPatchCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            incident = RunService(runtime).patch_incident(
                command.incident_id,
                {
                    "actor_user_id": command.actor_user_id,
                    "reason": command.reason,
                    "status": command.status,
                    "owner_user_id": command.owner_user_id,
                },
            )
        return [
            f"Incident updated: incident_id={incident.incident_id} "
            f"status={incident.status.value} owner={incident.owner_user_id or '-'} "
            f"notes={len(incident.notes)}",
        ]

    def add_term(self, command: TermAddCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            term = runtime.content.add_term(
                TermCreate(
                    name=command.name,
                    scope=TermScope(command.scope) if command.scope else None,
                    max_articles_per_run=command.max_articles_per_run,
                ),
            )
        return [f"Term added: term_id={term.term_id} name={term.name} scope={term.scope or '-'}"]

    def add_content(self, command: ContentAddCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            record = runtime.content.add_content(
                ContentCreate(
                    source_type=SourceType(command.source_type),
                    provider=command.provider,
                    title=command.title,
                    canonical_url=command.canonical_url,
                    term_id=command.term_id,
                    source_name=command.source_name,
                    state=ContentState.ACTIVE,
                    published_at=command.published_at,
                ),
            )
            if command.sentimiento:
                runtime.content.save_classification(
                    ClassificationWrite(
                        content_id=record.content_id,
                        sentimiento=command.sentimiento,
                        categoria=command.categoria,
                        created_by="cli",
                    ),
                )
        return [f"Content added: content_id={record.content_id}"]

    def set_weight(self, command: WeightSetCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            weight = runtime.content.set_source_weight(
                provider=command.provider,
                source_name=command.source_name,
                weight=command.weight,
                is_active=command.is_active,
            )
        return [
            f"Source weight set: provider={weight.provider} "
            f"source_name={weight.source_name or '*'} weight={weight.weight:.2f} "
            f"active={str(weight.is_active).lower()}",
        ]

    def show_feed(self, command: FeedShowCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            page = RunService(runtime).feed(term_id=command.term_id, limit=command.limit)
        lines = [f"Feed for {page.term.name}: page_size={page.page_size} items={len(page.items)}"]
        for item in page.items:
            sentiment = item.classification.sentimiento if item.classification else "-"
            lines.append(
                f"- {item.record.effective_at.isoformat()} [{sentiment}] "
                f"{item.record.title} ({item.record.provider})",
            )
        return lines

    def compute_snapshot(self, command: SnapshotComputeCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            days = command.window_days or runtime.settings.aggregation.window_days
            window = Window.ending_at(runtime.clock.now(), days=days)
            stored = runtime.kpi.compute_snapshot(
                window=window,
                source_type=command.source_type,
                formula_version=command.formula_version,
            )
        totals = stored.snapshot.totals
        lines = [
            f"Snapshot: {stored.snapshot_id} ({stored.snapshot.formula_version})",
            f"Window: {window.start.isoformat()} -> {window.end.isoformat()}",
            f"Items: {totals.items} classified={totals.classified_items} "
            f"insufficient_data={str(totals.insufficient_data).lower()}",
            f"BHS: {totals.bhs:.2f} riesgo_activo={totals.riesgo_activo:.2f} "
            f"sentimiento_neto={totals.sentimiento_neto:.2f} severidad={totals.severidad.value}",
        ]
        for scope, bucket in sorted(stored.snapshot.by_scope.items()):
            lines.append(
                f"- {scope}: items={bucket.metrics.items} sov={bucket.sov:.2f} "
                f"bhs={bucket.metrics.bhs:.2f} riesgo={bucket.metrics.riesgo_activo:.2f}",
            )
        return lines


def _parse_payload(raw: str) -> dict[str, Any]:
    try:
        payload = json.loads(raw or "{}")
    except json.JSONDecodeError as error:
        raise ValidationError(f"Payload is not valid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise ValidationError("Payload must be a JSON object.")
    return payload


@contextmanager
def _runtime(db_path: Path | None) -> Iterator[Runtime]:
    settings = Settings.from_env(db_path=db_path)
    with open_runtime(settings) as runtime:
        yield runtime
