"""Object graph shared by the CLI, the API facade and tests."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from brand_monitor.aggregation.repository import SnapshotRepository
from brand_monitor.aggregation.service import KpiService
from brand_monitor.classification.command_classifier import CommandClassifier
from brand_monitor.clock import Clock, SystemClock
from brand_monitor.config import Settings
from brand_monitor.content.contracts import ArtifactRenderer, Classifier
from brand_monitor.content.repository import ContentRepository
from brand_monitor.incidents.evaluator import IncidentEvaluator
from brand_monitor.incidents.repository import IncidentRepository
from brand_monitor.rendering import FileArtifactRenderer
from brand_monitor.runs.dispatcher import DispatcherPool, RunDispatcher
from brand_monitor.runs.gate import IdempotencyGate
from brand_monitor.runs.handlers import RunHandler, build_handlers
from brand_monitor.runs.models import RunKind
from brand_monitor.runs.policy import PolicyTable
from brand_monitor.runs.repository import RunRepository
from brand_monitor.scheduling.repository import ScheduleRepository
from brand_monitor.scheduling.trigger import ScheduleTrigger


@dataclass(slots=True)
class Runtime:
    """Repositories and services wired against one SQLite database."""

    settings: Settings
    clock: Clock
    runs: RunRepository
    content: ContentRepository
    snapshots: SnapshotRepository
    incidents: IncidentRepository
    schedules: ScheduleRepository
    policies: PolicyTable
    gate: IdempotencyGate
    kpi: KpiService
    evaluator: IncidentEvaluator
    trigger: ScheduleTrigger
    handlers: dict[RunKind, RunHandler]

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        clock: Clock | None = None,
        classifier: Classifier | None = None,
        renderer: ArtifactRenderer | None = None,
    ) -> Runtime:
        active_clock: Clock = clock or SystemClock()
        common = {
            "tenant_id": settings.tenant.tenant_id,
            "clock": active_clock,
            "sqlite_busy_timeout_ms": settings.sqlite_busy_timeout_ms,
        }
        runs = RunRepository(settings.db_path, **common)
        runs.init_schema()
        content = ContentRepository(settings.db_path, **common)
        snapshots = SnapshotRepository(settings.db_path, **common)
        incidents = IncidentRepository(settings.db_path, **common)
        schedules = ScheduleRepository(settings.db_path, **common)

        policies = PolicyTable.from_settings(settings.runs)
        gate = IdempotencyGate(repository=runs, policies=policies, clock=active_clock)
        kpi = KpiService(
            content_store=content,
            term_store=content,
            weight_store=content,
            snapshots=snapshots,
            config=settings.aggregation,
        )
        evaluator = IncidentEvaluator(
            snapshots=snapshots,
            incidents=incidents,
            settings=settings.incidents,
        )
        if classifier is None and settings.classifier.command_template.strip():
            classifier = CommandClassifier(
                command_template=settings.classifier.command_template,
                timeout_seconds=settings.classifier.timeout_seconds,
            )
        handlers = build_handlers(
            settings=settings,
            content_store=content,
            kpi_service=kpi,
            incidents=incidents,
            evaluator=evaluator,
            renderer=renderer or FileArtifactRenderer(settings.reports.artifacts_dir),
            classifier=classifier,
            clock=active_clock,
        )
        return cls(
            settings=settings,
            clock=active_clock,
            runs=runs,
            content=content,
            snapshots=snapshots,
            incidents=incidents,
            schedules=schedules,
            policies=policies,
            gate=gate,
            kpi=kpi,
            evaluator=evaluator,
            trigger=ScheduleTrigger(schedules=schedules, gate=gate, clock=active_clock),
            handlers=handlers,
        )

    def dispatcher(
        self,
        *,
        worker_id: str | None = None,
        stop_event: threading.Event | None = None,
    ) -> RunDispatcher:
        return RunDispatcher(
            repository=self.runs,
            handlers=self.handlers,
            policies=self.policies,
            worker_id=worker_id or self.settings.worker.worker_id,
            clock=self.clock,
            poll_interval_seconds=self.settings.worker.poll_interval_seconds,
            stop_event=stop_event,
        )

    def dispatcher_pool(self, size: int | None = None) -> DispatcherPool:
        stop_event = threading.Event()
        count = size or self.settings.worker.pool_size
        base_id = self.settings.worker.worker_id
        return DispatcherPool(
            [
                self.dispatcher(worker_id=f"{base_id}-{index}", stop_event=stop_event)
                for index in range(count)
            ],
            stop_event=stop_event,
        )

    def close(self) -> None:
        for repository in (self.runs, self.content, self.snapshots, self.incidents, self.schedules):
            repository.close()


@contextmanager
def open_runtime(settings: Settings, *, clock: Clock | None = None) -> Iterator[Runtime]:
    runtime = Runtime.build(settings, clock=clock)
    try:
        yield runtime
    finally:
        runtime.close()
