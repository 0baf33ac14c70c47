"""Per-kind run handlers executed by the dispatcher off the request path."""

from __future__ import annotations

import csv
import io
import json
import logging
from typing import Any, Protocol

from brand_monitor.aggregation.models import SnapshotView, Window
from brand_monitor.aggregation.service import KpiService
from brand_monitor.clock import Clock
from brand_monitor.config import Settings
from brand_monitor.content.contracts import (
    Artifact,
    ArtifactRenderer,
    Classifier,
    ContentStore,
)
from brand_monitor.content.models import (
    ClassificationRecord,
    ClassificationWrite,
    ContentQuery,
    ContentRecord,
    FeedItem,
    effective_classification,
)
from brand_monitor.errors import RunTimeoutError, ValidationError
from brand_monitor.incidents.evaluator import IncidentEvaluator
from brand_monitor.incidents.models import ACTIVE_INCIDENT_STATUSES
from brand_monitor.incidents.repository import IncidentRepository
from brand_monitor.reports import (
    ACTIVE_INCIDENTS_SCAN_LIMIT,
    BLOCKED_LOW_CONFIDENCE,
    TOP_CONTENT_LIMIT,
    build_recommendations,
    build_summary,
    compute_confidence,
)
from brand_monitor.runs.models import HandlerOutcome, RunKind, RunView

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = (
    "id",
    "source_type",
    "term_id",
    "provider",
    "source_name",
    "source_id",
    "state",
    "title",
    "summary",
    "content",
    "canonical_url",
    "image_url",
    "language",
    "category",
    "published_at",
    "source_score",
    "categoria",
    "sentimiento",
    "created_at",
    "updated_at",
)


class RunHandler(Protocol):
    def handle(self, run: RunView) -> HandlerOutcome: ...


def descriptor_window(descriptor: dict[str, Any]) -> Window:
    raw = descriptor.get("window")
    if not isinstance(raw, dict):
        raise ValidationError("Run input has no window.")
    return Window.from_dict(raw)


def _classifications_by_content(
    content_store: ContentStore,
    records: list[ContentRecord],
) -> dict[str, list[ClassificationRecord]]:
    grouped: dict[str, list[ClassificationRecord]] = {}
    for item in content_store.classifications_for([record.content_id for record in records]):
        grouped.setdefault(item.content_id, []).append(item)
    return grouped


class AnalysisHandler:
    """Classify what is still unclassified, then persist a fresh KPI snapshot."""

    def __init__(
        self,
        *,
        content_store: ContentStore,
        kpi_service: KpiService,
        classifier: Classifier | None,
        clock: Clock,
    ) -> None:
        self.content_store = content_store
        self.kpi_service = kpi_service
        self.classifier = classifier
        self.clock = clock

    def handle(self, run: RunView) -> HandlerOutcome:
        descriptor = run.input_descriptor
        window = descriptor_window(descriptor)
        source_type = str(descriptor["source_type"])
        records = self.content_store.query(
            ContentQuery(
                source_type=source_type,
                term_ids=tuple(descriptor.get("term_ids") or ()),
                window_start=window.start,
                window_end=window.end,
                limit=int(descriptor["limit"]),
            ),
        )
        classified_now = self._classify_missing(run, records, str(descriptor["prompt_version"]))
        stored = self.kpi_service.compute_snapshot(
            window=window,
            source_type=source_type,
            formula_version=descriptor.get("formula_version"),
        )
        return HandlerOutcome(
            output={
                "snapshot_id": stored.snapshot_id,
                "scope": descriptor["scope"],
                "input_count": len(records),
                "classified_now": classified_now,
                "insufficient_data": stored.snapshot.insufficient_data,
                "result": _scoped_result(str(descriptor["scope"]), stored),
            },
        )

    def _classify_missing(self, run: RunView, records: list[ContentRecord], prompt_version: str) -> int:
        if self.classifier is None or not records:
            return 0
        existing = _classifications_by_content(self.content_store, records)
        classified = 0
        for record in records:
            if effective_classification(existing.get(record.content_id, [])) is not None:
                continue
            if run.deadline_at is not None and self.clock.now() >= run.deadline_at:
                raise RunTimeoutError(
                    f"Analysis run {run.run_id} hit its deadline after classifying "
                    f"{classified} record(s).",
                )
            result = self.classifier.classify(record)
            self.content_store.save_classification(
                ClassificationWrite(
                    content_id=record.content_id,
                    sentimiento=result.sentimiento,
                    categoria=result.categoria,
                    prompt_version=prompt_version,
                    created_by=f"run:{run.run_id}",
                ),
            )
            classified += 1
        logger.info("Analysis run %s classified %d record(s)", run.run_id, classified)
        return classified


def _scoped_result(scope: str, stored: SnapshotView) -> dict[str, Any]:
    full = stored.snapshot.to_dict()
    if scope == "overview":
        return {"totals": full["totals"], "by_scope": full["by_scope"]}
    if scope == "channel":
        return {"totals": full["totals"], "by_provider": full["by_provider"]}
    if scope == "competitors":
        return {"sov_by_scope": full["totals"]["sov_by_scope"], "by_scope": full["by_scope"]}
    return full


class ReportHandler:
    """Score a report window; low confidence parks the output for review."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        content_store: ContentStore,
        kpi_service: KpiService,
        incidents: IncidentRepository,
        renderer: ArtifactRenderer,
        confidence_threshold: float,
        approval_gate: bool = True,
    ) -> None:
        self.content_store = content_store
        self.kpi_service = kpi_service
        self.incidents = incidents
        self.renderer = renderer
        self.confidence_threshold = confidence_threshold
        self.approval_gate = approval_gate

    def handle(self, run: RunView) -> HandlerOutcome:
        descriptor = run.input_descriptor
        window = descriptor_window(descriptor)
        source_type = str(descriptor.get("source_type") or "news")
        threshold = float(descriptor.get("confidence_threshold") or self.confidence_threshold)

        snapshot = self.kpi_service.latest_or_compute(window=window, source_type=source_type)
        active_incidents = [
            incident
            for incident in self.incidents.list_incidents(limit=ACTIVE_INCIDENTS_SCAN_LIMIT)
            if incident.status in ACTIVE_INCIDENT_STATUSES
        ]
        records = self.content_store.query(
            ContentQuery(
                source_type=source_type,
                window_start=window.start,
                window_end=window.end,
                limit=TOP_CONTENT_LIMIT,
            ),
        )
        grouped = _classifications_by_content(self.content_store, records)
        top_content = [
            FeedItem(
                record=record,
                classification=effective_classification(grouped.get(record.content_id, [])),
            )
            for record in records
        ]

        totals = snapshot.snapshot.totals
        confidence = compute_confidence(
            totals,
            active_incidents=len(active_incidents),
            top_content=len(top_content),
        )
        recommendations = build_recommendations(
            totals,
            brand_sov=snapshot.snapshot.sov_by_scope.get("brand", 0.0),
            active_incidents=len(active_incidents),
            top_content=len(top_content),
        )
        summary = build_summary(
            snapshot=snapshot,
            confidence=confidence,
            threshold=threshold,
            approval_gate=self.approval_gate,
            incidents=active_incidents,
            top_content=top_content,
            recommendations=recommendations,
        )
        summary["template_id"] = descriptor.get("template_id")
        summary["schedule_id"] = descriptor.get("schedule_id")
        summary["recipients"] = list(descriptor.get("recipients") or [])

        artifact_url = self.renderer.render(
            run,
            Artifact(
                extension="json",
                media_type="application/json",
                body=json.dumps(summary, ensure_ascii=False, indent=2, sort_keys=True),
            ),
        )
        needs_review = self.approval_gate and confidence < threshold
        return HandlerOutcome(
            output={
                "snapshot_id": snapshot.snapshot_id,
                "confidence": confidence,
                "confidence_threshold": threshold,
                "recommendations": recommendations,
                "artifact_url": artifact_url,
                "blocked_reason": BLOCKED_LOW_CONFIDENCE if needs_review else None,
            },
            needs_review=needs_review,
            review_reason=BLOCKED_LOW_CONFIDENCE if needs_review else None,
        )


class ExportHandler:
    """Write matching content records with their effective classification as CSV."""

    def __init__(self, *, content_store: ContentStore, renderer: ArtifactRenderer) -> None:
        self.content_store = content_store
        self.renderer = renderer

    def handle(self, run: RunView) -> HandlerOutcome:
        descriptor = run.input_descriptor
        window = descriptor_window(descriptor) if descriptor.get("window") else None
        records = self.content_store.query(
            ContentQuery(
                source_type=descriptor.get("source_type"),
                term_ids=tuple(descriptor.get("term_ids") or ()),
                states=tuple(descriptor.get("states") or ("active",)),
                window_start=window.start if window else None,
                window_end=window.end if window else None,
                limit=int(descriptor["limit"]) if descriptor.get("limit") else None,
            ),
        )
        grouped = _classifications_by_content(self.content_store, records)

        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(EXPORT_COLUMNS)
        for record in records:
            writer.writerow(
                _export_row(record, effective_classification(grouped.get(record.content_id, []))),
            )
        artifact_url = self.renderer.render(
            run,
            Artifact(extension="csv", media_type="text/csv", body=buffer.getvalue()),
        )
        return HandlerOutcome(
            output={
                "artifact_url": artifact_url,
                "row_count": len(records),
                "columns": list(EXPORT_COLUMNS),
            },
        )


def _export_row(record: ContentRecord, classification: ClassificationRecord | None) -> list[str]:
    def text(value: object) -> str:
        return "" if value is None else str(value)

    return [
        record.content_id,
        record.source_type,
        text(record.term_id),
        record.provider,
        text(record.source_name),
        text(record.source_id),
        record.state,
        record.title,
        text(record.summary),
        text(record.content),
        record.canonical_url,
        text(record.image_url),
        text(record.language),
        text(record.category),
        record.published_at.isoformat() if record.published_at else "",
        text(record.source_score),
        text(classification.categoria if classification else None),
        text(classification.sentimiento if classification else None),
        record.created_at.isoformat(),
        record.updated_at.isoformat(),
    ]


class IncidentEvaluationHandler:
    """Make sure a snapshot exists for the window, then apply incident rules to it."""

    def __init__(self, *, kpi_service: KpiService, evaluator: IncidentEvaluator) -> None:
        self.kpi_service = kpi_service
        self.evaluator = evaluator

    def handle(self, run: RunView) -> HandlerOutcome:
        descriptor = run.input_descriptor
        window = descriptor_window(descriptor)
        source_type = str(descriptor.get("source_type") or "news")
        formula_version = str(
            descriptor.get("formula_version") or self.kpi_service.config.formula_version,
        )
        self.kpi_service.latest_or_compute(
            window=window,
            source_type=source_type,
            formula_version=formula_version,
        )
        result = self.evaluator.evaluate(
            window,
            source_type=source_type,
            formula_version=formula_version,
        )
        return HandlerOutcome(output={**result.to_dict(), "window": window.to_dict()})


def build_handlers(  # noqa: PLR0913
    *,
    settings: Settings,
    content_store: ContentStore,
    kpi_service: KpiService,
    incidents: IncidentRepository,
    evaluator: IncidentEvaluator,
    renderer: ArtifactRenderer,
    classifier: Classifier | None,
    clock: Clock,
) -> dict[RunKind, RunHandler]:
    return {
        RunKind.ANALYSIS: AnalysisHandler(
            content_store=content_store,
            kpi_service=kpi_service,
            classifier=classifier,
            clock=clock,
        ),
        RunKind.REPORT: ReportHandler(
            content_store=content_store,
            kpi_service=kpi_service,
            incidents=incidents,
            renderer=renderer,
            confidence_threshold=settings.reports.confidence_threshold,
            approval_gate=settings.runs.report_approval_gate,
        ),
        RunKind.EXPORT: ExportHandler(content_store=content_store, renderer=renderer),
        RunKind.INCIDENT_EVALUATION: IncidentEvaluationHandler(
            kpi_service=kpi_service,
            evaluator=evaluator,
        ),
    }
