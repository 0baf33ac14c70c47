"""Threshold rules over persisted KPI snapshots."""

from __future__ import annotations

import logging

from brand_monitor.aggregation.models import BucketMetrics, SnapshotView, Window
from brand_monitor.aggregation.repository import SnapshotRepository
from brand_monitor.config import IncidentSettings
from brand_monitor.errors import InsufficientDataError
from brand_monitor.incidents.models import EvaluationResult, IncidentTrigger
from brand_monitor.incidents.repository import IncidentRepository

logger = logging.getLogger(__name__)

TRIGGER_METRIC = "riesgo_activo"


def incident_signature(source_type: str, scope: str) -> str:
    return f"{source_type}:{scope}:{TRIGGER_METRIC}"


class IncidentEvaluator:
    """Opens or refreshes incidents for scopes whose risk crossed the configured rule.

    The evaluator never acknowledges or resolves; those are human decisions made
    through ``IncidentRepository.patch_incident``.
    """

    def __init__(
        self,
        *,
        snapshots: SnapshotRepository,
        incidents: IncidentRepository,
        settings: IncidentSettings,
    ) -> None:
        self.snapshots = snapshots
        self.incidents = incidents
        self.settings = settings

    def evaluate(
        self,
        window: Window,
        *,
        source_type: str,
        formula_version: str,
    ) -> EvaluationResult:
        try:
            snapshot = self.snapshots.require_sufficient_snapshot(
                window=window,
                source_type=source_type,
                formula_version=formula_version,
            )
        except InsufficientDataError as error:
            logger.info("%s; nothing to evaluate", error.message)
            return EvaluationResult(insufficient_data=True)
        return self.evaluate_snapshot(snapshot)

    def evaluate_snapshot(self, stored: SnapshotView) -> EvaluationResult:
        result = EvaluationResult(snapshot_id=stored.snapshot_id)
        snapshot = stored.snapshot
        for scope, bucket in sorted(snapshot.by_scope.items()):
            if not self.triggers(bucket.metrics):
                result.skipped += 1
                continue
            _, created = self.incidents.upsert_trigger(
                IncidentTrigger(
                    signature=incident_signature(snapshot.source_type, scope),
                    scope=scope,
                    source_type=snapshot.source_type,
                    severity=bucket.metrics.severidad,
                    trigger_metric=TRIGGER_METRIC,
                    trigger_value=bucket.metrics.riesgo_activo,
                    classified_items=bucket.metrics.classified_items,
                    snapshot_id=stored.snapshot_id,
                    window_start=snapshot.window.start,
                    window_end=snapshot.window.end,
                ),
            )
            if created:
                result.incidents_opened += 1
            else:
                result.incidents_updated += 1
        logger.info(
            "Incident evaluation done: snapshot_id=%s opened=%d updated=%d skipped=%d",
            stored.snapshot_id,
            result.incidents_opened,
            result.incidents_updated,
            result.skipped,
        )
        return result

    def triggers(self, metrics: BucketMetrics) -> bool:
        if metrics.classified_items <= 0 or metrics.insufficient_data:
            return False
        if metrics.riesgo_activo > self.settings.riesgo_bound:
            return True
        return metrics.severidad.value in self.settings.severity_tiers
