"""Deterministic report scoring and recommendations."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from brand_monitor.aggregation.models import BucketMetrics, SnapshotView
from brand_monitor.content.models import FeedItem
from brand_monitor.incidents.models import IncidentView

REPORT_FORMULA_VERSION = "report-v1-deterministic"
TOP_CONTENT_LIMIT = 12
ACTIVE_INCIDENTS_SCAN_LIMIT = 120
MAX_RECOMMENDATIONS = 6
BLOCKED_LOW_CONFIDENCE = "confidence_below_threshold"

HIGH_RISK = 60.0
LOW_BRAND_SOV = 50.0


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def compute_confidence(
    totals: BucketMetrics,
    *,
    active_incidents: int,
    top_content: int,
) -> float:
    """Confidence in ``[0, 1]``, rounded to three decimals.

    Rewards classified coverage, volume, brand health and low risk; penalizes
    open incidents.
    """

    coverage = _clamp(totals.classified_items / 120)
    volume = _clamp(totals.items / 180)
    bhs_quality = _clamp(totals.bhs / 100)
    low_risk = 1 - _clamp(totals.riesgo_activo / 100)
    incident_penalty = _clamp(active_incidents / 6)
    content_signal = _clamp(top_content / 8)

    value = (
        0.2
        + coverage * 0.25
        + volume * 0.2
        + bhs_quality * 0.2
        + low_risk * 0.1
        + content_signal * 0.1
        - incident_penalty * 0.15
    )
    return _clamp(round(value * 1000) / 1000)


def build_recommendations(
    totals: BucketMetrics,
    *,
    brand_sov: float,
    active_incidents: int,
    top_content: int,
) -> list[str]:
    recommendations: list[str] = []
    if totals.riesgo_activo >= HIGH_RISK:
        recommendations.append(
            "Activar plan de contencion reputacional para riesgo alto en noticias de la "
            "ventana actual.",
        )
    if brand_sov < LOW_BRAND_SOV:
        recommendations.append(
            "Incrementar cobertura de mensajes de marca para recuperar share of voice frente "
            "a competencia.",
        )
    if active_incidents > 0:
        recommendations.append(
            "Priorizar triage de incidentes abiertos y cerrar owners con SLA en el tablero de "
            "monitoreo.",
        )
    if top_content == 0:
        recommendations.append(
            "Revisar terminos y conectores activos para evitar perdida de senal de contenido "
            "en reportes.",
        )
    if not recommendations:
        recommendations.append(
            "Mantener operacion actual y monitorear tendencia semanal de BHS y riesgo activo.",
        )
        recommendations.append(
            "Ejecutar revision editorial de top notas para validar consistencia del tono "
            "clasificado.",
        )
    return recommendations[:MAX_RECOMMENDATIONS]


def build_summary(  # noqa: PLR0913
    *,
    snapshot: SnapshotView,
    confidence: float,
    threshold: float,
    approval_gate: bool,
    incidents: Sequence[IncidentView],
    top_content: Sequence[FeedItem],
    recommendations: list[str],
) -> dict[str, Any]:
    kpis = snapshot.snapshot
    return {
        "formula_version": REPORT_FORMULA_VERSION,
        "snapshot_id": snapshot.snapshot_id,
        "kpi_formula_version": kpis.formula_version,
        "confidence": confidence,
        "confidence_threshold": threshold,
        "status_preview": (
            "pending_review" if approval_gate and confidence < threshold else "completed"
        ),
        "window": {**kpis.window.to_dict(), "source_type": kpis.source_type},
        "kpis": {
            **kpis.totals.to_dict(),
            "sov_by_scope": dict(sorted(kpis.sov_by_scope.items())),
        },
        "by_scope": {
            scope: {**bucket.metrics.to_dict(), "sov": bucket.sov}
            for scope, bucket in sorted(kpis.by_scope.items())
        },
        "incidents": {
            "active_count": len(incidents),
            "top": [
                {
                    "incident_id": incident.incident_id,
                    "scope": incident.scope,
                    "severity": incident.severity.value,
                    "status": incident.status.value,
                    "trigger_value": incident.trigger_value,
                    "sla_due_at": incident.sla_due_at.isoformat(),
                }
                for incident in incidents[:5]
            ],
        },
        "content": {
            "top_headlines": [
                {
                    "content_id": item.record.content_id,
                    "provider": item.record.provider,
                    "title": item.record.title,
                    "published_at": item.record.effective_at.isoformat(),
                    "sentiment": item.classification.sentimiento if item.classification else None,
                    "category": item.record.category,
                    "source_score": item.record.source_score,
                }
                for item in top_content[:5]
            ],
        },
        "recommendations": recommendations,
    }
