"""KPI snapshot value types."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from brand_monitor.errors import ValidationError
from brand_monitor.storage.common import from_iso


class Severity(str, Enum):
    SEV1 = "SEV1"
    SEV2 = "SEV2"
    SEV3 = "SEV3"
    SEV4 = "SEV4"


@dataclass(slots=True, frozen=True)
class Window:
    """Half-open time window ``[start, end)``."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValidationError("Window bounds must be timezone-aware.")
        if self.start >= self.end:
            raise ValidationError("Window start must be before window end.")

    @classmethod
    def ending_at(cls, end: datetime, *, days: int) -> Window:
        return cls(start=end - timedelta(days=days), end=end)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Window:
        try:
            return cls(start=from_iso(str(payload["start"])), end=from_iso(str(payload["end"])))
        except (KeyError, ValueError) as error:
            raise ValidationError(f"Invalid window: {payload!r}") from error

    def contains(self, value: datetime) -> bool:
        return self.start <= value < self.end

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(slots=True, frozen=True)
class BucketMetrics:
    """Sentiment, risk and quality metrics for one slice of content."""

    items: int
    classified_items: int
    positivos: int
    negativos: int
    neutrales: int
    sentimiento_neto: float
    riesgo_activo: float
    quality_score: float
    bhs: float
    severidad: Severity
    insufficient_data: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": self.items,
            "classified_items": self.classified_items,
            "positivos": self.positivos,
            "negativos": self.negativos,
            "neutrales": self.neutrales,
            "sentimiento_neto": self.sentimiento_neto,
            "riesgo_activo": self.riesgo_activo,
            "quality_score": self.quality_score,
            "bhs": self.bhs,
            "severidad": self.severidad.value,
            "insufficient_data": self.insufficient_data,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> BucketMetrics:
        return cls(
            items=int(payload["items"]),
            classified_items=int(payload["classified_items"]),
            positivos=int(payload["positivos"]),
            negativos=int(payload["negativos"]),
            neutrales=int(payload["neutrales"]),
            sentimiento_neto=float(payload["sentimiento_neto"]),
            riesgo_activo=float(payload["riesgo_activo"]),
            quality_score=float(payload["quality_score"]),
            bhs=float(payload["bhs"]),
            severidad=Severity(payload["severidad"]),
            insufficient_data=bool(payload["insufficient_data"]),
        )


@dataclass(slots=True, frozen=True)
class ScopeBucket:
    scope: str
    metrics: BucketMetrics
    sov: float


@dataclass(slots=True, frozen=True)
class ProviderBucket:
    provider: str
    metrics: BucketMetrics


@dataclass(slots=True, frozen=True)
class Diagnostics:
    unscoped_items: int
    unknown_sentiment_items: int


@dataclass(slots=True, frozen=True)
class KpiSnapshot:
    """Versioned KPI computation result.

    ``to_json`` is canonical: identical inputs produce byte-identical output.
    ``computed_at`` is intentionally absent; it belongs to the persisted row.
    """

    window: Window
    source_type: str
    formula_version: str
    parameters: dict[str, Any]
    totals: BucketMetrics
    sov_by_scope: dict[str, float]
    by_scope: dict[str, ScopeBucket]
    by_provider: list[ProviderBucket]
    diagnostics: Diagnostics

    @property
    def insufficient_data(self) -> bool:
        return self.totals.insufficient_data

    def to_dict(self) -> dict[str, Any]:
        totals = self.totals.to_dict()
        totals["sov_by_scope"] = dict(sorted(self.sov_by_scope.items()))
        return {
            "window": self.window.to_dict(),
            "source_type": self.source_type,
            "formula_version": self.formula_version,
            "parameters": self.parameters,
            "totals": totals,
            "by_scope": {
                scope: {**bucket.metrics.to_dict(), "sov": bucket.sov}
                for scope, bucket in sorted(self.by_scope.items())
            },
            "by_provider": [
                {"provider": bucket.provider, **bucket.metrics.to_dict()}
                for bucket in self.by_provider
            ],
            "diagnostics": {
                "unscoped_items": self.diagnostics.unscoped_items,
                "unknown_sentiment_items": self.diagnostics.unknown_sentiment_items,
            },
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> KpiSnapshot:
        totals_payload = dict(payload["totals"])
        sov_by_scope = {
            str(scope): float(value)
            for scope, value in dict(totals_payload.pop("sov_by_scope", {})).items()
        }
        by_scope: dict[str, ScopeBucket] = {}
        for scope, bucket in dict(payload["by_scope"]).items():
            metrics_payload = dict(bucket)
            sov = float(metrics_payload.pop("sov"))
            by_scope[scope] = ScopeBucket(
                scope=scope,
                metrics=BucketMetrics.from_dict(metrics_payload),
                sov=sov,
            )
        by_provider = []
        for bucket in payload["by_provider"]:
            metrics_payload = dict(bucket)
            provider = str(metrics_payload.pop("provider"))
            by_provider.append(
                ProviderBucket(provider=provider, metrics=BucketMetrics.from_dict(metrics_payload)),
            )
        diagnostics = payload["diagnostics"]
        return cls(
            window=Window.from_dict(payload["window"]),
            source_type=str(payload["source_type"]),
            formula_version=str(payload["formula_version"]),
            parameters=dict(payload.get("parameters", {})),
            totals=BucketMetrics.from_dict(totals_payload),
            sov_by_scope=sov_by_scope,
            by_scope=by_scope,
            by_provider=by_provider,
            diagnostics=Diagnostics(
                unscoped_items=int(diagnostics["unscoped_items"]),
                unknown_sentiment_items=int(diagnostics["unknown_sentiment_items"]),
            ),
        )


@dataclass(slots=True)
class SnapshotView:
    """Persisted snapshot with its identity."""

    snapshot_id: str
    computed_at: datetime
    snapshot: KpiSnapshot

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "computed_at": self.computed_at.isoformat(),
            **self.snapshot.to_dict(),
        }
