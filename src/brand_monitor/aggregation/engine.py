"""Deterministic KPI aggregation.

``compute`` is a pure function of its arguments: no clock reads, no I/O, no
randomness. Records are visited in content-id order so float sums, and
therefore the canonical JSON, do not depend on the caller's input order.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass

from brand_monitor.aggregation.models import (
    BucketMetrics,
    Diagnostics,
    KpiSnapshot,
    ProviderBucket,
    ScopeBucket,
    Severity,
    Window,
)
from brand_monitor.config import AggregationSettings
from brand_monitor.content.models import (
    ClassificationRecord,
    ContentRecord,
    ContentState,
    SourceWeight,
    TrackedTermView,
    effective_classification,
)
from brand_monitor.errors import ValidationError

POSITIVE = "positive"
NEGATIVE = "negative"
NEUTRAL = "neutral"

_SENTIMENT_ALIASES = {
    "positive": POSITIVE,
    "positivo": POSITIVE,
    "negative": NEGATIVE,
    "negativo": NEGATIVE,
    "neutral": NEUTRAL,
    "neutro": NEUTRAL,
}


def normalize_sentiment(value: str | None) -> str | None:
    """Map raw classifier labels to positive/negative/neutral; anything else is unknown."""

    if value is None:
        return None
    return _SENTIMENT_ALIASES.get(value.strip().lower())


def severity_for(riesgo_activo: float, thresholds: tuple[float, float, float]) -> Severity:
    sev1, sev2, sev3 = thresholds
    if riesgo_activo >= sev1:
        return Severity.SEV1
    if riesgo_activo >= sev2:
        return Severity.SEV2
    if riesgo_activo >= sev3:
        return Severity.SEV3
    return Severity.SEV4


class WeightResolver:
    """Source weight lookup: specific source, then provider default, then neutral."""

    def __init__(self, weights: Iterable[SourceWeight], *, neutral_weight: float) -> None:
        self.neutral_weight = neutral_weight
        self._specific: dict[tuple[str, str], float] = {}
        self._defaults: dict[str, float] = {}
        ordered = sorted(
            (weight for weight in weights if weight.is_active),
            key=lambda item: (
                item.updated_at,
                item.provider.lower(),
                (item.source_name or "").lower(),
                item.weight,
            ),
        )
        # Later entries overwrite earlier ones, so the most recently updated row wins.
        for weight in ordered:
            provider = weight.provider.strip().lower()
            if weight.source_name:
                self._specific[(provider, weight.source_name.strip().lower())] = weight.weight
            else:
                self._defaults[provider] = weight.weight

    def resolve(self, provider: str, source_name: str | None) -> float:
        provider_key = provider.strip().lower()
        if source_name:
            specific = self._specific.get((provider_key, source_name.strip().lower()))
            if specific is not None:
                return specific
        return self._defaults.get(provider_key, self.neutral_weight)


@dataclass(slots=True)
class _Accumulator:
    items: int = 0
    classified: int = 0
    positivos: int = 0
    negativos: int = 0
    neutrales: int = 0
    weight_sum: float = 0.0

    def add(self, sentiment: str | None, weight: float) -> None:
        self.items += 1
        self.weight_sum += weight
        if sentiment is None:
            return
        self.classified += 1
        if sentiment == POSITIVE:
            self.positivos += 1
        elif sentiment == NEGATIVE:
            self.negativos += 1
        else:
            self.neutrales += 1

    def finish(self, config: AggregationSettings) -> BucketMetrics:
        denominator = max(self.classified, 1)
        sentimiento_neto = (self.positivos - self.negativos) / denominator * 100
        riesgo_activo = self.negativos / denominator * 100
        quality_score = (self.weight_sum / self.items * 100) if self.items else 50.0
        sentiment_component = min(100.0, max(0.0, 50 + sentimiento_neto / 2))
        bhs = 0.5 * sentiment_component + 0.25 * quality_score + 0.25 * (100 - riesgo_activo)
        riesgo_rounded = _round(riesgo_activo)
        return BucketMetrics(
            items=self.items,
            classified_items=self.classified,
            positivos=self.positivos,
            negativos=self.negativos,
            neutrales=self.neutrales,
            sentimiento_neto=_round(sentimiento_neto),
            riesgo_activo=riesgo_rounded,
            quality_score=_round(quality_score),
            bhs=_round(bhs),
            severidad=severity_for(riesgo_rounded, config.severity_thresholds),
            insufficient_data=self.classified < config.min_classified_items,
        )


def compute(  # noqa: PLR0913
    window: Window,
    source_type: str,
    content_records: Iterable[ContentRecord],
    classifications: Iterable[ClassificationRecord],
    source_weights: Iterable[SourceWeight],
    formula_version: str,
    *,
    terms: Iterable[TrackedTermView] | Mapping[str, TrackedTermView],
    config: AggregationSettings,
) -> KpiSnapshot:
    """Aggregate content records into a KPI snapshot for one window and source type."""

    formula = FORMULAS.get(formula_version)
    if formula is None:
        raise ValidationError(
            f"Unknown formula_version: {formula_version!r}",
            details={"supported": sorted(FORMULAS)},
        )
    return formula(
        window,
        source_type,
        content_records,
        classifications,
        source_weights,
        terms,
        config,
    )


def _compute_kpi_v1(  # noqa: PLR0913
    window: Window,
    source_type: str,
    content_records: Iterable[ContentRecord],
    classifications: Iterable[ClassificationRecord],
    source_weights: Iterable[SourceWeight],
    terms: Iterable[TrackedTermView] | Mapping[str, TrackedTermView],
    config: AggregationSettings,
) -> KpiSnapshot:
    terms_by_id = (
        dict(terms) if isinstance(terms, Mapping) else {term.term_id: term for term in terms}
    )
    by_content: dict[str, list[ClassificationRecord]] = {}
    for item in classifications:
        by_content.setdefault(item.content_id, []).append(item)
    weights = WeightResolver(source_weights, neutral_weight=config.neutral_weight)

    totals = _Accumulator()
    scopes = {scope: _Accumulator() for scope in config.scopes}
    providers: dict[str, _Accumulator] = {}
    unscoped_items = 0
    unknown_sentiment_items = 0

    seen: set[str] = set()
    for record in sorted(content_records, key=lambda item: item.content_id):
        if record.content_id in seen:
            continue
        seen.add(record.content_id)
        if record.state != ContentState.ACTIVE.value or record.source_type != source_type:
            continue
        if not window.contains(record.effective_at):
            continue

        classification = effective_classification(by_content.get(record.content_id, []))
        sentiment = normalize_sentiment(
            classification.sentimiento if classification is not None else None,
        )
        if sentiment is None:
            unknown_sentiment_items += 1
        weight = weights.resolve(record.provider, record.source_name)

        totals.add(sentiment, weight)
        providers.setdefault(record.provider.strip().lower(), _Accumulator()).add(
            sentiment,
            weight,
        )

        term = terms_by_id.get(record.term_id) if record.term_id is not None else None
        scope = term.scope if term is not None else None
        if scope is None or scope not in scopes:
            unscoped_items += 1
            continue
        scopes[scope].add(sentiment, weight)

    total_metrics = totals.finish(config)
    share = _share_of_voice(total_metrics.classified_items)
    by_scope = {
        scope: ScopeBucket(
            scope=scope,
            metrics=accumulator.finish(config),
            sov=share(accumulator.classified),
        )
        for scope, accumulator in sorted(scopes.items())
    }
    return KpiSnapshot(
        window=window,
        source_type=source_type,
        formula_version="kpi-v1",
        parameters={
            "min_classified_items": config.min_classified_items,
            "severity_thresholds": list(config.severity_thresholds),
            "neutral_weight": config.neutral_weight,
            "scopes": sorted(config.scopes),
        },
        totals=total_metrics,
        sov_by_scope={scope: bucket.sov for scope, bucket in by_scope.items()},
        by_scope=by_scope,
        by_provider=[
            ProviderBucket(provider=provider, metrics=accumulator.finish(config))
            for provider, accumulator in sorted(providers.items())
        ],
        diagnostics=Diagnostics(
            unscoped_items=unscoped_items,
            unknown_sentiment_items=unknown_sentiment_items,
        ),
    )


def _share_of_voice(total_classified: int) -> Callable[[int], float]:
    def share(scope_classified: int) -> float:
        if total_classified <= 0:
            return 0.0
        return _round(scope_classified / total_classified * 100)

    return share


def _round(value: float) -> float:
    return round(value + 0.0, 2)


FORMULAS = {
    "kpi-v1": _compute_kpi_v1,
}
