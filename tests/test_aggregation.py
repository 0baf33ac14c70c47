from __future__ import annotations

import random
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import allure
import pytest

from brand_monitor.aggregation.engine import WeightResolver, compute, normalize_sentiment
from brand_monitor.aggregation.models import KpiSnapshot, Severity, Window
from brand_monitor.config import AggregationSettings
from brand_monitor.content.models import (
    ClassificationRecord,
    ClassificationWrite,
    ContentRecord,
    SourceWeight,
    TermCreate,
    TermScope,
    TrackedTermView,
)
from brand_monitor.errors import ValidationError
from brand_monitor.runtime import Runtime

pytestmark = [
    allure.epic("KPI Aggregation"),
    allure.feature("Deterministic Engine"),
]

WINDOW = Window(
    start=datetime(2026, 3, 1, tzinfo=UTC),
    end=datetime(2026, 3, 8, tzinfo=UTC),
)
INSIDE = datetime(2026, 3, 3, 10, 0, tzinfo=UTC)
CONFIG = AggregationSettings(min_classified_items=2)
TERMS = [
    TrackedTermView(term_id="t-brand", name="Claro", scope="brand", is_active=True, max_articles_per_run=2),
    TrackedTermView(
        term_id="t-rival",
        name="Rival",
        scope="competitor",
        is_active=True,
        max_articles_per_run=2,
    ),
]


def _record(  # noqa: PLR0913
    content_id: str,
    *,
    term_id: str | None = "t-brand",
    provider: str = "eltiempo",
    source_name: str | None = None,
    published_at: datetime = INSIDE,
    state: str = "active",
    source_type: str = "news",
) -> ContentRecord:
    return ContentRecord(
        content_id=content_id,
        term_id=term_id,
        source_type=source_type,
        provider=provider,
        source_name=source_name,
        state=state,
        title=f"Title {content_id}",
        canonical_url=f"https://example.com/{content_id}",
        published_at=published_at,
        created_at=published_at,
        updated_at=published_at,
    )


def _label(
    content_id: str,
    sentimiento: str | None,
    *,
    override: bool = False,
    minutes: int = 0,
) -> ClassificationRecord:
    return ClassificationRecord(
        content_id=content_id,
        sentimiento=sentimiento,
        categoria=None,
        is_override=override,
        created_at=INSIDE + timedelta(minutes=minutes),
    )


def _weight(provider: str, weight: float, *, source_name: str | None = None, minutes: int = 0) -> SourceWeight:
    return SourceWeight(
        provider=provider,
        source_name=source_name,
        weight=weight,
        is_active=True,
        updated_at=INSIDE + timedelta(minutes=minutes),
    )


def _compute(records, labels, weights=(), *, config: AggregationSettings = CONFIG) -> KpiSnapshot:
    return compute(WINDOW, "news", records, labels, weights, "kpi-v1", terms=TERMS, config=config)


def test_compute_is_independent_of_input_order() -> None:
    records = [_record(f"c{index}", provider=f"p{index % 3}") for index in range(30)]
    labels = [
        _label(f"c{index}", ("positivo", "negativo", "neutro", None)[index % 4]) for index in range(30)
    ]
    weights = [_weight("p0", 0.3), _weight("p1", 0.8)]

    first = _compute(records, labels, weights)
    shuffled_records = list(records)
    shuffled_labels = list(labels)
    random.Random(7).shuffle(shuffled_records)
    random.Random(11).shuffle(shuffled_labels)
    second = _compute(shuffled_records, shuffled_labels, list(reversed(weights)))

    assert first.to_json() == second.to_json()
    assert KpiSnapshot.from_dict(first.to_dict()).to_json() == first.to_json()


def test_every_configured_scope_is_present_even_when_empty() -> None:
    snapshot = _compute([_record("c1", term_id=None)], [_label("c1", "positivo")])

    assert sorted(snapshot.by_scope) == ["brand", "competitor"]
    assert snapshot.by_scope["competitor"].metrics.items == 0
    assert snapshot.by_scope["competitor"].sov == 0.0
    assert snapshot.diagnostics.unscoped_items == 1


def test_share_of_voice_splits_classified_items_between_scopes() -> None:
    records = [
        _record("b1"),
        _record("b2"),
        _record("b3"),
        _record("r1", term_id="t-rival"),
        _record("u1", term_id="unknown-term"),
    ]
    labels = [
        _label("b1", "positivo"),
        _label("b2", "negativo"),
        _label("b3", "neutro"),
        _label("r1", "negativo"),
        _label("u1", "nonsense"),
    ]

    snapshot = _compute(records, labels)

    assert snapshot.sov_by_scope == {"brand": 75.0, "competitor": 25.0}
    assert sum(snapshot.sov_by_scope.values()) <= 100.0
    assert snapshot.totals.items == 5
    assert snapshot.totals.classified_items == 4
    assert snapshot.diagnostics.unknown_sentiment_items == 1
    assert snapshot.diagnostics.unscoped_items == 1


def test_bucket_formulas() -> None:
    records = [_record(f"c{index}") for index in range(4)]
    labels = [
        _label("c0", "positivo"),
        _label("c1", "positivo"),
        _label("c2", "negativo"),
        _label("c3", "neutro"),
    ]

    totals = _compute(records, labels).totals

    assert totals.positivos == 2
    assert totals.negativos == 1
    assert totals.neutrales == 1
    assert totals.sentimiento_neto == 25.0
    assert totals.riesgo_activo == 25.0
    assert totals.quality_score == 50.0
    # 0.5 * (50 + 12.5) + 0.25 * 50 + 0.25 * 75
    assert totals.bhs == 62.5
    assert totals.severidad is Severity.SEV4
    assert totals.insufficient_data is False


def test_source_weight_change_moves_quality_score() -> None:
    records = [_record(f"c{index}", provider="semana") for index in range(3)]
    labels = [_label(f"c{index}", "positivo") for index in range(3)]

    low = _compute(records, labels, [_weight("semana", 0.10)]).totals
    high = _compute(records, labels, [_weight("semana", 0.95)]).totals

    assert low.quality_score == 10.0
    assert high.quality_score == 95.0
    assert high.quality_score - low.quality_score == pytest.approx(85.0)
    assert low.bhs == 77.5
    assert high.bhs == 98.75


def test_weight_resolution_prefers_specific_then_default_then_neutral() -> None:
    resolver = WeightResolver(
        [
            _weight("semana", 0.2),
            _weight("semana", 0.9, source_name="Semana Opinion"),
            _weight("semana", 0.4, minutes=5),
        ],
        neutral_weight=0.5,
    )

    assert resolver.resolve("Semana", "semana opinion") == 0.9
    assert resolver.resolve("semana", "other") == 0.4
    assert resolver.resolve("unknown", None) == 0.5


def test_override_classification_wins_over_newer_automatic_one() -> None:
    labels = [
        _label("c1", "negativo", override=True, minutes=0),
        _label("c1", "positivo", minutes=30),
    ]

    totals = _compute([_record("c1")], labels, config=AggregationSettings(min_classified_items=1)).totals

    assert totals.negativos == 1
    assert totals.positivos == 0


def test_records_outside_filters_are_ignored() -> None:
    records = [
        _record("in"),
        _record("late", published_at=WINDOW.end),
        _record("early", published_at=WINDOW.start - timedelta(seconds=1)),
        _record("hidden", state="hidden"),
        _record("social", source_type="social"),
    ]
    labels = [_label(record.content_id, "positivo") for record in records]

    totals = _compute(records, labels).totals

    assert totals.items == 1


def test_insufficient_data_and_severity_flags() -> None:
    records = [_record(f"c{index}") for index in range(3)]
    labels = [_label(f"c{index}", "negativo") for index in range(3)]

    sufficient = _compute(records, labels).totals
    insufficient = _compute(records, labels, config=AggregationSettings(min_classified_items=5)).totals

    assert sufficient.riesgo_activo == 100.0
    assert sufficient.severidad is Severity.SEV1
    assert sufficient.insufficient_data is False
    assert insufficient.insufficient_data is True


def test_empty_window_yields_neutral_snapshot() -> None:
    snapshot = _compute([], [])

    assert snapshot.totals.items == 0
    assert snapshot.totals.quality_score == 50.0
    assert snapshot.totals.riesgo_activo == 0.0
    assert snapshot.insufficient_data is True
    assert snapshot.sov_by_scope == {"brand": 0.0, "competitor": 0.0}


def test_unknown_formula_version_is_rejected() -> None:
    with pytest.raises(ValidationError, match="Unknown formula_version"):
        compute(WINDOW, "news", [], [], [], "kpi-v0", terms=TERMS, config=CONFIG)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("Positivo", "positive"), (" negative ", "negative"), ("neutro", "neutral"), ("mixed", None)],
)
def test_normalize_sentiment(raw: str, expected: str | None) -> None:
    assert normalize_sentiment(raw) == expected


def test_service_persists_snapshots_and_reuses_latest(
    runtime: Runtime,
    seed_content: Callable[..., list[ContentRecord]],
) -> None:
    brand = runtime.content.add_term(TermCreate(name="Claro", scope=TermScope.BRAND))
    seed_content(4, sentimiento="positivo", term_id=brand.term_id)
    window = Window.ending_at(runtime.clock.now(), days=7)

    first = runtime.kpi.compute_snapshot(window=window, source_type="news")
    second = runtime.kpi.compute_snapshot(window=window, source_type="news")
    latest = runtime.kpi.latest_or_compute(window=window, source_type="news")

    assert first.snapshot_id != second.snapshot_id
    assert first.snapshot.to_json() == second.snapshot.to_json()
    assert latest.snapshot_id == second.snapshot_id
    assert runtime.snapshots.get_snapshot(first.snapshot_id).snapshot.to_json() == first.snapshot.to_json()
    assert first.snapshot.by_scope["brand"].metrics.items == 4


def test_weight_update_applies_to_next_computation_only(
    runtime: Runtime,
    seed_content: Callable[..., list[ContentRecord]],
) -> None:
    seed_content(3, sentimiento="positivo", provider="semana")
    window = Window.ending_at(runtime.clock.now(), days=7)
    runtime.content.set_source_weight(provider="semana", source_name=None, weight=0.10)
    before = runtime.kpi.compute_snapshot(window=window, source_type="news")

    runtime.content.set_source_weight(provider="semana", source_name=None, weight=0.95)
    after = runtime.kpi.compute_snapshot(window=window, source_type="news")

    assert before.snapshot.totals.quality_score == 10.0
    assert after.snapshot.totals.quality_score == 95.0
    stored_before = runtime.snapshots.get_snapshot(before.snapshot_id)
    assert stored_before.snapshot.totals.quality_score == 10.0


def test_saved_classification_counts_on_next_snapshot(
    runtime: Runtime,
    seed_content: Callable[..., list[ContentRecord]],
) -> None:
    records = seed_content(1)
    window = Window.ending_at(runtime.clock.now(), days=7)
    assert runtime.kpi.compute_snapshot(window=window, source_type="news").snapshot.totals.classified_items == 0

    runtime.content.save_classification(
        ClassificationWrite(content_id=records[0].content_id, sentimiento="negativo", is_override=True),
    )

    totals = runtime.kpi.compute_snapshot(window=window, source_type="news").snapshot.totals
    assert totals.classified_items == 1
    assert totals.negativos == 1


def _assert_scopes_cover_totals(snapshot: KpiSnapshot) -> None:
    scoped = sum(bucket.metrics.items for bucket in snapshot.by_scope.values())
    assert scoped + snapshot.diagnostics.unscoped_items == snapshot.totals.items


def test_scope_buckets_and_unscoped_items_add_up_to_totals() -> None:
    terms = [*TERMS, TrackedTermView("t-free", "Sin alcance", None, True, 2)]
    records = [
        _record("b1"),
        _record("b2"),
        _record("r1", term_id="t-rival"),
        _record("f1", term_id="t-free"),
        _record("u1", term_id="t-deleted"),
        _record("n1", term_id=None),
        _record("n2", term_id=None),
    ]
    labels = [
        _label("b1", "positivo"),
        _label("b2", "sarcastico"),
        _label("r1", "negativo"),
        _label("f1", None),
        _label("n1", "neutro"),
    ]

    snapshot = compute(WINDOW, "news", records, labels, [], "kpi-v1", terms=terms, config=CONFIG)

    assert snapshot.totals.items == 7
    assert snapshot.by_scope["brand"].metrics.items == 2
    assert snapshot.by_scope["competitor"].metrics.items == 1
    assert snapshot.diagnostics.unscoped_items == 4
    assert snapshot.diagnostics.unknown_sentiment_items == 4
    _assert_scopes_cover_totals(snapshot)


def test_stored_snapshot_scope_buckets_add_up_to_totals(
    runtime: Runtime,
    seed_content: Callable[..., list[ContentRecord]],
) -> None:
    brand = runtime.content.add_term(TermCreate(name="Claro", scope=TermScope.BRAND))
    rival = runtime.content.add_term(TermCreate(name="Movistar", scope=TermScope.COMPETITOR))
    free = runtime.content.add_term(TermCreate(name="Telecomunicaciones"))
    seed_content(3, sentimiento="positivo", term_id=brand.term_id, provider="eltiempo")
    seed_content(2, sentimiento="negativo", term_id=rival.term_id, provider="semana")
    seed_content(2, term_id=free.term_id, provider="pulzo")
    seed_content(1, sentimiento="neutro", provider="elcolombiano")
    window = Window.ending_at(runtime.clock.now(), days=7)

    stored = runtime.kpi.compute_snapshot(window=window, source_type="news")

    snapshot = runtime.snapshots.get_snapshot(stored.snapshot_id).snapshot
    assert snapshot.totals.items == 8
    assert snapshot.diagnostics.unscoped_items == 3
    _assert_scopes_cover_totals(snapshot)
