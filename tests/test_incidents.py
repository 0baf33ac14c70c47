from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import timedelta

import allure
import pytest

from brand_monitor.aggregation.models import SnapshotView, Window
from brand_monitor.clock import FrozenClock
from brand_monitor.content.models import ContentRecord, TermCreate, TermScope
from brand_monitor.errors import (
    ConflictError,
    InsufficientDataError,
    NotFoundError,
    ValidationError,
)
from brand_monitor.incidents.evaluator import incident_signature
from brand_monitor.incidents.models import IncidentPatch, IncidentStatus, IncidentTrigger
from brand_monitor.incidents.repository import IncidentRepository
from brand_monitor.runtime import Runtime

pytestmark = [
    allure.epic("Incidents"),
    allure.feature("Evaluation & Triage"),
]


@pytest.fixture()
def brand_term_id(runtime: Runtime) -> str:
    return runtime.content.add_term(TermCreate(name="Claro", scope=TermScope.BRAND)).term_id


def _snapshot(runtime: Runtime) -> SnapshotView:
    window = Window.ending_at(runtime.clock.now(), days=7)
    return runtime.kpi.compute_snapshot(window=window, source_type="news")


def test_high_risk_scope_opens_one_incident(
    runtime: Runtime,
    seed_content: Callable[..., list[ContentRecord]],
    brand_term_id: str,
) -> None:
    seed_content(4, sentimiento="negativo", term_id=brand_term_id)

    result = runtime.evaluator.evaluate_snapshot(_snapshot(runtime))

    assert result.incidents_opened == 1
    assert result.skipped == 1
    [incident] = runtime.incidents.list_incidents()
    assert incident.signature == incident_signature("news", "brand")
    assert incident.status is IncidentStatus.OPEN
    assert incident.severity.value == "SEV1"
    assert incident.trigger_value == 100.0
    assert incident.sla_due_at == runtime.clock.now() + timedelta(minutes=30)


def test_repeated_evaluation_refreshes_instead_of_duplicating(
    runtime: Runtime,
    clock: FrozenClock,
    seed_content: Callable[..., list[ContentRecord]],
    brand_term_id: str,
) -> None:
    seed_content(4, sentimiento="negativo", term_id=brand_term_id)
    runtime.evaluator.evaluate_snapshot(_snapshot(runtime))
    clock.advance(timedelta(minutes=10))

    second = runtime.evaluator.evaluate_snapshot(_snapshot(runtime))

    assert second.incidents_opened == 0
    assert second.incidents_updated == 1
    assert runtime.incidents.count_active() == 1
    [incident] = runtime.incidents.list_incidents()
    assert incident.snapshot_id == second.snapshot_id


def test_escalation_tightens_sla(
    runtime: Runtime,
    clock: FrozenClock,
    seed_content: Callable[..., list[ContentRecord]],
    brand_term_id: str,
) -> None:
    seed_content(3, sentimiento="negativo", term_id=brand_term_id, title="Queja")
    seed_content(1, sentimiento="positivo", term_id=brand_term_id, title="Premio")
    runtime.evaluator.evaluate_snapshot(_snapshot(runtime))
    [opened] = runtime.incidents.list_incidents()
    assert opened.severity.value == "SEV2"
    assert opened.sla_due_at == runtime.clock.now() + timedelta(hours=4)

    clock.advance(timedelta(hours=1))
    seed_content(4, sentimiento="negativo", term_id=brand_term_id, title="Crisis")
    runtime.evaluator.evaluate_snapshot(_snapshot(runtime))

    escalated = runtime.incidents.get_incident(opened.incident_id)
    assert escalated.severity.value == "SEV1"
    assert escalated.sla_due_at == runtime.clock.now() + timedelta(minutes=30)


def test_low_risk_and_insufficient_scopes_are_skipped(
    runtime: Runtime,
    seed_content: Callable[..., list[ContentRecord]],
    brand_term_id: str,
) -> None:
    seed_content(1, sentimiento="negativo", term_id=brand_term_id, title="Falla")
    seed_content(3, sentimiento="positivo", term_id=brand_term_id, title="Lanza")

    result = runtime.evaluator.evaluate_snapshot(_snapshot(runtime))

    assert result.incidents_opened == 0
    assert result.skipped == 2
    assert runtime.incidents.list_incidents() == []


def test_evaluate_without_sufficient_snapshot_is_a_no_op(
    runtime: Runtime,
    seed_content: Callable[..., list[ContentRecord]],
    brand_term_id: str,
) -> None:
    seed_content(2, sentimiento="negativo", term_id=brand_term_id)
    stored = _snapshot(runtime)
    assert stored.snapshot.insufficient_data is True

    result = runtime.evaluator.evaluate(
        stored.snapshot.window,
        source_type="news",
        formula_version="kpi-v1",
    )

    assert result.snapshot_id is None
    assert result.insufficient_data is True
    assert result.incidents_opened == 0
    assert runtime.incidents.list_incidents() == []
    with pytest.raises(InsufficientDataError, match="No sufficient kpi-v1 snapshot"):
        runtime.snapshots.require_sufficient_snapshot(
            window=stored.snapshot.window,
            source_type="news",
            formula_version="kpi-v1",
        )


def test_patch_requires_reason_and_records_note(
    runtime: Runtime,
    seed_content: Callable[..., list[ContentRecord]],
    brand_term_id: str,
) -> None:
    seed_content(4, sentimiento="negativo", term_id=brand_term_id)
    runtime.evaluator.evaluate_snapshot(_snapshot(runtime))
    [incident] = runtime.incidents.list_incidents()

    with pytest.raises(ValidationError, match="reason"):
        runtime.incidents.patch_incident(
            incident.incident_id,
            IncidentPatch(actor_user_id="u1", reason="   ", status=IncidentStatus.ACKNOWLEDGED),
        )

    patched = runtime.incidents.patch_incident(
        incident.incident_id,
        IncidentPatch(
            actor_user_id="u1",
            reason="Investigando con comunicaciones",
            status=IncidentStatus.ACKNOWLEDGED,
            owner_user_id="u2",
        ),
    )

    assert patched.status is IncidentStatus.ACKNOWLEDGED
    assert patched.owner_user_id == "u2"
    assert [note.note for note in patched.notes] == [
        "[status open -> acknowledged; owner -> u2] Investigando con comunicaciones",
    ]
    assert patched.notes[0].author_user_id == "u1"


def test_resolved_incident_is_final_and_next_breach_opens_new_one(
    runtime: Runtime,
    clock: FrozenClock,
    seed_content: Callable[..., list[ContentRecord]],
    brand_term_id: str,
) -> None:
    seed_content(4, sentimiento="negativo", term_id=brand_term_id)
    runtime.evaluator.evaluate_snapshot(_snapshot(runtime))
    [incident] = runtime.incidents.list_incidents()

    resolved = runtime.incidents.patch_incident(
        incident.incident_id,
        IncidentPatch(actor_user_id="u1", reason="Contenido retirado", status=IncidentStatus.RESOLVED),
    )
    assert resolved.resolved_at == runtime.clock.now()

    with pytest.raises(ConflictError):
        runtime.incidents.patch_incident(
            incident.incident_id,
            IncidentPatch(actor_user_id="u1", reason="Reabrir", status=IncidentStatus.OPEN),
        )

    clock.advance(timedelta(minutes=5))
    result = runtime.evaluator.evaluate_snapshot(_snapshot(runtime))

    assert result.incidents_opened == 1
    active = runtime.incidents.list_incidents(status=IncidentStatus.OPEN)
    assert len(active) == 1
    assert active[0].incident_id != incident.incident_id


def test_patch_unknown_incident_raises_not_found(runtime: Runtime) -> None:
    with pytest.raises(NotFoundError):
        runtime.incidents.patch_incident(
            "missing",
            IncidentPatch(actor_user_id="u1", reason="x", status=IncidentStatus.RESOLVED),
        )


def test_concurrent_upserts_open_a_single_incident(
    runtime: Runtime,
    seed_content: Callable[..., list[ContentRecord]],
    brand_term_id: str,
) -> None:
    seed_content(4, sentimiento="negativo", term_id=brand_term_id)
    stored = _snapshot(runtime)
    trigger = IncidentTrigger(
        signature=incident_signature("news", "brand"),
        scope="brand",
        source_type="news",
        severity=stored.snapshot.by_scope["brand"].metrics.severidad,
        trigger_metric="riesgo_activo",
        trigger_value=100.0,
        classified_items=4,
        snapshot_id=stored.snapshot_id,
        window_start=stored.snapshot.window.start,
        window_end=stored.snapshot.window.end,
    )
    repositories = [
        IncidentRepository(runtime.settings.db_path, clock=runtime.clock) for _ in range(6)
    ]
    barrier = threading.Barrier(len(repositories))
    created_flags: list[bool] = []
    lock = threading.Lock()

    def _upsert(repository: IncidentRepository) -> None:
        barrier.wait(timeout=5)
        _, created = repository.upsert_trigger(trigger)
        with lock:
            created_flags.append(created)

    threads = [threading.Thread(target=_upsert, args=(repository,)) for repository in repositories]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(created_flags) == [False] * 5 + [True]
    assert runtime.incidents.count_active() == 1
    for repository in repositories:
        repository.close()
