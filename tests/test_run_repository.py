from __future__ import annotations

import threading
from datetime import timedelta

import allure

from brand_monitor.clock import FrozenClock
from brand_monitor.runs.models import RunKind, RunStatus
from brand_monitor.runs.repository import RunRepository
from brand_monitor.runtime import Runtime

pytestmark = [
    allure.epic("Run Orchestration"),
    allure.feature("Run State Machine"),
]


def test_claim_sets_worker_and_deadline(runtime: Runtime) -> None:
    accepted = runtime.gate.acquire(RunKind.EXPORT, "claim-1", {})

    claimed = runtime.runs.claim_next_pending(worker_id="w1")

    assert claimed is not None
    assert claimed.run_id == accepted.run.run_id
    assert claimed.status is RunStatus.RUNNING
    assert claimed.worker_id == "w1"
    assert claimed.started_at == runtime.clock.now()
    assert claimed.deadline_at == claimed.started_at + timedelta(seconds=300)
    assert runtime.runs.claim_next_pending(worker_id="w2") is None


def test_claim_order_is_oldest_first(runtime: Runtime, clock: FrozenClock) -> None:
    first = runtime.gate.acquire(RunKind.EXPORT, "order-1", {})
    clock.advance(1)
    second = runtime.gate.acquire(RunKind.EXPORT, "order-2", {})

    assert runtime.runs.claim_next_pending(worker_id="w")
    assert runtime.runs.get_run(first.run.run_id).status is RunStatus.RUNNING
    assert runtime.runs.get_run(second.run.run_id).status is RunStatus.PENDING


def test_terminal_runs_are_immutable(runtime: Runtime) -> None:
    accepted = runtime.gate.acquire(RunKind.EXPORT, "immutable", {})
    runtime.runs.claim_run(run_id=accepted.run.run_id, worker_id="w1")
    assert runtime.runs.complete_run(run_id=accepted.run.run_id, output={"rows": 1})

    assert runtime.runs.fail_run(
        run_id=accepted.run.run_id,
        error_kind="TimeoutError",
        error_message="late",
    ) is False
    assert runtime.runs.complete_run(run_id=accepted.run.run_id, output={"rows": 2}) is False
    assert runtime.runs.claim_run(run_id=accepted.run.run_id, worker_id="w2") is None

    stored = runtime.runs.get_run(accepted.run.run_id)
    assert stored is not None
    assert stored.status is RunStatus.COMPLETED
    assert stored.output == {"rows": 1}
    assert stored.error_kind is None


def test_reaper_fails_only_expired_running_runs(runtime: Runtime, clock: FrozenClock) -> None:
    expired = runtime.gate.acquire(RunKind.INCIDENT_EVALUATION, "reap-1", {})
    runtime.runs.claim_run(run_id=expired.run.run_id, worker_id="w1")
    clock.advance(timedelta(seconds=60))
    fresh = runtime.gate.acquire(RunKind.EXPORT, "reap-2", {})
    runtime.runs.claim_run(run_id=fresh.run.run_id, worker_id="w2")
    clock.advance(timedelta(seconds=61))

    reaped = runtime.runs.fail_expired_runs(error_kind="TimeoutError", error_message="expired")

    assert reaped == [expired.run.run_id]
    stored = runtime.runs.get_run(expired.run.run_id)
    assert stored.status is RunStatus.FAILED
    assert stored.error_kind == "TimeoutError"
    assert runtime.runs.get_run(fresh.run.run_id).status is RunStatus.RUNNING
    assert runtime.runs.fail_expired_runs(error_kind="TimeoutError", error_message="x") == []


def test_review_then_approve_records_events(runtime: Runtime) -> None:
    accepted = runtime.gate.acquire(RunKind.REPORT, "review-1", {})
    runtime.runs.claim_run(run_id=accepted.run.run_id, worker_id="w1")
    assert runtime.runs.submit_for_review(
        run_id=accepted.run.run_id,
        output={"confidence": 0.4},
        reason="confidence_below_threshold",
    )

    parked = runtime.runs.get_run(accepted.run.run_id)
    assert parked.status is RunStatus.PENDING_REVIEW
    assert parked.status.is_settled is True
    assert runtime.runs.approve_run(run_id=accepted.run.run_id, actor_user_id="u1") is True
    assert runtime.runs.approve_run(run_id=accepted.run.run_id, actor_user_id="u1") is False

    details = runtime.runs.get_run_details(accepted.run.run_id)
    assert details is not None
    assert details.run.status is RunStatus.COMPLETED
    assert details.run.output == {"confidence": 0.4}
    assert [event.event_type for event in details.events] == [
        "accepted",
        "claimed",
        "review_requested",
        "approved",
    ]
    assert details.events[-1].details == {"actor_user_id": "u1"}


def test_list_runs_filters_by_kind_and_status(runtime: Runtime, clock: FrozenClock) -> None:
    export = runtime.gate.acquire(RunKind.EXPORT, "list-1", {})
    clock.advance(1)
    runtime.gate.acquire(RunKind.REPORT, "list-2", {})
    runtime.runs.claim_run(run_id=export.run.run_id, worker_id="w")

    assert [run.kind for run in runtime.runs.list_runs()] == [RunKind.REPORT, RunKind.EXPORT]
    assert [run.run_id for run in runtime.runs.list_runs(kind=RunKind.EXPORT)] == [
        export.run.run_id,
    ]
    assert runtime.runs.list_runs(status=RunStatus.PENDING)[0].kind is RunKind.REPORT


def test_concurrent_claims_yield_exactly_one_winner(runtime: Runtime) -> None:
    accepted = runtime.gate.acquire(RunKind.EXPORT, "claim-race", {})
    repositories = [
        RunRepository(runtime.settings.db_path, clock=runtime.clock) for _ in range(6)
    ]
    barrier = threading.Barrier(len(repositories))
    winners: list[str] = []
    lock = threading.Lock()

    def _claim(repository: RunRepository, worker_id: str) -> None:
        barrier.wait(timeout=5)
        claimed = repository.claim_run(run_id=accepted.run.run_id, worker_id=worker_id)
        if claimed is not None:
            with lock:
                winners.append(claimed.worker_id or "")

    threads = [
        threading.Thread(target=_claim, args=(repository, f"w{index}"))
        for index, repository in enumerate(repositories)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(winners) == 1
    stored = runtime.runs.get_run(accepted.run.run_id)
    assert stored.worker_id == winners[0]
    for repository in repositories:
        repository.close()
