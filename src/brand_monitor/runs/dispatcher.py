"""Run dispatcher: claims pending runs and drives them to a settled status."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from brand_monitor.clock import Clock
from brand_monitor.errors import BrandMonitorError, ErrorKind
from brand_monitor.runs.handlers import RunHandler
from brand_monitor.runs.models import RunKind, RunView
from brand_monitor.runs.policy import PolicyTable
from brand_monitor.runs.repository import RunRepository

logger = logging.getLogger(__name__)

REAPED_MESSAGE = "Run exceeded its deadline and was reaped."


@dataclass(slots=True)
class DispatcherRunSummary:
    """Aggregate dispatcher counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    pending_review: int = 0
    failed: int = 0
    timeouts: int = 0
    reaped: int = 0
    idle_polls: int = 0

    def add(self, other: DispatcherRunSummary) -> None:
        self.processed += other.processed
        self.completed += other.completed
        self.pending_review += other.pending_review
        self.failed += other.failed
        self.timeouts += other.timeouts
        self.reaped += other.reaped
        self.idle_polls += other.idle_polls


class RunDispatcher:
    """Single worker loop. Several dispatchers may share one database."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: RunRepository,
        handlers: dict[RunKind, RunHandler],
        policies: PolicyTable,
        worker_id: str,
        clock: Clock,
        poll_interval_seconds: float = 2.0,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.repository = repository
        self.handlers = handlers
        self.policies = policies
        self.worker_id = worker_id
        self.clock = clock
        self.poll_interval_seconds = poll_interval_seconds
        self.stop_event = stop_event or threading.Event()

    def reap(self) -> list[str]:
        """Fail running runs whose deadline has passed."""

        return self.repository.fail_expired_runs(
            error_kind=ErrorKind.TIMEOUT.value,
            error_message=REAPED_MESSAGE,
        )

    def run_once(self) -> DispatcherRunSummary:
        """Reap expired runs, then process at most one pending run."""

        summary = DispatcherRunSummary()
        summary.reaped = len(self.reap())
        if self.stop_event.is_set():
            summary.idle_polls = 1
            return summary

        run = self.repository.claim_next_pending(worker_id=self.worker_id)
        if run is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        logger.info("Run claimed: run_id=%s kind=%s worker=%s", run.run_id, run.kind.value, self.worker_id)
        self._execute(run, summary)
        return summary

    def _execute(self, run: RunView, summary: DispatcherRunSummary) -> None:
        handler = self.handlers.get(run.kind)
        if handler is None:
            self._fail(run, summary, ErrorKind.INTERNAL.value, f"No handler for kind {run.kind.value}")
            return

        try:
            outcome = handler.handle(run)
        except BrandMonitorError as error:
            logger.warning("Run %s failed: %s: %s", run.run_id, error.kind.value, error.message)
            if error.kind is ErrorKind.TIMEOUT:
                summary.timeouts += 1
            self._fail(run, summary, error.kind.value, error.message)
            return
        except Exception as error:  # noqa: BLE001
            logger.exception("Run %s raised an unexpected error", run.run_id)
            self._fail(run, summary, ErrorKind.INTERNAL.value, f"{type(error).__name__}: {error}")
            return

        if run.deadline_at is not None and self.clock.now() > run.deadline_at:
            summary.timeouts += 1
            self._fail(
                run,
                summary,
                ErrorKind.TIMEOUT.value,
                f"Handler finished after the deadline {run.deadline_at.isoformat()}.",
            )
            return

        policy = self.policies.for_kind(run.kind)
        if outcome.needs_review and policy.approval_gate:
            settled = self.repository.submit_for_review(
                run_id=run.run_id,
                output=outcome.output,
                reason=outcome.review_reason,
            )
            if settled:
                summary.pending_review += 1
                logger.info("Run %s parked for review: %s", run.run_id, outcome.review_reason)
        else:
            settled = self.repository.complete_run(run_id=run.run_id, output=outcome.output)
            if settled:
                summary.completed += 1
                logger.info("Run completed: run_id=%s kind=%s", run.run_id, run.kind.value)
        if not settled:
            self._log_lost_transition(run)

    def _fail(self, run: RunView, summary: DispatcherRunSummary, error_kind: str, message: str) -> None:
        if self.repository.fail_run(run_id=run.run_id, error_kind=error_kind, error_message=message):
            summary.failed += 1
            return
        self._log_lost_transition(run)

    def _log_lost_transition(self, run: RunView) -> None:
        current = self.repository.get_run(run.run_id)
        logger.warning(
            "Run %s settled elsewhere before worker %s finished (status=%s)",
            run.run_id,
            self.worker_id,
            current.status.value if current is not None else "missing",
        )

    def run_loop(
        self,
        *,
        max_runs: int | None = None,
        max_idle_polls: int | None = 1,
        install_signal_handlers: bool = True,
    ) -> DispatcherRunSummary:
        """Run until idle, stopped or ``max_runs`` processed.

        Args:
            max_runs: Stop after processing this many runs (None = unlimited).
            max_idle_polls: Consecutive empty polls before exiting (None = never).
            install_signal_handlers: Stop cleanly on SIGINT/SIGTERM (main thread only).
        """

        aggregate = DispatcherRunSummary()
        consecutive_idle = 0
        with self._signal_handlers(enabled=install_signal_handlers):
            while not self.stop_event.is_set():
                if max_runs is not None and aggregate.processed >= max_runs:
                    break

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        break
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0
        return aggregate

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self.stop_event.is_set() and time.monotonic() < deadline:
            self.stop_event.wait(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self, *, enabled: bool) -> Iterator[None]:
        if not enabled or threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Stop requested by %s", signal.Signals(signum).name)
            self.stop_event.set()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


class DispatcherPool:
    """N dispatcher threads sharing one stop event."""

    def __init__(self, dispatchers: list[RunDispatcher], *, stop_event: threading.Event) -> None:
        self.dispatchers = dispatchers
        self.stop_event = stop_event
        self._threads: list[threading.Thread] = []
        self._summaries: list[DispatcherRunSummary] = []
        self._lock = threading.Lock()

    def start(self, *, max_idle_polls: int | None = None) -> None:
        self.stop_event.clear()
        for index, dispatcher in enumerate(self.dispatchers):
            thread = threading.Thread(
                target=self._work,
                args=(dispatcher, max_idle_polls),
                daemon=True,
                name=f"brand-monitor-dispatcher-{index}",
            )
            self._threads.append(thread)
            thread.start()
        logger.info("Dispatcher pool started with %d thread(s)", len(self._threads))

    def _work(self, dispatcher: RunDispatcher, max_idle_polls: int | None) -> None:
        summary = dispatcher.run_loop(
            max_idle_polls=max_idle_polls,
            install_signal_handlers=False,
        )
        with self._lock:
            self._summaries.append(summary)

    def stop(self, *, timeout: float = 15.0) -> DispatcherRunSummary:
        self.stop_event.set()
        return self.join(timeout=timeout)

    def join(self, *, timeout: float | None = 15.0) -> DispatcherRunSummary:
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        aggregate = DispatcherRunSummary()
        with self._lock:
            for summary in self._summaries:
                aggregate.add(summary)
            self._summaries = []
        logger.info("Dispatcher pool stopped: processed=%d", aggregate.processed)
        return aggregate
