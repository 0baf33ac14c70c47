"""Idempotency gate: one logical request maps to at most one active run."""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any

from brand_monitor.clock import Clock
from brand_monitor.errors import ConflictError, ValidationError
from brand_monitor.runs.models import AcquireResult, RunCreate, RunKind, RunStatus, RunView
from brand_monitor.runs.policy import PolicyTable, RunPolicy, TerminalReuse
from brand_monitor.runs.repository import RunRepository

logger = logging.getLogger(__name__)

MAX_IDEMPOTENCY_KEY_LENGTH = 200
MAX_ACQUIRE_ATTEMPTS = 5


class IdempotencyGate:
    """Compare-and-create front door for every run kind.

    Correctness rests on the partial unique index over active runs: a lost
    insert race re-reads and returns the winner as ``reused``.
    """

    def __init__(
        self,
        *,
        repository: RunRepository,
        policies: PolicyTable | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.repository = repository
        self.policies = policies or PolicyTable()
        self.clock: Clock = clock or repository.clock

    def acquire(  # noqa: PLR0913
        self,
        kind: RunKind | str,
        key: str | None,
        input_descriptor: dict[str, Any],
        *,
        input_count: int | None = None,
        terminal_reuse: TerminalReuse | None = None,
    ) -> AcquireResult:
        """Return the run that owns this request, creating a pending one if needed.

        Args:
            kind: Run kind.
            key: Caller-supplied idempotency key; derived from the descriptor when absent.
            input_descriptor: Normalized request parameters (JSON object).
            input_count: Records matched at acceptance time, stored on new runs.
            terminal_reuse: Per-call override of the kind policy. ``REUSE`` here
                reuses any settled run for the key, failed ones included, and
                ignores retention; schedule slots rely on this.
        """

        run_kind = parse_kind(kind)
        descriptor = normalize_descriptor(input_descriptor)
        effective_key = _validate_key(key) if key is not None else derive_key(run_kind, descriptor)
        policy = self.policies.for_kind(run_kind)

        for _ in range(MAX_ACQUIRE_ATTEMPTS):
            existing = self.repository.find_latest_run(
                kind=run_kind,
                idempotency_key=effective_key,
            )
            if existing is not None and self._reusable(existing, policy, terminal_reuse):
                return AcquireResult(run=existing, created=False)

            created = self.repository.insert_pending_run(
                RunCreate(
                    kind=run_kind,
                    idempotency_key=effective_key,
                    input_descriptor=descriptor,
                    timeout_seconds=policy.timeout_seconds,
                    input_count=input_count,
                ),
            )
            if created is not None:
                logger.info(
                    "Run accepted: run_id=%s kind=%s key=%s",
                    created.run_id,
                    run_kind.value,
                    effective_key,
                )
                return AcquireResult(run=created, created=True)

        raise ConflictError(
            f"Could not acquire run for kind={run_kind.value} key={effective_key}; "
            "state kept changing concurrently.",
        )

    def _reusable(
        self,
        run: RunView,
        policy: RunPolicy,
        override: TerminalReuse | None,
    ) -> bool:
        if run.status.is_active:
            return True
        if override is not None:
            return override is TerminalReuse.REUSE
        if policy.terminal_reuse is TerminalReuse.FRESH:
            return False
        if run.status is RunStatus.FAILED and not policy.reuse_failed:
            return False
        if policy.retention is not None:
            settled_at = run.completed_at or run.updated_at
            if settled_at + policy.retention <= self.clock.now():
                return False
        return True


def parse_kind(kind: RunKind | str) -> RunKind:
    if isinstance(kind, RunKind):
        return kind
    try:
        return RunKind(str(kind).strip().lower())
    except ValueError as error:
        raise ValidationError(
            f"Unknown run kind: {kind!r}",
            details={"allowed": [item.value for item in RunKind]},
        ) from error


def normalize_descriptor(descriptor: object) -> dict[str, Any]:
    """Round-trip through canonical JSON so stored descriptors compare byte-for-byte."""

    if not isinstance(descriptor, dict):
        raise ValidationError("input_descriptor must be a JSON object.")
    try:
        return json.loads(_canonical_json(descriptor))
    except (TypeError, ValueError) as error:
        raise ValidationError(f"input_descriptor is not JSON-serializable: {error}") from error


def derive_key(kind: RunKind, descriptor: dict[str, Any]) -> str:
    """Fingerprint for requests that carry no explicit idempotency key."""

    digest = hashlib.sha256(
        _canonical_json({"kind": kind.value, "input": descriptor}).encode("utf-8"),
    ).hexdigest()
    return f"fp:{digest}"


def _validate_key(key: str) -> str:
    normalized = key.strip()
    if not normalized:
        raise ValidationError("idempotency_key must not be blank.")
    if len(normalized) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise ValidationError(
            f"idempotency_key must be at most {MAX_IDEMPOTENCY_KEY_LENGTH} characters.",
        )
    return normalized


def _canonical_json(value: object) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
