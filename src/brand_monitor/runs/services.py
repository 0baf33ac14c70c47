"""Use-case services behind the caller-facing API and the CLI."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from brand_monitor.aggregation.engine import FORMULAS
from brand_monitor.aggregation.models import Window
from brand_monitor.content.models import ContentQuery, ContentState, FeedPage, SourceType
from brand_monitor.errors import ConflictError, NotFoundError, ValidationError
from brand_monitor.incidents.models import IncidentPatch, IncidentStatus, IncidentView
from brand_monitor.runs.gate import parse_kind
from brand_monitor.runs.models import AcquireResult, RunDetails, RunKind, RunStatus, RunView
from brand_monitor.runtime import Runtime

logger = logging.getLogger(__name__)

ANALYSIS_SCOPES = ("overview", "channel", "competitors", "custom")
ANALYSIS_DEFAULT_LIMIT = 120
ANALYSIS_MAX_LIMIT = 500
DEFAULT_PROMPT_VERSION = "analysis-v1"
EXPORT_MAX_LIMIT = 50_000
LIST_MAX_LIMIT = 200


@dataclass(slots=True)
class PreparedRun:
    """Validated request ready for the idempotency gate."""

    kind: RunKind
    idempotency_key: str | None
    descriptor: dict[str, Any]
    input_count: int | None = None


class RunService:
    """Validates requests per kind and routes them through the gate."""

    def __init__(self, runtime: Runtime) -> None:
        self.runtime = runtime

    def create_run(self, kind: RunKind | str, payload: dict[str, Any]) -> AcquireResult:
        prepared = self.prepare(parse_kind(kind), payload)
        result = self.runtime.gate.acquire(
            prepared.kind,
            prepared.idempotency_key,
            prepared.descriptor,
            input_count=prepared.input_count,
        )
        if result.reused:
            logger.info(
                "Run reused: run_id=%s kind=%s status=%s",
                result.run.run_id,
                result.run.kind.value,
                result.run.status.value,
            )
        return result

    def prepare(self, kind: RunKind, payload: dict[str, Any]) -> PreparedRun:
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object.")
        key = _optional_key(payload.get("idempotency_key"))
        if kind is RunKind.ANALYSIS:
            return self._prepare_analysis(payload, key)
        if kind is RunKind.REPORT:
            return self._prepare_report(payload, key)
        if kind is RunKind.EXPORT:
            return self._prepare_export(payload, key)
        return self._prepare_incident_evaluation(payload, key)

    def _prepare_analysis(self, payload: dict[str, Any], key: str | None) -> PreparedRun:
        scope = str(payload.get("scope") or "overview").strip().lower()
        if scope not in ANALYSIS_SCOPES:
            raise ValidationError(f"Invalid scope: {scope!r}", details={"allowed": list(ANALYSIS_SCOPES)})
        source_type = _source_type(payload.get("source_type"))
        limit = _int_in_range(
            payload.get("limit"),
            name="limit",
            default=ANALYSIS_DEFAULT_LIMIT,
            low=1,
            high=ANALYSIS_MAX_LIMIT,
        )
        prompt_version = str(payload.get("prompt_version") or DEFAULT_PROMPT_VERSION).strip()
        if not 2 <= len(prompt_version) <= 80:  # noqa: PLR2004
            raise ValidationError("prompt_version must be 2..80 characters.")
        term_ids = _string_list(payload.get("term_ids"), name="term_ids")
        window = self._window(payload)
        formula_version = self._formula_version(payload)

        input_count = self.runtime.content.count(
            ContentQuery(
                source_type=source_type,
                term_ids=tuple(term_ids),
                window_start=window.start,
                window_end=window.end,
                limit=limit,
            ),
        )
        return PreparedRun(
            kind=RunKind.ANALYSIS,
            idempotency_key=key,
            descriptor={
                "scope": scope,
                "source_type": source_type,
                "limit": limit,
                "prompt_version": prompt_version,
                "term_ids": term_ids,
                "window": window.to_dict(),
                "formula_version": formula_version,
            },
            input_count=input_count,
        )

    def _prepare_report(self, payload: dict[str, Any], key: str | None) -> PreparedRun:
        threshold = payload.get("confidence_threshold")
        if threshold is not None:
            try:
                threshold = float(threshold)
            except (TypeError, ValueError) as error:
                raise ValidationError("confidence_threshold must be a number.") from error
            if not 0 < threshold <= 1:
                raise ValidationError("confidence_threshold must be within (0, 1].")
        descriptor: dict[str, Any] = {
            "template_id": _optional_string(payload.get("template_id"), name="template_id"),
            "source_type": _source_type(payload.get("source_type")),
            "window": self._window(payload).to_dict(),
            "recipients": _string_list(payload.get("recipients"), name="recipients"),
        }
        if threshold is not None:
            descriptor["confidence_threshold"] = threshold
        return PreparedRun(kind=RunKind.REPORT, idempotency_key=key, descriptor=descriptor)

    def _prepare_export(self, payload: dict[str, Any], key: str | None) -> PreparedRun:
        states = _string_list(payload.get("states"), name="states") or [ContentState.ACTIVE.value]
        allowed_states = {item.value for item in ContentState}
        unknown = sorted(set(states) - allowed_states)
        if unknown:
            raise ValidationError(f"Unknown content states: {unknown}")
        descriptor: dict[str, Any] = {
            "source_type": (
                _source_type(payload.get("source_type")) if payload.get("source_type") else None
            ),
            "states": sorted(states),
            "term_ids": _string_list(payload.get("term_ids"), name="term_ids"),
            "window": self._window(payload).to_dict() if payload.get("window") else None,
            "limit": (
                _int_in_range(payload.get("limit"), name="limit", default=None, low=1, high=EXPORT_MAX_LIMIT)
                if payload.get("limit") is not None
                else None
            ),
        }
        return PreparedRun(kind=RunKind.EXPORT, idempotency_key=key, descriptor=descriptor)

    def _prepare_incident_evaluation(self, payload: dict[str, Any], key: str | None) -> PreparedRun:
        source_type = _source_type(payload.get("source_type"))
        window = self._window(payload)
        formula_version = self._formula_version(payload)
        return PreparedRun(
            kind=RunKind.INCIDENT_EVALUATION,
            idempotency_key=key
            or f"incident-evaluation:{source_type}:{formula_version}:{window.end.isoformat()}",
            descriptor={
                "source_type": source_type,
                "window": window.to_dict(),
                "formula_version": formula_version,
            },
        )

    def _window(self, payload: dict[str, Any]) -> Window:
        raw = payload.get("window")
        if raw is not None:
            if not isinstance(raw, dict):
                raise ValidationError("window must be an object with start and end.")
            return Window.from_dict(raw)
        days = _int_in_range(
            payload.get("window_days"),
            name="window_days",
            default=self.runtime.settings.aggregation.window_days,
            low=1,
            high=366,
        )
        return Window.ending_at(_hour_floor(self.runtime.clock.now()), days=days)

    def _formula_version(self, payload: dict[str, Any]) -> str:
        value = str(
            payload.get("formula_version") or self.runtime.settings.aggregation.formula_version,
        )
        if value not in FORMULAS:
            raise ValidationError(
                f"Unknown formula_version: {value!r}",
                details={"supported": sorted(FORMULAS)},
            )
        return value

    def get_run(self, run_id: str) -> RunView:
        run = self.runtime.runs.get_run(run_id)
        if run is None:
            raise NotFoundError(f"Run not found: {run_id}")
        return run

    def get_run_details(self, run_id: str) -> RunDetails:
        details = self.runtime.runs.get_run_details(run_id)
        if details is None:
            raise NotFoundError(f"Run not found: {run_id}")
        return details

    def list_runs(
        self,
        *,
        kind: RunKind | str | None = None,
        status: RunStatus | str | None = None,
        limit: int = 50,
    ) -> list[RunView]:
        run_kind = parse_kind(kind) if kind is not None else None
        try:
            run_status = RunStatus(status) if status is not None else None
        except ValueError as error:
            raise ValidationError(f"Unknown run status: {status!r}") from error
        capped = _int_in_range(limit, name="limit", default=50, low=1, high=LIST_MAX_LIMIT)
        return self.runtime.runs.list_runs(kind=run_kind, status=run_status, limit=capped)

    def approve_report(self, run_id: str, *, actor_user_id: str) -> RunView:
        if not actor_user_id.strip():
            raise ValidationError("actor_user_id is required.")
        run = self.get_run(run_id)
        if run.kind is not RunKind.REPORT:
            raise ConflictError(f"Run {run_id} is a {run.kind.value} run, not a report.")
        if not self.runtime.runs.approve_run(run_id=run_id, actor_user_id=actor_user_id):
            current = self.get_run(run_id)
            raise ConflictError(
                f"Run {run_id} is {current.status.value}; only pending_review runs can be approved.",
            )
        logger.info("Report approved: run_id=%s actor=%s", run_id, actor_user_id)
        return self.get_run(run_id)

    def evaluate_incidents(self, payload: dict[str, Any]) -> AcquireResult:
        return self.create_run(RunKind.INCIDENT_EVALUATION, payload)

    def feed(self, *, term_id: str, limit: int) -> FeedPage:
        return self.runtime.content.feed(
            term_id=term_id,
            limit=limit,
            page_cap=self.runtime.settings.feed_page_cap,
        )

    def list_incidents(self, *, status: str | None = None, limit: int = 50) -> list[IncidentView]:
        try:
            parsed = IncidentStatus(status) if status else None
        except ValueError as error:
            raise ValidationError(f"Unknown incident status: {status!r}") from error
        return self.runtime.incidents.list_incidents(status=parsed, limit=limit)

    def get_incident(self, incident_id: str) -> IncidentView:
        incident = self.runtime.incidents.get_incident(incident_id)
        if incident is None:
            raise NotFoundError(f"Incident not found: {incident_id}")
        return incident

    def patch_incident(self, incident_id: str, payload: dict[str, Any]) -> IncidentView:
        status = payload.get("status")
        try:
            parsed = IncidentStatus(status) if status else None
        except ValueError as error:
            raise ValidationError(f"Unknown incident status: {status!r}") from error
        actor = _optional_string(payload.get("actor_user_id"), name="actor_user_id")
        reason = _optional_string(payload.get("reason"), name="reason")
        owner = _optional_string(payload.get("owner_user_id"), name="owner_user_id")
        return self.runtime.incidents.patch_incident(
            incident_id,
            IncidentPatch(
                actor_user_id=actor or "",
                reason=reason or "",
                status=parsed,
                owner_user_id=owner,
            ),
        )


def _hour_floor(value: datetime) -> datetime:
    return value.replace(minute=0, second=0, microsecond=0)


def _optional_key(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError("idempotency_key must be a string.")
    return value


def _optional_string(value: object, *, name: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string.")
    return value


def _source_type(value: object) -> str:
    normalized = str(value or SourceType.NEWS.value).strip().lower()
    if normalized not in {item.value for item in SourceType}:
        raise ValidationError(
            f"Invalid source_type: {value!r}",
            details={"allowed": [item.value for item in SourceType]},
        )
    return normalized


def _int_in_range(
    value: object,
    *,
    name: str,
    default: int | None,
    low: int,
    high: int,
) -> int:
    if value is None:
        if default is None:
            raise ValidationError(f"{name} is required.")
        return default
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer.")
    try:
        number = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as error:
        raise ValidationError(f"{name} must be an integer.") from error
    if not low <= number <= high:
        raise ValidationError(f"{name} must be between {low} and {high}.")
    return number


def _string_list(value: object, *, name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValidationError(f"{name} must be a list of strings.")
    return [item.strip() for item in value if item.strip()]
