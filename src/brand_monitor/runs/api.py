"""Transport-agnostic API facade.

An HTTP layer only has to turn ``ApiResponse`` into a response; status codes
and bodies are decided here. Reads never mutate state.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from brand_monitor.errors import BrandMonitorError, ErrorKind
from brand_monitor.runs.models import AcquireResult, RunKind, RunStatus
from brand_monitor.runs.services import RunService

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR_KIND = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.CONFLICT: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.DEPENDENCY: 503,
    ErrorKind.TIMEOUT: 504,
}


@dataclass(slots=True, frozen=True)
class ApiResponse:
    status_code: int
    body: dict[str, Any]


class RunApi:
    def __init__(self, service: RunService) -> None:
        self.service = service

    def create_run(self, kind: str, payload: dict[str, Any]) -> ApiResponse:
        return _guard(lambda: _accepted(self.service.create_run(kind, payload)))

    def get_run(self, run_id: str) -> ApiResponse:
        def _get() -> ApiResponse:
            run = self.service.get_run(run_id)
            body: dict[str, Any] = {"run": run.to_dict()}
            if run.status in {RunStatus.COMPLETED, RunStatus.PENDING_REVIEW}:
                body["output"] = run.output
            return ApiResponse(200, body)

        return _guard(_get)

    def evaluate_incidents(self, payload: dict[str, Any]) -> ApiResponse:
        return _guard(lambda: _accepted(self.service.evaluate_incidents(payload)))

    def approve_report(self, run_id: str, *, actor_user_id: str) -> ApiResponse:
        return _guard(
            lambda: ApiResponse(
                200,
                {"run": self.service.approve_report(run_id, actor_user_id=actor_user_id).to_dict()},
            ),
        )

    def list_runs(
        self,
        *,
        kind: str | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> ApiResponse:
        return _guard(
            lambda: ApiResponse(
                200,
                {
                    "items": [
                        run.to_dict()
                        for run in self.service.list_runs(kind=kind, status=status, limit=limit)
                    ],
                },
            ),
        )

    def feed(self, term_id: str, *, limit: int) -> ApiResponse:
        def _feed() -> ApiResponse:
            page = self.service.feed(term_id=term_id, limit=limit)
            return ApiResponse(
                200,
                {
                    "term": {"term_id": page.term.term_id, "name": page.term.name},
                    "page_size": page.page_size,
                    "items": [
                        {
                            "content_id": item.record.content_id,
                            "title": item.record.title,
                            "provider": item.record.provider,
                            "canonical_url": item.record.canonical_url,
                            "published_at": item.record.effective_at.isoformat(),
                            "sentimiento": (
                                item.classification.sentimiento if item.classification else None
                            ),
                            "categoria": (
                                item.classification.categoria if item.classification else None
                            ),
                        }
                        for item in page.items
                    ],
                },
            )

        return _guard(_feed)

    def list_incidents(self, *, status: str | None = None, limit: int = 50) -> ApiResponse:
        return _guard(
            lambda: ApiResponse(
                200,
                {
                    "items": [
                        incident.to_dict()
                        for incident in self.service.list_incidents(status=status, limit=limit)
                    ],
                },
            ),
        )

    def patch_incident(self, incident_id: str, payload: dict[str, Any]) -> ApiResponse:
        return _guard(
            lambda: ApiResponse(200, self.service.patch_incident(incident_id, payload).to_dict()),
        )


def _accepted(result: AcquireResult) -> ApiResponse:
    body: dict[str, Any] = {
        "run_id": result.run.run_id,
        "reused": result.reused,
        "status": result.run.status.value,
        "idempotency_key": result.run.idempotency_key,
    }
    if result.run.kind is RunKind.ANALYSIS:
        body["input_count"] = result.run.input_count
    return ApiResponse(202, body)


def _guard(action: Callable[[], ApiResponse]) -> ApiResponse:
    try:
        return action()
    except BrandMonitorError as error:
        status_code = _STATUS_BY_ERROR_KIND.get(error.kind, 500)
        log = logger.warning if status_code >= 500 else logger.info  # noqa: PLR2004
        log("API error %s: %s", error.kind.value, error.message)
        return ApiResponse(
            status_code,
            {
                "error": {
                    "kind": error.kind.value,
                    "message": error.message,
                    "details": error.details,
                },
            },
        )
