from __future__ import annotations

import csv
import io
from collections.abc import Callable
from urllib.parse import urlparse
from urllib.request import url2pathname

import allure
import pytest

from brand_monitor.content.models import ContentRecord, TermCreate, TermScope
from brand_monitor.errors import BrandMonitorError, DependencyError, RunTimeoutError
from brand_monitor.runs.api import RunApi
from brand_monitor.runs.handlers import EXPORT_COLUMNS
from brand_monitor.runs.services import RunService
from brand_monitor.runtime import Runtime

pytestmark = [
    allure.epic("Run Orchestration"),
    allure.feature("Caller API"),
]


@pytest.fixture()
def api(runtime: Runtime) -> RunApi:
    return RunApi(RunService(runtime))


def _artifact_text(url: str) -> str:
    with open(url2pathname(urlparse(url).path), encoding="utf-8") as handle:
        return handle.read()


def test_analysis_create_reports_input_count_and_reuses_active_run(
    api: RunApi,
    seed_content: Callable[..., list[ContentRecord]],
) -> None:
    seed_content(3)

    first = api.create_run("analysis", {"scope": "channel"})
    second = api.create_run("analysis", {"scope": "channel"})

    assert first.status_code == 202
    assert first.body["reused"] is False
    assert first.body["status"] == "pending"
    assert first.body["input_count"] == 3
    assert first.body["idempotency_key"].startswith("fp:")
    assert second.status_code == 202
    assert second.body["reused"] is True
    assert second.body["run_id"] == first.body["run_id"]


def test_completed_analysis_is_served_from_retention(
    api: RunApi,
    runtime: Runtime,
    seed_content: Callable[..., list[ContentRecord]],
) -> None:
    seed_content(3, sentimiento="neutro")
    first = api.create_run("analysis", {"idempotency_key": "dash-1"})
    runtime.dispatcher().run_once()

    again = api.create_run("analysis", {"idempotency_key": "dash-1"})
    shown = api.get_run(first.body["run_id"])

    assert again.body["reused"] is True
    assert again.body["status"] == "completed"
    assert shown.status_code == 200
    assert shown.body["output"]["scope"] == "overview"
    assert shown.body["output"]["result"]["totals"]["neutrales"] == 3


def test_export_lifecycle_writes_csv_artifact(
    api: RunApi,
    runtime: Runtime,
    seed_content: Callable[..., list[ContentRecord]],
) -> None:
    seed_content(3, sentimiento="positivo")
    accepted = api.create_run("export", {"source_type": "news"})
    run_id = accepted.body["run_id"]

    pending = api.get_run(run_id)
    assert pending.body["run"]["status"] == "pending"
    assert "output" not in pending.body

    runtime.dispatcher().run_once()
    done = api.get_run(run_id)

    assert done.body["run"]["status"] == "completed"
    output = done.body["output"]
    assert output["row_count"] == 3
    assert output["columns"] == list(EXPORT_COLUMNS)
    rows = list(csv.reader(io.StringIO(_artifact_text(output["artifact_url"]))))
    assert rows[0] == list(EXPORT_COLUMNS)
    assert len(rows[0]) == 20
    assert len(rows) == 4
    assert {row[EXPORT_COLUMNS.index("sentimiento")] for row in rows[1:]} == {"positivo"}

    fresh = api.create_run("export", {"source_type": "news"})
    assert fresh.body["reused"] is False
    assert fresh.body["run_id"] != run_id


@pytest.mark.parametrize(
    ("kind", "payload", "message"),
    [
        ("analysis", {"scope": "galaxy"}, "Invalid scope"),
        ("analysis", {"limit": 501}, "limit must be between 1 and 500"),
        ("analysis", {"formula_version": "kpi-v9"}, "Unknown formula_version"),
        ("report", {"confidence_threshold": 1.5}, "confidence_threshold"),
        ("export", {"states": ["deleted"]}, "Unknown content states"),
        ("export", {"limit": 50_001}, "limit must be between"),
        ("sandwich", {}, "kind"),
        ("export", {"idempotency_key": "   "}, "idempotency"),
        ("report", {"template_id": 7}, "template_id must be a string"),
    ],
)
def test_invalid_requests_map_to_422(api: RunApi, kind: str, payload: dict, message: str) -> None:
    response = api.create_run(kind, payload)

    assert response.status_code == 422
    assert response.body["error"]["kind"] == "ValidationError"
    assert message in response.body["error"]["message"]


def test_unknown_run_is_404(api: RunApi) -> None:
    response = api.get_run("missing")

    assert response.status_code == 404
    assert response.body["error"]["kind"] == "NotFoundError"


def test_approving_a_non_review_run_is_409(api: RunApi) -> None:
    accepted = api.create_run("report", {})

    response = api.approve_report(accepted.body["run_id"], actor_user_id="editor-1")

    assert response.status_code == 409
    assert response.body["error"]["kind"] == "ConflictError"


class _FailingService:
    def __init__(self, error: BrandMonitorError) -> None:
        self.error = error

    def create_run(self, kind: str, payload: dict) -> None:
        raise self.error


@pytest.mark.parametrize(
    ("error", "status_code"),
    [
        (DependencyError("content store unavailable", transient=True), 503),
        (RunTimeoutError("deadline exceeded"), 504),
        (BrandMonitorError("unexpected"), 500),
    ],
)
def test_error_kinds_map_to_status_codes(error: BrandMonitorError, status_code: int) -> None:
    api = RunApi(_FailingService(error))  # type: ignore[arg-type]

    response = api.create_run("export", {})

    assert response.status_code == status_code
    assert response.body["error"]["kind"] == error.kind.value
    assert response.body["error"]["message"] == error.message


def test_list_runs_filters_and_validates(api: RunApi) -> None:
    api.create_run("export", {})
    api.create_run("report", {})

    exports = api.list_runs(kind="export")
    bad = api.list_runs(status="exploded")

    assert [item["kind"] for item in exports.body["items"]] == ["export"]
    assert bad.status_code == 422


def test_incident_flow_through_api(
    api: RunApi,
    runtime: Runtime,
    seed_content: Callable[..., list[ContentRecord]],
) -> None:
    term = runtime.content.add_term(TermCreate(name="Claro", scope=TermScope.BRAND))
    seed_content(4, sentimiento="negativo", term_id=term.term_id)

    accepted = api.evaluate_incidents({})
    repeated = api.evaluate_incidents({})
    assert accepted.status_code == 202
    assert accepted.body["idempotency_key"] == "incident-evaluation:news:kpi-v1:2026-03-02T12:00:00+00:00"
    assert repeated.body["run_id"] == accepted.body["run_id"]

    runtime.dispatcher().run_once()
    output = api.get_run(accepted.body["run_id"]).body["output"]
    assert output["incidents_opened"] == 1
    assert output["window"]["end"] == "2026-03-02T12:00:00+00:00"

    listed = api.list_incidents(status="open")
    [incident] = listed.body["items"]
    assert incident["severity"] == "SEV1"

    patched = api.patch_incident(
        incident["incident_id"],
        {"actor_user_id": "u1", "reason": "Escalado a legal", "status": "acknowledged"},
    )
    assert patched.status_code == 200
    assert patched.body["status"] == "acknowledged"
    assert patched.body["notes"][0]["note"] == "[status open -> acknowledged] Escalado a legal"

    invalid = api.patch_incident(
        incident["incident_id"],
        {"actor_user_id": "u1", "reason": "x", "status": "closed"},
    )
    assert invalid.status_code == 422
    for field in ("owner_user_id", "reason", "actor_user_id"):
        malformed = api.patch_incident(
            incident["incident_id"],
            {"actor_user_id": "u1", "reason": "Revisado", field: 42},
        )
        assert malformed.status_code == 422
        assert malformed.body["error"]["message"] == f"{field} must be a string."
    assert api.patch_incident("missing", {"actor_user_id": "u1", "reason": "x"}).status_code == 404


def test_feed_endpoint(
    api: RunApi,
    runtime: Runtime,
    seed_content: Callable[..., list[ContentRecord]],
) -> None:
    term = runtime.content.add_term(TermCreate(name="Claro", max_articles_per_run=3))
    seed_content(5, sentimiento="positivo", term_id=term.term_id)

    response = api.feed(term.term_id, limit=10)

    assert response.status_code == 200
    assert response.body["page_size"] == 3
    assert [item["sentimiento"] for item in response.body["items"]] == ["positivo"] * 3
    assert api.feed("missing", limit=10).status_code == 404
