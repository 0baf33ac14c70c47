from __future__ import annotations

import io
import json
from collections.abc import Callable
from datetime import UTC, datetime

import allure
import pytest

from brand_monitor.classification import echo_classifier
from brand_monitor.classification.command_classifier import CommandClassifier
from brand_monitor.clock import FrozenClock
from brand_monitor.config import Settings
from brand_monitor.content.models import ContentCreate, ContentRecord, SourceType
from brand_monitor.errors import DependencyError
from brand_monitor.runs.models import RunKind, RunStatus
from brand_monitor.runs.services import RunService
from brand_monitor.runtime import Runtime

pytestmark = [
    allure.epic("Run Orchestration"),
    allure.feature("Sentiment Classifier"),
]

PUBLISHED = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def _record(title: str, *, content_id: str = "c-1") -> ContentRecord:
    return ContentRecord(
        content_id=content_id,
        term_id=None,
        source_type="news",
        provider="eltiempo",
        source_name=None,
        state="active",
        title=title,
        canonical_url=f"https://example.com/{content_id}",
        published_at=PUBLISHED,
        created_at=PUBLISHED,
        updated_at=PUBLISHED,
    )


def _classifier(template: str) -> CommandClassifier:
    return CommandClassifier(command_template=template, timeout_seconds=30.0)


def _seeder(runtime: Runtime) -> Callable[[str, str], ContentRecord]:
    def _add(title: str, content_id: str) -> ContentRecord:
        return runtime.content.add_content(
            ContentCreate(
                source_type=SourceType.NEWS,
                provider="eltiempo",
                title=title,
                canonical_url=f"https://example.com/{content_id}",
                published_at=PUBLISHED,
                content_id=content_id,
            ),
        )

    return _add


def test_command_classifier_reads_json_result(echo_command: str) -> None:
    result = _classifier(echo_command).classify(_record("Usuarios reportan falla masiva"))

    assert result.sentimiento == "negativo"
    assert result.categoria == "general"


def test_command_classifier_passes_template_arguments(echo_command: str) -> None:
    classifier = _classifier(f"{echo_command} --categoria {{provider}}")

    result = classifier.classify(_record("Claro lanza nuevo plan"))

    assert result.sentimiento == "positivo"
    assert result.categoria == "eltiempo"


def test_non_zero_exit_is_transient_dependency_error(echo_command: str) -> None:
    with pytest.raises(DependencyError) as caught:
        _classifier(f"{echo_command} --fail").classify(_record("x"))

    assert caught.value.transient is True
    assert "code 3" in caught.value.message
    assert "asked to fail" in caught.value.message


def test_missing_command_is_permanent_dependency_error() -> None:
    with pytest.raises(DependencyError) as caught:
        _classifier("brand-monitor-no-such-classifier --x").classify(_record("x"))

    assert caught.value.transient is False


@pytest.mark.parametrize("template", ["", "   ", "classify {unknown}"])
def test_bad_templates_are_rejected(template: str) -> None:
    with pytest.raises(DependencyError) as caught:
        _classifier(template).classify(_record("x"))

    assert caught.value.transient is False


@pytest.mark.parametrize(
    ("title", "expected"),
    [
        ("Nueva demanda contra el operador", "negativo"),
        ("El operador recibe premio", "positivo"),
        ("Reunion de accionistas", "neutro"),
    ],
)
def test_echo_classifier_keywords(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
    title: str,
    expected: str,
) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO(json.dumps({"title": title})))

    assert echo_classifier.main([]) == 0

    assert json.loads(capsys.readouterr().out)["sentimiento"] == expected


def test_analysis_run_classifies_missing_records_and_snapshots(
    settings: Settings,
    clock: FrozenClock,
    echo_command: str,
) -> None:
    runtime = Runtime.build(settings, clock=clock, classifier=_classifier(echo_command))
    try:
        seed = _seeder(runtime)
        seed("Crisis en la red", "c-neg")
        seed("Claro lanza 5G", "c-pos")
        seed("Resultados trimestrales", "c-neu")

        accepted = RunService(runtime).create_run(RunKind.ANALYSIS, {"scope": "overview"})
        assert accepted.created
        assert accepted.run.input_count == 3
        runtime.dispatcher().run_once()

        stored = runtime.runs.get_run(accepted.run.run_id)
        assert stored.status is RunStatus.COMPLETED
        assert stored.output["classified_now"] == 3
        assert stored.output["input_count"] == 3
        totals = stored.output["result"]["totals"]
        assert (totals["positivos"], totals["negativos"], totals["neutrales"]) == (1, 1, 1)
        [label] = runtime.content.classifications_for(["c-neg"])
        assert label.prompt_version == "analysis-v1"
    finally:
        runtime.close()


def test_analysis_run_fails_with_dependency_error_when_classifier_breaks(
    settings: Settings,
    clock: FrozenClock,
    echo_command: str,
) -> None:
    runtime = Runtime.build(settings, clock=clock, classifier=_classifier(f"{echo_command} --fail"))
    try:
        _seeder(runtime)("Crisis en la red", "c-1")
        accepted = RunService(runtime).create_run(RunKind.ANALYSIS, {})
        runtime.dispatcher().run_once()

        stored = runtime.runs.get_run(accepted.run.run_id)
        assert stored.status is RunStatus.FAILED
        assert stored.error_kind == "DependencyError"
    finally:
        runtime.close()
