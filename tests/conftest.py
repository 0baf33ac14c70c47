"""Shared test fixtures."""

from __future__ import annotations

import os
import sys
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from brand_monitor.clock import FrozenClock
from brand_monitor.config import (
    AggregationSettings,
    ReportSettings,
    Settings,
    WorkerSettings,
)
from brand_monitor.content.models import (
    ClassificationWrite,
    ContentCreate,
    ContentRecord,
    SourceType,
)
from brand_monitor.runtime import Runtime

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)

SRC_DIR = Path(__file__).resolve().parents[1] / "src"


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "brand-monitor.db",
        worker=WorkerSettings(worker_id="worker-test", poll_interval_seconds=0.0),
        aggregation=AggregationSettings(min_classified_items=3),
        reports=ReportSettings(artifacts_dir=tmp_path / "artifacts"),
    )


@pytest.fixture()
def runtime(settings: Settings, clock: FrozenClock) -> Iterator[Runtime]:
    active = Runtime.build(settings, clock=clock)
    try:
        yield active
    finally:
        active.close()


@pytest.fixture()
def seed_content(runtime: Runtime) -> Callable[..., list[ContentRecord]]:
    """Store ``count`` active records, optionally classified with ``sentimiento``."""

    def _seed(  # noqa: PLR0913
        count: int,
        *,
        sentimiento: str | None = None,
        term_id: str | None = None,
        provider: str = "eltiempo",
        source_name: str | None = None,
        source_type: SourceType = SourceType.NEWS,
        published_at: datetime | None = None,
        title: str = "Nota de prueba",
    ) -> list[ContentRecord]:
        records = []
        for index in range(count):
            record = runtime.content.add_content(
                ContentCreate(
                    source_type=source_type,
                    provider=provider,
                    source_name=source_name,
                    title=f"{title} {index}",
                    canonical_url=f"https://example.com/{provider}/{index}",
                    term_id=term_id,
                    published_at=published_at or NOW - timedelta(hours=index + 1),
                ),
            )
            if sentimiento is not None:
                runtime.content.save_classification(
                    ClassificationWrite(content_id=record.content_id, sentimiento=sentimiento),
                )
            records.append(record)
        return records

    return _seed


@pytest.fixture()
def echo_command(monkeypatch: pytest.MonkeyPatch) -> str:
    """Command template running the bundled keyword classifier in a subprocess."""

    current = os.environ.get("PYTHONPATH")
    monkeypatch.setenv("PYTHONPATH", os.pathsep.join(filter(None, [str(SRC_DIR), current])))
    return f"{sys.executable} -m brand_monitor.classification.echo_classifier"
