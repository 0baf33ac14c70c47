from pathlib import Path

import allure
from sqlalchemy import text

from brand_monitor.runs.repository import RunRepository

pytestmark = [
    allure.epic("Platform"),
    allure.feature("Persistence"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = RunRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table' AND name NOT LIKE 'alembic%' AND name NOT LIKE 'sqlite%'
                ORDER BY name
                """,
            ),
        ).scalars().all()
        indexes = connection.execute(
            text("SELECT name FROM sqlite_master WHERE type = 'index'"),
        ).scalars().all()

    assert version == "20261019_0003"
    assert tables == [
        "classifications",
        "content_items",
        "incident_notes",
        "incidents",
        "kpi_snapshots",
        "report_schedules",
        "run_events",
        "runs",
        "source_weights",
        "tracked_terms",
    ]
    assert "uq_runs_active_idempotency_key" in indexes
    assert "uq_incidents_active_signature" in indexes
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "twice.db"
    first = RunRepository(db_path)
    first.init_schema()
    first.close()

    second = RunRepository(db_path)
    second.init_schema()
    assert second.list_runs() == []
    second.close()
