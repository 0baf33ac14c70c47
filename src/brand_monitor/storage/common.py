"""Engine setup, datetime and JSON conventions shared by the SQLite repositories."""

from __future__ import annotations

import json
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine

from brand_monitor.clock import Clock, SystemClock
from brand_monitor.storage.alembic_runner import upgrade_head

DEFAULT_TENANT_ID = "default_tenant"


def from_iso(value: str) -> datetime:
    """Parse an ISO timestamp; naive values are taken as UTC."""

    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def to_db_datetime(value: datetime) -> datetime:
    """Naive UTC for storage."""

    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def optional_utc(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def dump_json(value: Any) -> str:
    """Canonical JSON used for every stored document."""

    return json.dumps(value, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


def load_json_object(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


class SqliteRepository:
    """Base for the SQLModel-backed repositories.

    Every repository owns a ``NullPool`` engine, so each session opens a fresh
    connection and concurrent workers in one process never share a handle.
    Connections run in WAL mode with a busy timeout, which lets readers proceed
    while a single writer holds the lock.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        tenant_id: str = DEFAULT_TENANT_ID,
        clock: Clock | None = None,
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.tenant_id = tenant_id
        self.clock: Clock = clock or SystemClock()
        self.sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self.engine = self._build_engine()

    def _build_engine(self) -> Engine:
        busy_timeout_ms = max(1, self.sqlite_busy_timeout_ms)
        engine = create_engine(
            f"sqlite:///{self.db_path}",
            connect_args={
                "check_same_thread": False,
                "timeout": max(1.0, busy_timeout_ms / 1000.0),
            },
            poolclass=NullPool,
        )

        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_connection: sqlite3.Connection, _record: object) -> None:
            cursor = dbapi_connection.cursor()
            for pragma in (
                "journal_mode = WAL",
                f"busy_timeout = {busy_timeout_ms}",
                "foreign_keys = ON",
            ):
                cursor.execute(f"PRAGMA {pragma}")
            cursor.close()

        return engine

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        """Migrate the database file to the head revision."""

        upgrade_head(self.db_path)

    def _now(self) -> datetime:
        return to_utc_aware_datetime(self.clock.now())
