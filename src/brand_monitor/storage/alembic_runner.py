"""Programmatic Alembic upgrades for the brand-monitor SQLite database."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

logger = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parents[3]


def alembic_config(db_path: Path, *, root_dir: Path = REPO_ROOT) -> Config:
    """Config pointing at ``<root>/alembic`` and the given database file."""

    migrations_dir = root_dir / "alembic"
    if not migrations_dir.is_dir():
        raise FileNotFoundError(f"Alembic migrations not found at {migrations_dir}")
    alembic_ini = root_dir / "alembic.ini"
    config = Config(str(alembic_ini)) if alembic_ini.exists() else Config()
    config.set_main_option("script_location", str(migrations_dir))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    """Apply migrations up to head; a no-op when the schema is current."""

    command.upgrade(alembic_config(db_path), "head")
    logger.debug("Schema at head for %s", db_path)
