"""
tests/test_migrations.py — Alembic Environment Tests
=====================================================

Runs the migration chain against a throwaway SQLite file (the JSONB and
BigInteger compile shims come from ``conftest``).
"""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

from kamianime.database.models import Base

ALEMBIC_DIR = Path(__file__).resolve().parent.parent / "alembic"


def _config() -> Config:
    cfg = Config()
    cfg.set_main_option("script_location", str(ALEMBIC_DIR))
    return cfg


def _tables(url: str) -> set[str]:
    engine = create_engine(url)
    try:
        return set(inspect(engine).get_table_names())
    finally:
        engine.dispose()


class TestMigrations:
    def test_upgrade_creates_every_model_table(self, tmp_path, monkeypatch):
        url = f"sqlite:///{tmp_path / 'migrate.db'}"
        monkeypatch.setenv("DATABASE_URL", url)

        command.upgrade(_config(), "head")

        tables = _tables(url)
        assert set(Base.metadata.tables) <= tables
        assert "alembic_version" in tables

    def test_downgrade_drops_schema(self, tmp_path, monkeypatch):
        url = f"sqlite:///{tmp_path / 'migrate.db'}"
        monkeypatch.setenv("DATABASE_URL", url)
        cfg = _config()

        command.upgrade(cfg, "head")
        command.downgrade(cfg, "base")

        assert _tables(url) <= {"alembic_version"}
