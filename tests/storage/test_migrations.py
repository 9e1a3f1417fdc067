"""Tests for the Alembic migrations."""

from __future__ import annotations

from pathlib import Path

import pytest
import sqlalchemy as sa
from alembic import command
from alembic.config import Config

ROOT = Path(__file__).resolve().parents[2]


@pytest.fixture
def migrated_db(tmp_path, monkeypatch: pytest.MonkeyPatch) -> Path:
    db_path = tmp_path / "migrated.db"
    monkeypatch.setenv("SQLALCHEMY_DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    config = Config()
    config.set_main_option("script_location", str(ROOT / "alembic"))
    command.upgrade(config, "head")
    return db_path


def test_upgrade_creates_schema(migrated_db: Path) -> None:
    engine = sa.create_engine(f"sqlite:///{migrated_db}")
    try:
        inspector = sa.inspect(engine)
        tables = set(inspector.get_table_names())
        offer_columns = {c["name"]: c["type"] for c in inspector.get_columns("offers")}
        event_indexes = {i["name"] for i in inspector.get_indexes("events")}
    finally:
        engine.dispose()

    assert {"events", "offers", "processing_diagnostics", "alembic_version"} <= tables
    assert isinstance(offer_columns["offer_id"], sa.Text)
    assert isinstance(offer_columns["amount_a"], sa.Numeric)
    assert event_indexes == {"idx_events_offer_id", "idx_events_slot"}
