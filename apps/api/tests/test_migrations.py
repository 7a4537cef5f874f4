"""
Migration graph and schema checks.

A second root (down_revision = None) makes upgrade ordering
non-deterministic, and a column present on only one side of the
model/migration pair only shows up against a real database. Both are
caught here.
"""
from pathlib import Path

from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import inspect

from core.database import Base, engine

EXPECTED_HEADS = {"plan_proposals_001"}


def _script() -> ScriptDirectory:
    api_root = Path(__file__).resolve().parents[1]
    cfg = Config(str(api_root / "alembic.ini"))
    cfg.set_main_option("script_location", str(api_root / "alembic"))
    return ScriptDirectory.from_config(cfg)


def test_single_expected_head():
    assert set(_script().get_heads()) == EXPECTED_HEADS


def test_single_root():
    roots = [rev for rev in _script().walk_revisions() if rev.down_revision is None]
    assert len(roots) == 1


def test_migrated_schema_matches_model_columns():
    inspector = inspect(engine)
    for table in Base.metadata.sorted_tables:
        db_columns = {c["name"] for c in inspector.get_columns(table.name)}
        model_columns = {c.name for c in table.columns}
        assert model_columns <= db_columns, f"{table.name} missing {sorted(model_columns - db_columns)}"
        assert db_columns <= model_columns, f"{table.name} has unmapped {sorted(db_columns - model_columns)}"
