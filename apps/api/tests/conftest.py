"""
Pytest configuration and fixtures

The suite runs against a throwaway sqlite file migrated to Alembic head
once per session. Every table is emptied before each test, and the
application's policy cache is replaced so no snapshot leaks between tests.
"""
import os
import sys
import tempfile
from pathlib import Path

import pytest

# Settings are read at import time; configure before any app module loads.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="plan-proposals-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DB_DIR, 'test.db')}"
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production-0123456789")
os.environ["POLICY_REFRESH_ON_STARTUP"] = "false"
os.environ.pop("POLICY_OVERRIDES_JSON", None)

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


@pytest.fixture(scope="session", autouse=True)
def _ensure_db_schema_is_at_head():
    """Build the test schema through the real migrations, not create_all()."""
    try:
        from alembic import command
        from alembic.config import Config

        api_root = Path(__file__).resolve().parents[1]
        cfg = Config(str(api_root / "alembic.ini"))
        # script_location in alembic.ini is relative ("alembic").
        cfg.set_main_option("script_location", str(api_root / "alembic"))
        command.upgrade(cfg, "head")
    except Exception as e:
        # Tests should fail loudly if migrations cannot be applied.
        raise RuntimeError(f"Failed to upgrade DB to Alembic head: {e}") from e


from core.database import Base, SessionLocal, engine  # noqa: E402
from services.policy_runtime_cache import PolicyRuntimeCache  # noqa: E402
from services.policy_store import SqlPolicyStore  # noqa: E402


@pytest.fixture(autouse=True)
def _empty_tables(_ensure_db_schema_is_at_head):
    # Core DELETEs bypass the audit table's ORM immutability hooks.
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    yield


@pytest.fixture(autouse=True)
def _fresh_app_policy_cache():
    from main import app

    app.state.policy_store = SqlPolicyStore(SessionLocal)
    app.state.policy_cache = PolicyRuntimeCache(app.state.policy_store)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def policy_store():
    return SqlPolicyStore(SessionLocal)


@pytest.fixture
def policy_cache(policy_store):
    return PolicyRuntimeCache(policy_store)
