"""
Root test configuration and fixtures.

Provides:
- db_engine / db_session: PostgreSQL when DATABASE_URL is set, otherwise a
  file-backed SQLite database per test (real commits, separate connections)
- session_factory: extra sessions on the same database (concurrent writers)
- clock: controllable UTC clock injected into services
- catalog: plan catalog loaded from config/billing_plans.yml
- make_store: registers a store with its TRIAL subscription
- make_yaml_config: writes YAML config files to a temp dir
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator

import pytest
import yaml
from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker

# Set test environment
os.environ.setdefault("ENV", "test")

from dukabill.config.plan_catalog import get_plan_catalog, reset_plan_catalog  # noqa: E402


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def _get_test_database_url(tmp_path: Path) -> str:
    """Get database URL for tests."""
    database_url = os.getenv("DATABASE_URL")

    if database_url:
        if database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql://", 1)
        return database_url

    return f"sqlite:///{tmp_path / 'dukabill_test.db'}"


@pytest.fixture(scope="function")
def db_engine(tmp_path):
    """
    Create database engine for tests.

    Uses PostgreSQL if DATABASE_URL is set, otherwise SQLite on disk so that
    separate sessions really are separate connections.
    """
    database_url = _get_test_database_url(tmp_path)

    if database_url.startswith("postgresql"):
        try:
            engine = create_engine(database_url, pool_pre_ping=True)
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            pytest.skip(f"PostgreSQL not available. Error: {e}")
    else:
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
        )

    from dukabill.db_base import Base
    import dukabill.models  # noqa: F401 - registers all tables

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=db_engine,
    )


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    """Session for one test; the database is dropped afterwards."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def catalog():
    """Fresh plan catalog per test."""
    reset_plan_catalog()
    yield get_plan_catalog()
    reset_plan_catalog()


@pytest.fixture
def clock():
    """Clock frozen at a fixed instant; call clock.advance(days=...) to move it."""
    return FrozenClock(datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def make_store(db_session, catalog, clock):
    """
    Factory that registers a store (with TRIAL subscription) at clock time.

    Usage:
        store = make_store("S1", payment_code="DUKA-0001", phone="0712345678")
    """
    from dukabill.services.store_service import StoreService

    def _make(store_id: str, payment_code: str = None, phone: str = None, name: str = None):
        return StoreService(db_session, catalog, clock).register_store(
            name=name or f"Store {store_id}",
            store_id=store_id,
            phone=phone,
            payment_code=payment_code,
        )
    return _make


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "security: mark test as security-focused")
    config.addinivalue_line("markers", "slow: mark test as slow-running")


# =============================================================================
# Shared Config Fixtures
# =============================================================================


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("billing_plans.yml", {"plans": [...]})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
