"""
Pytest configuration and fixtures

Every test gets its own file-backed SQLite database under tmp_path with the
full schema created from the ORM models. Detector fetches open sessions on
worker threads, so the database must be a file rather than :memory:.
"""
import pytest
import sys
import os
from datetime import date
from uuid import uuid4

# Keep the module-level engine off Postgres before anything imports core.database
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.pop("GOOGLE_API_KEY", None)

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from core.database import Base
import models  # noqa: F401  (registers tables on Base.metadata)
from models import Athlete


@pytest.fixture(autouse=True)
def _no_redis(monkeypatch):
    """Redis is unavailable unless a test installs a fake."""
    import core.cache
    import services.insight_lock

    monkeypatch.setattr(core.cache, "get_redis_client", lambda: None)
    monkeypatch.setattr(services.insight_lock, "get_redis_client", lambda: None)


@pytest.fixture
def db_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def test_athlete(db_session):
    athlete = Athlete(
        email=f"test_{uuid4()}@example.com",
        display_name="Test Athlete",
        ftp=250.0,
        weight_kg=72.0,
        max_hr=188,
    )
    db_session.add(athlete)
    db_session.commit()
    db_session.refresh(athlete)
    return athlete


@pytest.fixture
def today():
    """Fixed reference day for date-relative assertions."""
    return date(2026, 3, 16)
