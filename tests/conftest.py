"""Shared fixtures: in-memory database, fixed clock, authenticated client."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from studycards.database.models import Base


class FakeClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, days: float = 0, hours: float = 0) -> None:
        self.now = self.now + timedelta(days=days, hours=hours)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 5, 9, 0, 0))


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    yield session
    session.close()


@pytest.fixture
def broken_session(tmp_path):
    """A session whose database file cannot be opened."""
    missing = tmp_path / "no-such-dir" / "progress.db"
    engine = create_engine(f"sqlite:///{missing}")
    session = sessionmaker(bind=engine)()
    yield session
    session.close()
    engine.dispose()


@pytest.fixture
def sample_cards():
    return [
        {"front": "What does SM-2 stand for?", "back": "SuperMemo 2", "difficulty": "easy"},
        {"front": "Minimum ease factor?", "back": "1.3", "hint": "Just above one"},
        {"front": "Interval after the second success?", "back": "6 days", "category": "SM-2"},
    ]
