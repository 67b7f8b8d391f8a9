"""
Fixtures shared by the test layers.

Repository tests run against an in-memory SQLite database; service and protocol tests use the dict-backed
fakes from tests/fakes.py.
"""

from typing import Generator

import pytest
from sqlalchemy import StaticPool, create_engine
from sqlalchemy.orm import Session, sessionmaker

from src.core.config import Settings
from src.db.schema import Base
from tests.fakes import FakeGameRepository, FakeUserRepository

# One connection for the whole run, so every session sees the same in-memory tables
DATABASE_URL = "sqlite:///:memory:"
engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = sessionmaker(autoflush=False, bind=engine)


@pytest.fixture
def db_session_repo() -> Generator[Session, None, None]:
    """Fresh games/users tables for each test, dropped at teardown."""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def game_repo() -> Generator[FakeGameRepository, None, None]:
    repo = FakeGameRepository()
    try:
        yield repo
    finally:
        repo.clear()


@pytest.fixture
def user_repo() -> Generator[FakeUserRepository, None, None]:
    repo = FakeUserRepository()
    try:
        yield repo
    finally:
        repo.clear()


@pytest.fixture
def settings() -> Settings:
    """Production defaults, except a short grace period so presence tests stay fast."""
    return Settings(
        database_url=DATABASE_URL,
        jwt_secret="test-secret",
        disconnect_grace_seconds=0.05,
    )
