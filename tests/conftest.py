"""Shared test fixtures for the PayRecon reconciliation core tests.

Uses an SQLite in-memory database so tests run without any server.
"""

from __future__ import annotations

import os

# Override DATABASE_URL before importing anything from payrecon: the
# module-level ``engine`` in payrecon.core.database is built on import.
os.environ["DATABASE_URL"] = "sqlite://"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from payrecon.core.config import Settings
from payrecon.core.database import Base, get_db
from payrecon.core.store import SqlKeyedStore
from payrecon.main import app
from payrecon.models import StoreNode  # noqa: F401  (registers the table)

# One shared connection so every session sees the same in-memory database
engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def store(db_session) -> SqlKeyedStore:
    return SqlKeyedStore(db_session)


@pytest.fixture
def config() -> Settings:
    return Settings(database_url="sqlite://", default_page_size=5)


@pytest.fixture(scope="function")
def client(db_session):
    """FastAPI test client with overridden DB dependency."""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.state.settings_cache.invalidate()
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
