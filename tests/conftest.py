"""
Test fixtures for pulse-collector tests.

Provides a file-backed SQLite engine (worker threads need their own
connections), a seeded project and an API client wired to both.
"""

import pytest
from typing import Generator
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel

from pulse.db import build_engine, create_db_and_tables, get_session
from pulse.models import Project
from pulse.services.event_processor import EventProcessor


@pytest.fixture(autouse=True)
def clear_rate_limiters():
    """Clear the global rate limiter before each test to prevent 429 errors."""
    from pulse.core.rate_limit import rate_limiter

    rate_limiter.clear()
    yield
    rate_limiter.clear()


@pytest.fixture(scope="function")
def test_engine(tmp_path):
    """Create a test database engine on a temporary SQLite file."""
    engine = build_engine(f"sqlite:///{tmp_path / 'pulse_test.db'}")
    create_db_and_tables(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def test_session(test_engine) -> Generator[Session, None, None]:
    """Provide a test database session."""
    with Session(test_engine) as session:
        yield session


@pytest.fixture
def project(test_session: Session) -> Project:
    """Create the project most tests send events for."""
    project = Project(id="proj_test", name="Test Site", domain="a.test")
    test_session.add(project)
    test_session.commit()
    test_session.refresh(project)
    return project


@pytest.fixture
def processor(test_engine) -> EventProcessor:
    return EventProcessor(test_engine)


@pytest.fixture
def client(test_engine, processor) -> Generator[TestClient, None, None]:
    """API client whose dependencies point at the test database."""
    from pulse.api.deps import get_event_processor
    from pulse.main import app

    def override_session():
        with Session(test_engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_event_processor] = lambda: processor
    yield TestClient(app)
    app.dependency_overrides.clear()
