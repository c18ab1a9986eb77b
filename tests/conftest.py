from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from warden.common.db import connection
from warden.common.db.models import Base


@pytest.fixture
def test_db(tmp_path):
    """
    Create a throwaway SQLite database with the full schema.

    Returns:
        The URL to the test database
    """
    test_db_url = f"sqlite:///{tmp_path / 'warden-test.db'}"
    with patch("warden.common.settings.DB_URL", test_db_url):
        yield test_db_url


@pytest.fixture
def db_engine(test_db):
    """
    Create a SQLAlchemy engine connected to the test database.

    Args:
        test_db: URL to the test database (from the test_db fixture)

    Returns:
        SQLAlchemy engine
    """
    engine = create_engine(test_db, connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """
    Create a new database session for a test.

    Args:
        db_engine: SQLAlchemy engine (from the db_engine fixture)

    Returns:
        SQLAlchemy session
    """
    SessionLocal = sessionmaker(
        bind=db_engine, autocommit=False, autoflush=False, expire_on_commit=False
    )
    session = SessionLocal()

    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def session_factory(db_engine, monkeypatch):
    """Point ``make_session`` at the test database and return it."""
    factory = sessionmaker(bind=db_engine, expire_on_commit=False)
    monkeypatch.setattr(connection, "_session_factory", factory)
    return connection.make_session


@pytest.fixture
def docker_client():
    """A docker client whose containers collection is fully mocked."""
    client = MagicMock()
    client.containers = MagicMock()
    client.networks = MagicMock()
    return client


@pytest.fixture
def mock_lifecycle():
    """A lifecycle manager with every async operation mocked."""
    from warden.orchestrator.containers import RuntimeStatus, WorkerLifecycleManager

    lifecycle = MagicMock(spec=WorkerLifecycleManager)
    lifecycle.create = AsyncMock(return_value="container-new")
    lifecycle.stop = AsyncMock(return_value=True)
    lifecycle.remove = AsyncMock(return_value=True)
    lifecycle.restart = AsyncMock()
    lifecycle.logs = AsyncMock(return_value="")
    lifecycle.status = AsyncMock(return_value=RuntimeStatus(state="not_found"))
    return lifecycle


class FakeWorker:
    """Scripted worker control surface for ``httpx.MockTransport``.

    Each ``"METHOD /path"`` route maps to a list of responses. They are handed
    out in order and the last one repeats. Exceptions in the list are raised.
    """

    def __init__(self):
        self.routes: dict[str, list] = {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        responses = self.routes.get(f"{request.method} {request.url.path}")
        if not responses:
            return httpx.Response(404, json={"error": "not found"})
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    def paths(self) -> list[str]:
        return [f"{r.method} {r.url.path}" for r in self.requests]


@pytest.fixture
def worker():
    return FakeWorker()
