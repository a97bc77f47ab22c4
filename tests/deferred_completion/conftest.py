"""Pytest fixtures for deferred completion tests."""

from typing import Any, Callable, Dict, Generator, List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import deferred_completion.models  # noqa: F401
from deferred_completion.config import CompletionDefaults
from deferred_completion.core.completion_client import CompletionClient
from deferred_completion.core.record_store import RecordStore
from deferred_completion.database import Base, get_db
from deferred_completion.main import app


class MockAsyncResponse:
    """Mock response for async POST calls."""

    def __init__(self, json_data: Any, status_code: int = 200):
        self._json_data = json_data
        self.status_code = status_code

    def json(self) -> Any:
        """Return JSON data, or fail like httpx does on a non-JSON body."""
        if self._json_data is None:
            raise ValueError("No JSON body")
        return self._json_data


class MockClient:
    """Mock httpx.AsyncClient supporting .post().

    Each POST consumes the next entry of ``post_responses``; the last entry is
    reused once the list runs out.
    """

    def __init__(
        self,
        *,
        post_responses: Optional[List[Any]] = None,
        post_error: Optional[Exception] = None,
        status_code: int = 200,
    ):
        self.post_responses = list(post_responses or [{}])
        self.post_error = post_error
        self.status_code = status_code
        self.post_calls: List[tuple] = []

    @property
    def last_post_args(self) -> Optional[tuple]:
        return self.post_calls[-1] if self.post_calls else None

    async def post(self, path: str, **kwargs):
        """Mock async POST method."""
        self.post_calls.append((path, kwargs))

        if self.post_error:
            raise self.post_error

        index = min(len(self.post_calls), len(self.post_responses)) - 1
        return MockAsyncResponse(self.post_responses[index], status_code=self.status_code)

    async def aclose(self) -> None:
        """Close the client."""
        return None


@pytest.fixture
def mock_client_factory() -> Callable[..., MockClient]:
    """Factory fixture for creating MockClient instances.

    Example:
        ```python
        mock_client = mock_client_factory(
            post_responses=[{"choices": [{"message": {"content": "4"}, "finish_reason": "stop"}]}]
        )

        mock_client = mock_client_factory(post_error=httpx.ConnectError("Connection refused"))
        ```
    """

    def _create_mock_client(
        post_responses: Optional[List[Any]] = None,
        post_error: Optional[Exception] = None,
        status_code: int = 200,
    ) -> MockClient:
        return MockClient(post_responses=post_responses, post_error=post_error, status_code=status_code)

    return _create_mock_client


@pytest.fixture
def completion_client_factory(mock_client_factory) -> Callable[..., CompletionClient]:
    """Factory for CompletionClient instances backed by a MockClient."""

    def _create_completion_client(**kwargs: Any) -> CompletionClient:
        client = CompletionClient(base_url="http://completions.test/v1", api_key="test-key", timeout=5.0)
        client._client = mock_client_factory(**kwargs)
        return client

    return _create_completion_client


@pytest.fixture
def success_payload() -> Dict[str, Any]:
    """A successful completion service response."""
    return {
        "choices": [{"message": {"content": "4"}, "finish_reason": "stop"}],
        "usage": {"total_tokens": 5},
    }


@pytest.fixture
def error_payload() -> Dict[str, Any]:
    """An error completion service response."""
    return {"error": {"message": "rate limited", "code": "rate_limit"}}


@pytest.fixture
def defaults() -> CompletionDefaults:
    """Process-wide completion defaults used by tests."""
    return CompletionDefaults(model_id="gpt-4o-mini", max_tokens=50, temperature=0.7, timeout_seconds=30.0)


@pytest.fixture(scope="function")
def test_db_engine():
    """Create an in-memory SQLite engine shared across sessions."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    Base.metadata.create_all(bind=engine)

    yield engine

    # Cleanup: drop all tables
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_db_engine) -> sessionmaker:
    """Session factory bound to the test engine."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=test_db_engine,
    )


@pytest.fixture(scope="function")
def test_db_session(session_factory) -> Generator[Session, None, None]:
    """Create a database session for testing with automatic rollback."""
    session = session_factory()

    try:
        yield session
    finally:
        # Rollback any uncommitted changes to clean up test data
        session.rollback()
        session.close()


@pytest.fixture(scope="function")
def store(test_db_session: Session) -> RecordStore:
    """Record store bound to the test session, without expiry."""
    return RecordStore(test_db_session)


@pytest.fixture(scope="function")
def test_client(test_db_session: Session) -> Generator[TestClient, None, None]:
    """Create a test client with database dependency override."""

    def override_get_db() -> Generator[Session, None, None]:
        """Override get_db dependency to use test database session."""
        try:
            yield test_db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    client = TestClient(app)

    try:
        yield client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def transport_error() -> httpx.HTTPError:
    """A transport-level failure as raised by httpx."""
    return httpx.ConnectError("Connection refused")
