"""Shared pytest fixtures for test suite"""
import os
import sys
from pathlib import Path
from typing import Callable, Dict, Generator, List, Tuple, Union
from unittest.mock import patch

import fakeredis
import fakeredis.aioredis
import httpx
import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Settings are read at import time, so the environment must be ready first
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["ENVIRONMENT"] = "test"
os.environ["FRONTEND_URL"] = "http://localhost:3000"
os.environ["BACKEND_URL"] = "http://testserver"
os.environ["STATE_REGISTRY_BACKEND"] = "memory"
for _provider in ("FACEBOOK", "INSTAGRAM", "TIKTOK", "GMAIL", "WHATSAPP"):
    os.environ[f"{_provider}_CLIENT_ID"] = f"{_provider.lower()}-client-id"
    os.environ[f"{_provider}_CLIENT_SECRET"] = f"{_provider.lower()}-client-secret"

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from socialbridge.core.dependencies import Services, build_services, set_services  # noqa: E402
from socialbridge.db import redis as redis_module  # noqa: E402
from socialbridge.db.session import get_db  # noqa: E402
from socialbridge.main import app  # noqa: E402
from socialbridge.models import Base  # noqa: E402
from socialbridge.models.user import User  # noqa: E402
from socialbridge.services.auth_service import create_user  # noqa: E402
from socialbridge.services.state_registry import InMemoryStateRegistry  # noqa: E402

TEST_PASSWORD = "TestPassword123!"

# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

Route = Union[Tuple[int, dict], Callable[[httpx.Request], object]]


class FakeProviderAPI:
    """Stand-in for provider HTTP endpoints, served through httpx.MockTransport

    Routes are keyed on method and URL without the query string. A route is
    either a (status, json) pair or a callable taking the request; callables may
    be coroutines to simulate a slow provider.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], Route] = {}
        self.calls: List[httpx.Request] = []

    @staticmethod
    def _key(method: str, url: str) -> Tuple[str, str]:
        parsed = httpx.URL(url)
        return method.upper(), f"{parsed.scheme}://{parsed.host}{parsed.path}"

    def add(self, method: str, url: str, json: dict = None, status: int = 200, handler: Callable = None):
        self.routes[self._key(method, url)] = handler if handler is not None else (status, json or {})

    def calls_to(self, method: str, url: str) -> List[httpx.Request]:
        key = self._key(method, url)
        return [request for request in self.calls if self._key(request.method, str(request.url)) == key]

    def handle(self, request: httpx.Request):
        self.calls.append(request)
        route = self.routes.get(self._key(request.method, str(request.url)))
        if route is None:
            return httpx.Response(404, json={"error": {"message": f"no fake route for {request.url}"}})
        if callable(route):
            return route(request)
        status, body = route
        return httpx.Response(status, json=body)

    def client_factory(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handle))


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def mock_redis():
    """Swap the lazily created Redis clients for fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    fake_async_redis = fakeredis.aioredis.FakeRedis(decode_responses=True)
    with patch.object(redis_module, "_client", fake_redis):
        with patch.object(redis_module, "_async_client", fake_async_redis):
            yield fake_redis


@pytest.fixture(scope="function")
def provider_api() -> FakeProviderAPI:
    return FakeProviderAPI()


@pytest.fixture(scope="function")
def services(db_session: Session, provider_api: FakeProviderAPI) -> Generator[Services, None, None]:
    """Services wired to the test database and the fake provider endpoints"""
    wired = build_services(
        session_factory=TestSessionLocal,
        http_client_factory=provider_api.client_factory,
        registry=InMemoryStateRegistry(),
    )
    set_services(wired)
    try:
        yield wired
    finally:
        set_services(None)


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis, services: Services) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database, fake Redis and fake providers"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db

    try:
        # Disable OpenTelemetry instrumentation in tests
        with patch("socialbridge.core.otel.initialize_otel", return_value=False):
            with patch("socialbridge.core.otel.setup_otel_logging", return_value=False):
                with patch("socialbridge.main.init_db"):
                    with TestClient(app) as test_client:
                        yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def test_user(db_session: Session) -> User:
    return create_user(email="alice@example.com", password=TEST_PASSWORD, db=db_session)


@pytest.fixture(scope="function")
def test_user_2(db_session: Session) -> User:
    """Second user for ownership tests"""
    return create_user(email="bob@example.com", password=TEST_PASSWORD, db=db_session)


def login(client: TestClient, user: User) -> str:
    """Log `user` in on `client` and return the session token"""
    response = client.post("/api/auth/login", json={"email": user.email, "password": TEST_PASSWORD})
    assert response.status_code == 200
    return response.json()["session_token"]


@pytest.fixture(scope="function")
def authenticated_client(client: TestClient, test_user: User) -> TestClient:
    """Client with an authenticated session cookie for test_user"""
    login(client, test_user)
    return client


@pytest.fixture(scope="function")
def login_as(client: TestClient) -> Callable[[User], str]:
    """Switch the client's session to another user"""
    return lambda user: login(client, user)
