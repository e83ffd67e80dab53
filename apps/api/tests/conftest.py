"""
Test configuration and fixtures.
"""
import os
import pytest
from datetime import datetime, timedelta, timezone
from typing import Generator

# Configure settings before importing the app
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET_KEY"] = "test-signing-key-5f0d9c2a7b1e4d3c8a6f2e9b"
os.environ["IDENTITY_PROVIDER_AUDIENCE"] = "demo-project"

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.main import create_app
from src.core.config import Settings
from src.core.errors import InvalidAssertion
from src.core.security import TokenCodec
from src.db.base import Base
from src.db.session import get_db
from src.services.identity import VerifiedIdentity
from src.services.refresh_tokens import RefreshTokenStore
import src.models  # noqa: F401


# One in-memory SQLite database shared by every session of a test
engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

VALID_ID_TOKEN = "valid-id-token"


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeIdentityProvider:
    """Accepts only the ID tokens registered on it."""

    def __init__(self):
        self.identities: dict[str, VerifiedIdentity] = {}
        self.error: Exception | None = None

    def register(self, id_token: str, subject: str, email: str | None = None) -> None:
        self.identities[id_token] = VerifiedIdentity(subject=subject, email=email, claims={"sub": subject})

    def verify_assertion(self, id_token: str) -> VerifiedIdentity:
        if self.error is not None:
            raise self.error
        identity = self.identities.get(id_token)
        if identity is None:
            raise InvalidAssertion("Unknown test token")
        return identity


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Create a database session on a fresh schema."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def codec(settings: Settings, clock: FakeClock) -> TokenCodec:
    return TokenCodec(settings.JWT_SECRET_KEY, leeway=timedelta(0), clock=clock)


@pytest.fixture
def store(db: Session, clock: FakeClock) -> RefreshTokenStore:
    return RefreshTokenStore(db, ttl=timedelta(days=7), clock=clock)


@pytest.fixture
def identity_provider() -> FakeIdentityProvider:
    provider = FakeIdentityProvider()
    provider.register(VALID_ID_TOKEN, subject="u1", email="u1@example.com")
    return provider


@pytest.fixture
def app(settings: Settings, identity_provider: FakeIdentityProvider) -> FastAPI:
    return create_app(settings, identity_provider=identity_provider)


@pytest.fixture(scope="function")
def client(app: FastAPI, db: Session) -> Generator[TestClient, None, None]:
    """Create test client with database session override."""
    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(client: TestClient) -> dict:
    """Get auth headers for subject u1."""
    response = client.post("/auth/exchange", json={"idToken": VALID_ID_TOKEN})
    token = response.json()["accessToken"]
    return {"Authorization": f"Bearer {token}"}
