"""
Test configuration and fixtures.

Provides:
- In-memory SQLite database (schema created per test)
- Identity store and a seeded test identity
- A fake Gmail mailbox provider
- JWT token minting for authenticated tests
- HTTPX AsyncClient wired to app.state services
"""
import asyncio
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Generator

# Must be set before anything imports mail_assistant.core.config
os.environ["TESTING"] = "1"
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["FERNET_KEY"] = "ZmDfcTF7_60GrrY167zsiPd67pEvs0aGOv2oasOM1Pg="
os.environ["JWT_SECRET"] = "test-jwt-secret-0123456789abcdef0123456789"
os.environ["GMAIL_PUSH_TOPIC"] = "projects/test-project/topics/gmail-push"

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from mail_assistant.core.async_utils import drain_detached
from mail_assistant.core.deps import get_db
from mail_assistant.core.event_hub import EventHub
from mail_assistant.core.exceptions import StaleCursor
from mail_assistant.core.security import JWTAuthVerifier, create_session_token
from mail_assistant.db.base import Base
from mail_assistant.main import app
from mail_assistant.services.gmail_service import (
    EmailAddress,
    EmailSummary,
    WatchRegistration,
)
from mail_assistant.services.history_service import HistoryReconciler
from mail_assistant.services.identity_store import IdentityRecord, SqlIdentityStore
from mail_assistant.services.push_service import PushPipeline
from mail_assistant.services.watch_service import WatchRegistrar

TEST_EMAIL = "alice@example.com"
TEST_TOPIC = "projects/test-project/topics/gmail-push"


# =============================================================================
# Database Fixtures
# =============================================================================

test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Fresh schema per test; the store and the test share one in-memory database."""
    Base.metadata.create_all(bind=test_engine)
    session = TestingSessionLocal()
    yield session
    session.close()
    Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def identity_store(db: Session) -> SqlIdentityStore:
    return SqlIdentityStore(TestingSessionLocal)


@pytest.fixture(scope="function")
def test_identity(identity_store: SqlIdentityStore) -> IdentityRecord:
    """Signed-in mailbox with Google credentials but no watch or cursor yet."""
    return identity_store.upsert(
        TEST_EMAIL,
        access_token="access-token-1",
        refresh_token="refresh-token-1",
        token_expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        name="Alice Example",
        picture="https://example.com/alice.png",
    )


# =============================================================================
# Fake Gmail provider
# =============================================================================

def make_email(
    message_id: str,
    *,
    labels: tuple[str, ...] = ("INBOX", "UNREAD"),
    subject: str | None = None,
) -> EmailSummary:
    return EmailSummary(
        id=message_id,
        thread_id=f"thread-{message_id}",
        subject=subject or f"Subject {message_id}",
        snippet=f"Snippet {message_id}",
        from_address=EmailAddress(email="bob@example.com", name="Bob"),
        to_addresses=[EmailAddress(email=TEST_EMAIL)],
        date=datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc),
        labels=list(labels),
    )


def history_added(history_id: int, *message_ids: str, labels: tuple[str, ...] = ("INBOX",)) -> dict:
    """One users.history.list record adding ``message_ids``."""
    return {
        "id": str(history_id),
        "messagesAdded": [
            {"message": {"id": message_id, "labelIds": list(labels)}} for message_id in message_ids
        ],
    }


@dataclass
class FakeMailboxProvider:
    """In-memory stand-in for GmailClient.

    History records carry an ``id``; ``list_history_since`` only returns
    records newer than the start cursor, like Gmail does.
    """

    history: list[dict[str, Any]] = field(default_factory=list)
    messages: dict[str, EmailSummary] = field(default_factory=dict)
    history_error: Exception | None = None
    fetch_errors: dict[str, Exception] = field(default_factory=dict)
    watch_error: Exception | None = None
    watch_history_id: str = "5000"
    watch_expiration: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc) + timedelta(days=7)
    )
    delay: float = 0.0

    history_calls: list[str] = field(default_factory=list)
    fetch_calls: list[str] = field(default_factory=list)
    watch_calls: list[tuple[str, list[str] | None]] = field(default_factory=list)
    stop_calls: int = 0
    active: int = 0
    max_active: int = 0

    def add_inbox_message(self, history_id: int, message_id: str, **kwargs) -> EmailSummary:
        message = make_email(message_id, **kwargs)
        self.history.append(history_added(history_id, message_id))
        self.messages[message_id] = message
        return message

    async def list_history_since(self, start_history_id: str) -> list[dict[str, Any]]:
        self.history_calls.append(start_history_id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.history_error is not None:
                raise self.history_error
            return [record for record in self.history if int(record["id"]) > int(start_history_id)]
        finally:
            self.active -= 1

    async def register_watch(self, topic_name: str, label_ids: list[str] | None = None):
        self.watch_calls.append((topic_name, label_ids))
        if self.watch_error is not None:
            raise self.watch_error
        return WatchRegistration(history_id=self.watch_history_id, expiration=self.watch_expiration)

    async def stop_watch(self) -> None:
        self.stop_calls += 1

    async def fetch_message(self, message_id: str) -> EmailSummary:
        self.fetch_calls.append(message_id)
        if message_id in self.fetch_errors:
            raise self.fetch_errors[message_id]
        return self.messages[message_id]


@pytest.fixture(scope="function")
def email_factory():
    return make_email


@pytest.fixture(scope="function")
def provider() -> FakeMailboxProvider:
    return FakeMailboxProvider()


@pytest.fixture(scope="function")
def provider_factory(provider: FakeMailboxProvider):
    return lambda record: provider


@pytest.fixture(scope="function")
def stale_provider(provider: FakeMailboxProvider) -> FakeMailboxProvider:
    provider.history_error = StaleCursor("100")
    return provider


# =============================================================================
# Service Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def event_hub() -> EventHub:
    return EventHub()


@pytest.fixture(scope="function")
def watch_registrar(identity_store, provider_factory) -> WatchRegistrar:
    return WatchRegistrar(identity_store, provider_factory, topic_name=TEST_TOPIC)


@pytest.fixture(scope="function")
def reconciler(identity_store, provider_factory) -> HistoryReconciler:
    return HistoryReconciler(identity_store, provider_factory, max_messages=5)


@pytest.fixture(scope="function")
def push_pipeline(reconciler, event_hub) -> PushPipeline:
    return PushPipeline(reconciler, event_hub)


@pytest.fixture(scope="function")
def app_services(event_hub, identity_store, watch_registrar, push_pipeline):
    """Install test services on app.state (ASGITransport does not run the lifespan)."""
    app.state.event_hub = event_hub
    app.state.identity_store = identity_store
    app.state.auth_verifier = JWTAuthVerifier()
    app.state.watch_registrar = watch_registrar
    app.state.push_pipeline = push_pipeline
    return app.state


# =============================================================================
# Auth Fixtures
# =============================================================================

@dataclass
class TestAuth:
    """Test authentication context."""
    identity: IdentityRecord
    token: str

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


@pytest.fixture(scope="function")
def test_auth(test_identity: IdentityRecord) -> TestAuth:
    token = create_session_token(
        test_identity.identity,
        name=test_identity.name,
        picture=test_identity.picture,
    )
    return TestAuth(identity=test_identity, token=token)


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def client(db: Session, app_services) -> AsyncGenerator[AsyncClient, None]:
    """Unauthenticated AsyncClient for public endpoints."""
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    await drain_detached(timeout=5)
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def authed_client(
    db: Session,
    app_services,
    test_auth: TestAuth,
) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient carrying the test identity's bearer token."""
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers=test_auth.headers,
    ) as c:
        yield c

    await drain_detached(timeout=5)
    app.dependency_overrides.clear()
