"""Test configuration -- in-memory SQLite, fake object storage, httpx AsyncClient"""

import itertools
import os
from collections.abc import AsyncGenerator

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DB_LOG_SLOW_QUERIES", "false")
os.environ.setdefault("SECURITY_HEADERS_ENABLED", "true")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from carechat import models_chat  # noqa: F401
from carechat.auth import create_access_token
from carechat.config import ChatSettings, get_chat_settings
from carechat.database import Base, get_db
from carechat.domain.chat.broadcaster import RealtimeBroadcaster
from carechat.domain.chat.exceptions import ChatStorageFailure
from carechat.domain.chat.media import MediaAccessBroker
from carechat.domain.chat.service import ChatService
from carechat.models import ROLE_ADMIN, ROLE_CLIENT, ServiceRequest, User


class FakeObjectStorage:
    """In-memory stand-in for the R2 bucket; records every call"""

    def __init__(self):
        self.objects: set[str] = set()
        self.fail_get = False
        self.fail_put = False
        self.delete_failures = 0
        self.signed_gets: list[tuple[str, int]] = []
        self.signed_puts: list[tuple[str, str, int]] = []
        self.delete_calls: list[str] = []

    def presign_get(self, key: str, ttl_seconds: int) -> str:
        if self.fail_get:
            raise ChatStorageFailure("Could not sign media URL")
        self.signed_gets.append((key, ttl_seconds))
        return f"https://storage.test/{key}?X-Amz-Expires={ttl_seconds}&X-Amz-Signature=get"

    def presign_put(self, key: str, content_type: str, ttl_seconds: int) -> tuple[str, dict]:
        if self.fail_put:
            raise ChatStorageFailure("Could not sign upload URL")
        self.signed_puts.append((key, content_type, ttl_seconds))
        url = f"https://storage.test/{key}?X-Amz-Expires={ttl_seconds}&X-Amz-Signature=put"
        return url, {"Content-Type": content_type}

    def delete_prefix(self, prefix: str) -> int:
        self.delete_calls.append(prefix)
        if self.delete_failures > 0:
            self.delete_failures -= 1
            raise ChatStorageFailure(f"Could not delete objects under {prefix}")
        doomed = {key for key in self.objects if key.startswith(prefix)}
        self.objects -= doomed
        return len(doomed)


class RecordingBroadcaster(RealtimeBroadcaster):
    """Real broadcaster that also keeps every published (thread_id, event)"""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.published: list[tuple[int, object]] = []

    async def publish(self, thread_id, event):
        self.published.append((thread_id, event))
        return await super().publish(thread_id, event)

    def events_named(self, name: str) -> list:
        return [event for _, event in self.published if event.event_name == name]


class RecordingCleanupQueue:
    def __init__(self):
        self.enqueued: list[int] = []
        self.fail = False

    async def enqueue(self, thread_id: int):
        if self.fail:
            raise ConnectionError("redis unavailable")
        self.enqueued.append(thread_id)
        return f"chat-cleanup-{thread_id}"

    async def close(self):
        return None


@pytest.fixture
def engine():
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(db):
    counter = itertools.count(1)

    def _make(role: str = ROLE_CLIENT) -> User:
        n = next(counter)
        user = User(email=f"user{n}@example.com", full_name=f"User {n}", role=role)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def admin(make_user) -> User:
    return make_user(ROLE_ADMIN)


@pytest.fixture
def client_user(make_user) -> User:
    return make_user(ROLE_CLIENT)


@pytest.fixture
def other_client(make_user) -> User:
    return make_user(ROLE_CLIENT)


@pytest.fixture
def make_request(db):
    def _make(owner: User) -> ServiceRequest:
        request = ServiceRequest(user_id=owner.id)
        db.add(request)
        db.commit()
        db.refresh(request)
        return request

    return _make


@pytest.fixture
def service_request(make_request, client_user) -> ServiceRequest:
    return make_request(client_user)


@pytest.fixture
def chat_settings() -> ChatSettings:
    return ChatSettings(enabled=True, signed_url_ttl=900, redact_on_close=True)


@pytest.fixture
def storage() -> FakeObjectStorage:
    return FakeObjectStorage()


@pytest.fixture
def media(storage, chat_settings) -> MediaAccessBroker:
    return MediaAccessBroker(storage, chat_settings)


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def cleanup_queue() -> RecordingCleanupQueue:
    return RecordingCleanupQueue()


@pytest.fixture
def service(db, chat_settings, media, broadcaster, cleanup_queue) -> ChatService:
    return ChatService(db, chat_settings, media, broadcaster, cleanup_queue)


@pytest_asyncio.fixture
async def app(session_factory, chat_settings, storage, broadcaster, cleanup_queue):
    """The real application wired to the test database and fakes"""
    from carechat.main import app as application

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    application.dependency_overrides[get_db] = override_get_db
    application.dependency_overrides[get_chat_settings] = lambda: chat_settings
    application.state.object_storage = storage
    application.state.chat_broadcaster = broadcaster
    application.state.chat_cleanup_queue = cleanup_queue

    yield application

    application.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def auth_headers():
    def _headers(user: User) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user.id)}"}

    return _headers
