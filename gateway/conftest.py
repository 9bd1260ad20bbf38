"""Root conftest — shared fixtures for all gateway tests."""

from __future__ import annotations

import sys
import time
from pathlib import Path

# Ensure gateway/ is on sys.path
_gateway_dir = str(Path(__file__).resolve().parent)
if _gateway_dir not in sys.path:
    sys.path.insert(0, _gateway_dir)

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
import models  # noqa: F401  register all models with Base
from services.backends import GenerationBackend, GenerationResult
from services.errors import BackendUnavailable

# In-memory SQLite shared by every connection through StaticPool
TEST_ENGINE = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSession = sessionmaker(bind=TEST_ENGINE, autoflush=False, expire_on_commit=False)


class FakeBackend(GenerationBackend):
    """Scriptable adapter: fixed reply, optional failure or delay, records calls."""

    def __init__(
        self,
        name: str,
        reply: str = "Hello from the backend",
        *,
        tokens: int = 12,
        error: str | Exception | None = None,
        delay: float = 0.0,
        healthy: bool = True,
    ) -> None:
        self.name = name
        self.reply = reply
        self.tokens = tokens
        self.error = error
        self.delay = delay
        self.healthy = healthy
        self.calls: list[dict] = []

    def generate(self, messages, options=None):
        self.calls.append({"messages": [dict(m) for m in messages], "options": dict(options or {})})
        if self.delay:
            time.sleep(self.delay)
        if isinstance(self.error, Exception):
            raise self.error
        if self.error:
            raise BackendUnavailable(self.name, self.error)
        return GenerationResult(
            text=self.reply,
            token_count=self.tokens,
            latency_ms=1,
            input_tokens=self.tokens // 2,
            output_tokens=self.tokens - self.tokens // 2,
            model_name=f"{self.name}-test-model",
        )

    def health_check(self) -> bool:
        return self.healthy


@pytest.fixture(autouse=True)
def _setup_db():
    """Create all tables before each test, drop after."""
    Base.metadata.create_all(bind=TEST_ENGINE)
    yield
    Base.metadata.drop_all(bind=TEST_ENGINE)


@pytest.fixture
def db():
    """Yield a test database session."""
    session = TestSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def session_factory():
    return TestSession


@pytest.fixture
def user_profile(db):
    from models.user import UserProfile

    profile = UserProfile(username="testuser")
    db.add(profile)
    db.commit()
    db.refresh(profile)
    return profile


@pytest.fixture
def other_user(db):
    from models.user import UserProfile

    profile = UserProfile(username="otheruser")
    db.add(profile)
    db.commit()
    db.refresh(profile)
    return profile


@pytest.fixture
def api_key(db, user_profile):
    from models.user import APIKey

    key = APIKey(user_id=user_profile.id)
    db.add(key)
    db.commit()
    db.refresh(key)
    return key


@pytest.fixture
def backends():
    """Two healthy fake backends, keyed by name."""
    return {
        "openai": FakeBackend("openai", "Hi from openai", tokens=20),
        "anthropic": FakeBackend("anthropic", "Hi from anthropic", tokens=30),
    }


@pytest.fixture
def backend_router(backends):
    from services.router import BackendRouter

    router = BackendRouter(backends, ["openai", "anthropic"], max_fallbacks=1, timeout_seconds=5)
    yield router
    router.shutdown()


@pytest.fixture
def orchestrator(db, backend_router):
    from services.audit import AuditRecorder
    from services.exchange import ExchangeOrchestrator
    from services.transcript import ConversationLocks, TranscriptStore

    return ExchangeOrchestrator(
        backend_router,
        TranscriptStore(db, ConversationLocks()),
        AuditRecorder(TestSession),
        default_backend="openai",
    )


@pytest.fixture
def conversation(db, user_profile):
    """An active conversation holding one earlier exchange."""
    from models.conversation import Conversation, ConversationMessage

    conv = Conversation(
        user_profile_id=user_profile.id,
        title="Earlier chat",
        total_tokens=10,
        preferred_backend="openai",
    )
    conv.messages = [
        ConversationMessage(position=0, role="user", content="Earlier question"),
        ConversationMessage(position=1, role="assistant", content="Earlier answer", backend="openai", tokens=10),
    ]
    db.add(conv)
    db.commit()
    db.refresh(conv)
    return conv
