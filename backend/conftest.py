"""Root conftest — shared fixtures for all backend tests."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

# Ensure backend/ is on sys.path
_backend_dir = str(Path(__file__).resolve().parent)
if _backend_dir not in sys.path:
    sys.path.insert(0, _backend_dir)

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
import models  # noqa: F401 — register all models with Base

# Use in-memory SQLite for tests — StaticPool ensures all connections share the same DB
TEST_ENGINE = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSession = sessionmaker(bind=TEST_ENGINE, autoflush=False, expire_on_commit=False)


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
def user(db):
    import bcrypt
    from models.user import User

    u = User(
        email="user@example.com",
        password_hash=bcrypt.hashpw(b"testpass123", bcrypt.gensalt()).decode(),
        name="Test User",
    )
    db.add(u)
    db.commit()
    db.refresh(u)
    return u


@pytest.fixture
def other_user(db):
    from models.user import User

    u = User(email="other@example.com", name="Other User")
    db.add(u)
    db.commit()
    db.refresh(u)
    return u


@pytest.fixture
def admin(db):
    from models.user import User

    u = User(email="admin@example.com", name="Admin", role="admin")
    db.add(u)
    db.commit()
    db.refresh(u)
    return u


@pytest.fixture
def api_key(db, user):
    from models.user import APIKey

    key = APIKey(user_id=user.id)
    db.add(key)
    db.commit()
    db.refresh(key)
    return key


@pytest.fixture
def agent(db):
    from models.agent import Agent

    a = Agent(
        title="Career Coach",
        description="Helps with careers",
        category="career",
        tags=["jobs"],
        status="active",
        assistant_id="asst_test123",
    )
    db.add(a)
    db.commit()
    db.refresh(a)
    return a


@pytest.fixture
def conversation(db, user, agent):
    from services.conversations import ConversationDirectory

    return ConversationDirectory(db).resolve(user.id, agent.id)


# ── Realtime collaborators ───────────────────────────────────────────────────


class FakeAssistant:
    """In-memory stand-in for AssistantClient.

    ``statuses`` is the sequence retrieve_run reports; the last one repeats.
    With ``stall_stream`` set, stream_run hangs after its chunks.
    """

    def __init__(self):
        self.reply = "Hello! How can I help?"
        self.statuses = ["queued", "in_progress", "completed"]
        self.tokens_used = 42
        self.chunks = ["Hello", "! How can", " I help?"]
        self.threads: list[str] = []
        self.deleted: list[str] = []
        self.messages: list[tuple[str, str]] = []
        self.runs: list[tuple[str, str]] = []
        self.cancelled: list[str] = []
        self.retrieve_calls = 0
        self.fail_on: str | None = None
        self.stall_stream = False
        self.streams_closed = 0

    def _maybe_fail(self, step: str) -> None:
        if self.fail_on == step:
            from services.errors import AssistantUnavailable
            raise AssistantUnavailable(f"{step} failed")

    async def create_thread(self, metadata=None):
        self._maybe_fail("create_thread")
        thread_id = f"thread_{len(self.threads) + 1}"
        self.threads.append(thread_id)
        return thread_id

    async def delete_thread(self, thread_id):
        self.deleted.append(thread_id)

    async def add_message(self, thread_id, content, role="user"):
        self._maybe_fail("add_message")
        self.messages.append((thread_id, content))
        return f"msg_{len(self.messages)}"

    async def create_run(self, thread_id, assistant_id):
        self._maybe_fail("create_run")
        run_id = f"run_{len(self.runs) + 1}"
        self.runs.append((thread_id, run_id))
        return run_id

    async def retrieve_run(self, thread_id, run_id):
        from services.assistant import RunState

        index = min(self.retrieve_calls, len(self.statuses) - 1)
        self.retrieve_calls += 1
        status = self.statuses[index]
        return RunState(status=status, tokens_used=self.tokens_used if status == "completed" else 0)

    async def cancel_run(self, thread_id, run_id):
        self.cancelled.append(run_id)

    async def latest_reply(self, thread_id):
        return self.reply

    async def stream_run(self, thread_id, assistant_id):
        from services.assistant import StreamDelta

        self._maybe_fail("stream_run")
        try:
            for chunk in self.chunks:
                yield StreamDelta(text=chunk)
            if self.stall_stream:
                await asyncio.Event().wait()
            yield StreamDelta(done=True, tokens_used=self.tokens_used)
        finally:
            self.streams_closed += 1


class Recorder:
    """Async sender that records every (event, data) pair."""

    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    async def __call__(self, event, data):
        self.events.append((event, data))

    def of(self, event):
        return [data for name, data in self.events if name == event]

    @property
    def names(self):
        return [name for name, _ in self.events]


async def _no_sleep(_seconds):
    return None


@pytest.fixture
def fake_assistant():
    return FakeAssistant()


@pytest.fixture
def registry():
    from services.connections import ConnectionRegistry

    return ConnectionRegistry()


@pytest.fixture
def relay(registry, fake_assistant):
    from services.relay import MessageRelay
    from services.run_poller import RunPoller

    return MessageRelay(
        registry,
        assistant=fake_assistant,
        session_factory=TestSession,
        publish=None,
        poller=RunPoller(fake_assistant, interval_ms=10, timeout_ms=60_000, sleep=_no_sleep),
        streaming=False,
        guest_message_limit=2,
    )


@pytest.fixture
def connect(registry):
    """Register a recording connection: ``conn, rec = connect(user_id)``."""
    from services.connections import Connection

    def _connect(user_id=None):
        recorder = Recorder()
        connection = registry.add(Connection(send=recorder, user_id=user_id))
        return connection, recorder

    return _connect


@pytest.fixture
def session_factory():
    """Factory for independent sessions on the test database."""
    return TestSession
