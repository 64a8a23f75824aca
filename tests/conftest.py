"""
Pytest configuration and shared fixtures.
Provides in-memory and SQLite stores, a scripted automation responder,
and operator tokens.
"""
import pytest
import os
import asyncio
from typing import Any, Awaitable, Callable, List, Optional, Union

# Set testing environment before importing the package
os.environ["ENVIRONMENT"] = "testing"
os.environ["STORE_BACKEND"] = "memory"
os.environ["REALTIME_BACKEND"] = "memory"
os.environ["ENABLE_TELEMETRY"] = "false"
os.environ["JWT_SECRET"] = "test-secret-key-for-operators"
os.environ.pop("JWT_AUDIENCE", None)

from chatdesk.database import create_session_factory, create_tables
from chatdesk.models.schemas import ResponderReply, ResponderRequest
from chatdesk.services.auth_service import AuthService
from chatdesk.services.lifecycle import SessionLifecycleManager
from chatdesk.services.reconciler import MessageReconciler
from chatdesk.services.responder import Responder
from chatdesk.session import (
    InMemoryHistoryStore,
    InMemoryMessageStore,
    InMemorySessionStore,
    InProcessFeed,
)
from chatdesk.utils.retry import RetryConfig, RetryStrategy
from chatdesk.session import StoreError


# ===========================
# Helpers
# ===========================

ReplyOutcome = Union[ResponderReply, Exception, None]


class FakeResponder(Responder):
    """
    Scripted automation responder.

    Each call pops the next outcome: a reply, an exception to raise, or
    None for "answer only through the feed". ``gate`` holds calls until
    set; ``on_send`` runs before the outcome is produced.
    """

    def __init__(self):
        self.requests: List[ResponderRequest] = []
        self.outcomes: List[ReplyOutcome] = []
        self.gate: Optional[asyncio.Event] = None
        self.on_send: Optional[Callable[[ResponderRequest], Awaitable[Any]]] = None

    def reply(self, text: str, message_id: Optional[str] = None, **metadata) -> "FakeResponder":
        payload = {"response": text}
        if message_id:
            payload["messageId"] = message_id
        if metadata:
            payload["metadata"] = metadata
        self.outcomes.append(ResponderReply.model_validate(payload))
        return self

    def no_reply(self) -> "FakeResponder":
        self.outcomes.append(None)
        return self

    def fail(self, error: Exception) -> "FakeResponder":
        self.outcomes.append(error)
        return self

    async def send(self, request: ResponderRequest) -> Optional[ResponderReply]:
        self.requests.append(request)
        if self.on_send is not None:
            await self.on_send(request)
        if self.gate is not None:
            await self.gate.wait()

        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FlakySessionStore(InMemorySessionStore):
    """In-memory store whose next N updates raise StoreError."""

    def __init__(self, failing_updates: int = 0):
        super().__init__()
        self.failing_updates = failing_updates
        self.update_calls = 0

    async def update(self, session_id, patch):
        self.update_calls += 1
        if self.failing_updates > 0:
            self.failing_updates -= 1
            raise StoreError("session store unavailable")
        return await super().update(session_id, patch)


class FlakyMessageStore(InMemoryMessageStore):
    """In-memory message store whose next N history queries raise StoreError."""

    def __init__(self, feed=None, failing_queries: int = 0):
        super().__init__(feed)
        self.failing_queries = failing_queries

    async def query(self, session_id):
        if self.failing_queries > 0:
            self.failing_queries -= 1
            raise StoreError("message store unavailable")
        return await super().query(session_id)


async def wait_until(predicate: Callable[[], Any], timeout: float = 1.0) -> None:
    """Yield to the loop until ``predicate()`` is truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


# ===========================
# Store Fixtures
# ===========================

@pytest.fixture
def feed():
    return InProcessFeed()


@pytest.fixture
def session_store():
    return InMemorySessionStore()


@pytest.fixture
def message_store(feed):
    return InMemoryMessageStore(feed)


@pytest.fixture
def history_store():
    return InMemoryHistoryStore()


@pytest.fixture
def sql_session_factory():
    """SQLite in-memory database shared across threads."""
    engine, factory = create_session_factory("sqlite:///:memory:")
    create_tables(engine)
    yield factory
    engine.dispose()


# ===========================
# Service Fixtures
# ===========================

@pytest.fixture
def fast_retry() -> RetryConfig:
    return RetryConfig(
        max_attempts=2,
        initial_delay=0.0,
        strategy=RetryStrategy.FIXED,
        retry_on_exceptions=(StoreError,)
    )


@pytest.fixture
def lifecycle(session_store, history_store, fast_retry):
    return SessionLifecycleManager(session_store, history_store, retry_config=fast_retry)


@pytest.fixture
def responder() -> FakeResponder:
    return FakeResponder()


@pytest.fixture
async def make_reconciler(message_store, responder):
    """Factory for reconcilers; closes them after the test."""
    created: List[MessageReconciler] = []

    def _make(session_id: str = "s1", reply_timeout: float = 30.0, **kwargs) -> MessageReconciler:
        reconciler = MessageReconciler(
            session_id=session_id,
            message_store=kwargs.pop("store", message_store),
            responder=kwargs.pop("responder", responder),
            chatbot_id=kwargs.pop("chatbot_id", "bot-1"),
            visitor_id=kwargs.pop("visitor_id", "visitor-1"),
            reply_timeout=reply_timeout,
            **kwargs
        )
        created.append(reconciler)
        return reconciler

    yield _make

    for reconciler in created:
        await reconciler.close()


# ===========================
# Auth Fixtures
# ===========================

@pytest.fixture
def auth_service() -> AuthService:
    return AuthService(secret_key=os.environ["JWT_SECRET"], algorithm="HS256", role_claim="user_role")


@pytest.fixture
def operator_headers(auth_service):
    """Bearer headers for an operator with the given role."""
    def _headers(role: str = "Support Agent", user_id: str = "a1", email: str = "a1@example.com"):
        token = auth_service.create_token(user_id, email=email, role=role)
        return {"Authorization": f"Bearer {token}"}
    return _headers


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "requires_redis: marks tests requiring Redis connection"
    )
