"""
API tests through FastAPI's TestClient.
The application runs on in-memory stores and the in-process feed.
"""
import pytest
from datetime import timedelta
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from chatdesk.main import create_app
from chatdesk.models.schemas import SessionRecord, SessionStatus
from chatdesk.services.container import ServiceContainer
from chatdesk.session import (
    InMemoryHistoryStore,
    InMemoryMessageStore,
    InMemorySessionStore,
    InProcessFeed,
)

API = "/api/v1/sessions"


# ===========================
# Fixtures
# ===========================

@pytest.fixture
def services():
    return ServiceContainer.from_components(
        session_store=InMemorySessionStore(),
        message_store=InMemoryMessageStore(InProcessFeed()),
        history_store=InMemoryHistoryStore()
    )


@pytest.fixture
def client(services):
    """Test client with the app lifespan running."""
    with TestClient(create_app(services)) as test_client:
        yield test_client


@pytest.fixture
def open_session(client):
    """Open a widget session and return its id."""
    def _open(visitor_id="visitor-1", **body):
        response = client.post(API, json={"visitor_id": visitor_id, "chatbot_id": "bot-1", **body})
        assert response.status_code == 200
        return response.json()["session_id"]
    return _open


# ===========================
# Sessions
# ===========================

@pytest.mark.integration
def test_resolve_creates_active_session(client):
    """Test opening the widget."""
    response = client.post(API, json={
        "visitor_id": "visitor-1",
        "chatbot_id": "bot-1",
        "metadata": {"widget_position": "bottom-right"}
    })

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "active"
    assert data["visitor_id"] == "visitor-1"
    assert data["metadata"] == {"widget_position": "bottom-right"}
    assert "X-Request-ID" in response.headers


@pytest.mark.integration
def test_resolve_closes_previous_session(client, open_session, operator_headers):
    first = open_session()
    second = open_session()

    response = client.get(f"{API}/{first}", headers=operator_headers())

    assert first != second
    assert response.json()["status"] == "completed"
    assert response.json()["metadata"]["session_end_reason"] == "new_session"


@pytest.mark.integration
def test_resolve_abandoned_session_conflicts(client, services):
    client.portal.call(services.session_store.insert, SessionRecord(
        session_id="s-abandoned",
        chatbot_id="bot-1",
        visitor_id="visitor-1",
        status=SessionStatus.ABANDONED
    ))

    response = client.post(API, json={
        "visitor_id": "visitor-1", "chatbot_id": "bot-1", "session_id": "s-abandoned"
    })

    assert response.status_code == 409


@pytest.mark.integration
def test_resolve_foreign_session_conflicts(client, open_session, operator_headers):
    session_id = open_session("visitor-1")
    client.post(f"{API}/{session_id}/end")

    response = client.post(API, json={
        "visitor_id": "visitor-2", "chatbot_id": "bot-1", "session_id": session_id
    })

    assert response.status_code == 409
    session = client.get(f"{API}/{session_id}", headers=operator_headers()).json()
    assert session["status"] == "completed"


@pytest.mark.integration
def test_resolve_validates_body(client):
    response = client.post(API, json={"visitor_id": "", "chatbot_id": "bot-1"})

    assert response.status_code == 422


@pytest.mark.integration
def test_end_beacon_without_body(client, open_session, operator_headers):
    """Test that an empty unload beacon closes the session as browser_closed."""
    session_id = open_session()

    response = client.post(f"{API}/{session_id}/end")

    assert response.status_code == 202
    assert response.json() == {"status": "accepted", "session_id": session_id, "reason": "browser_closed"}

    session = client.get(f"{API}/{session_id}", headers=operator_headers()).json()
    assert session["status"] == "completed"
    assert session["metadata"]["session_end_reason"] == "browser_closed"


@pytest.mark.integration
def test_end_beacon_with_text_plain_json(client, open_session):
    session_id = open_session()

    response = client.patch(
        f"{API}/{session_id}/end",
        content='{"reason": "user_ended"}',
        headers={"Content-Type": "text/plain"}
    )

    assert response.status_code == 202
    assert response.json()["reason"] == "user_ended"


@pytest.mark.integration
def test_end_beacon_for_unknown_session(client):
    """Test that unload for a missing session is still accepted."""
    response = client.post(f"{API}/ghost/end", content="not json")

    assert response.status_code == 202


@pytest.mark.integration
def test_reopen_after_end_reactivates(client, open_session, operator_headers):
    session_id = open_session()
    client.post(f"{API}/{session_id}/end")

    assert open_session(session_id=session_id) == session_id

    session = client.get(f"{API}/{session_id}", headers=operator_headers()).json()
    assert session["status"] == "active"
    assert "session_end_reason" not in session["metadata"]


@pytest.mark.integration
def test_list_sessions(client, open_session, operator_headers):
    open_session("visitor-1")
    active_id = open_session("visitor-2")
    client.post(f"{API}/{active_id}/messages", json={"message": "hi"})

    response = client.get(API, params={"visitor_id": "visitor-2"}, headers=operator_headers("Analyst/Reporter"))

    assert response.status_code == 200
    rows = response.json()
    assert [row["session_id"] for row in rows] == [active_id]
    assert rows[0]["message_count"] == 1

    active = client.get(API, params={"status": "active"}, headers=operator_headers()).json()
    assert len(active) == 2


@pytest.mark.integration
def test_get_unknown_session(client, operator_headers):
    response = client.get(f"{API}/ghost", headers=operator_headers())

    assert response.status_code == 404


@pytest.mark.integration
def test_stats(client, open_session, operator_headers):
    session_id = open_session()
    client.post(f"{API}/{session_id}/messages", json={"message": "hi"})

    response = client.get(f"{API}/stats", headers=operator_headers("Super Admin"))

    assert response.status_code == 200
    data = response.json()
    assert data["total_sessions"] == 1
    assert data["active_sessions"] == 1
    assert data["human_handoffs"] == 0


# ===========================
# Auth
# ===========================

@pytest.mark.integration
def test_dashboard_requires_token(client):
    response = client.get(API)

    assert response.status_code == 401


@pytest.mark.integration
def test_invalid_token_rejected(client):
    response = client.get(API, headers={"Authorization": "Bearer not-a-token"})

    assert response.status_code == 401


@pytest.mark.integration
def test_expired_token_rejected(client, auth_service):
    token = auth_service.create_token("a1", role="Support Agent", expires_in=timedelta(seconds=-5))

    response = client.get(API, headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401
    assert response.json()["detail"] == "Token has expired"


@pytest.mark.integration
def test_unknown_role_forbidden(client, operator_headers):
    response = client.get(API, headers=operator_headers("Knowledge Manager"))

    assert response.status_code == 403


# ===========================
# Messages
# ===========================

@pytest.mark.integration
def test_visitor_message_and_history(client, open_session):
    session_id = open_session()

    created = client.post(f"{API}/{session_id}/messages", json={"message": "  help  "})
    history = client.get(f"{API}/{session_id}/messages")

    assert created.status_code == 201
    assert created.json()["content"] == "help"
    assert created.json()["role"] == "user"
    assert history.status_code == 200
    assert history.json()["total"] == 1
    assert history.json()["messages"][0]["id"] == created.json()["id"]


@pytest.mark.integration
def test_visitor_message_validation(client, open_session):
    session_id = open_session()

    response = client.post(f"{API}/{session_id}/messages", json={"message": "   "})

    assert response.status_code == 422


@pytest.mark.integration
def test_visitor_message_to_closed_session(client, open_session):
    session_id = open_session()
    client.post(f"{API}/{session_id}/end")

    response = client.post(f"{API}/{session_id}/messages", json={"message": "hi"})

    assert response.status_code == 409


@pytest.mark.integration
def test_history_of_unknown_session(client):
    assert client.get(f"{API}/ghost/messages").status_code == 404


@pytest.mark.integration
def test_agent_message(client, open_session, operator_headers):
    """Test that an operator reply is stored and the session flagged."""
    session_id = open_session()

    response = client.post(
        f"{API}/{session_id}/agent-messages",
        json={"message": "Hi, a human here"},
        headers=operator_headers("Support Agent", user_id="agent-7", email="agent7@example.com")
    )

    assert response.status_code == 201
    data = response.json()
    assert data["role"] == "assistant"
    assert data["metadata"] == {
        "agent_intervention": True,
        "agent_id": "agent-7",
        "agent_email": "agent7@example.com"
    }

    session = client.get(f"{API}/{session_id}", headers=operator_headers()).json()
    assert session["metadata"]["had_human_intervention"] is True
    assert session["metadata"]["last_agent_id"] == "agent-7"


@pytest.mark.integration
def test_agent_message_requires_intervention_role(client, open_session, operator_headers):
    session_id = open_session()

    response = client.post(
        f"{API}/{session_id}/agent-messages",
        json={"message": "hello"},
        headers=operator_headers("Analyst/Reporter")
    )

    assert response.status_code == 403


@pytest.mark.integration
def test_agent_message_to_closed_session(client, open_session, operator_headers):
    session_id = open_session()
    client.post(f"{API}/{session_id}/end")

    response = client.post(
        f"{API}/{session_id}/agent-messages",
        json={"message": "still there?"},
        headers=operator_headers()
    )

    assert response.status_code == 409
    assert client.get(f"{API}/{session_id}/messages").json()["total"] == 0


@pytest.mark.integration
def test_agent_message_unknown_session(client, operator_headers):
    response = client.post(
        f"{API}/ghost/agent-messages",
        json={"message": "hello"},
        headers=operator_headers()
    )

    assert response.status_code == 404


# ===========================
# WebSocket
# ===========================

@pytest.mark.integration
def test_websocket_relays_inserts(client, open_session):
    """Test that a connected socket receives new rows of its session."""
    session_id = open_session()

    with client.websocket_connect(f"/ws?session_id={session_id}") as websocket:
        connected = websocket.receive_json()
        assert connected["type"] == "connected"
        assert connected["session_id"] == session_id

        created = client.post(f"{API}/{session_id}/messages", json={"message": "hi"}).json()

        event = websocket.receive_json()
        assert event["type"] == "message"
        assert event["message"]["id"] == created["id"]

        websocket.send_json({"type": "ping"})
        assert websocket.receive_json()["type"] == "pong"

        websocket.send_json({"type": "subscribe"})
        assert websocket.receive_json()["type"] == "error"


@pytest.mark.integration
def test_websocket_unknown_session(client):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/ws?session_id=ghost") as websocket:
            websocket.receive_json()

    assert exc_info.value.code == 4004


@pytest.mark.integration
def test_websocket_missing_session_id(client):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/ws") as websocket:
            websocket.receive_json()

    assert exc_info.value.code == 4001


# ===========================
# Health
# ===========================

@pytest.mark.integration
def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"
    assert client.get("/health/live").json() == {"status": "alive"}


@pytest.mark.integration
def test_readiness(client):
    response = client.get("/health/ready")

    assert response.status_code == 200
    services = response.json()["services"]
    assert services["session_store"] == "healthy"
    assert services["realtime"] == "in_process"


@pytest.mark.integration
def test_routes_unavailable_before_startup(services):
    """Test that requests outside the lifespan get 503."""
    bare = TestClient(create_app(services))

    assert bare.post(API, json={"visitor_id": "v", "chatbot_id": "b"}).status_code == 503
    assert bare.get("/health/ready").status_code == 503
