"""
Tests for operator authentication and role checks.
"""
import pytest
from datetime import timedelta
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from chatdesk.services.auth_service import (
    ANALYST,
    KNOWLEDGE_MANAGER,
    SUPPORT_AGENT,
    AuthService,
    get_auth_service,
    require_intervention,
    require_viewer,
    set_auth_service,
)


def bearer(token):
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


@pytest.fixture
def audience_service():
    """Verifier that also checks the token audience."""
    service = AuthService(secret_key="aud-secret", algorithm="HS256", role_claim="user_role", audience="chatdesk")
    set_auth_service(service)
    yield service
    set_auth_service(None)


@pytest.mark.unit
def test_token_round_trip(auth_service):
    token = auth_service.create_token("a1", email="a1@example.com", role=SUPPORT_AGENT)

    agent = auth_service.verify_token(token)

    assert agent.id == "a1"
    assert agent.email == "a1@example.com"
    assert agent.role == SUPPORT_AGENT
    assert agent.can_view and agent.can_intervene


@pytest.mark.unit
def test_analyst_can_only_view(auth_service):
    agent = auth_service.verify_token(auth_service.create_token("r1", role=ANALYST))

    assert agent.can_view is True
    assert agent.can_intervene is False


@pytest.mark.unit
def test_wrong_secret_rejected(auth_service):
    token = AuthService(secret_key="other-secret").create_token("a1", role=SUPPORT_AGENT)

    with pytest.raises(HTTPException) as exc_info:
        auth_service.verify_token(token)

    assert exc_info.value.status_code == 401


@pytest.mark.unit
def test_missing_secret_rejects_everything():
    service = AuthService(secret_key="")

    with pytest.raises(HTTPException) as exc_info:
        service.verify_token("anything")

    assert exc_info.value.status_code == 401
    with pytest.raises(RuntimeError):
        service.create_token("a1")


@pytest.mark.unit
def test_role_checker(auth_service):
    """Test the dependency used by the dashboard routes."""
    agent_token = auth_service.create_token("a1", role=SUPPORT_AGENT)
    analyst_token = auth_service.create_token("r1", role=ANALYST)

    assert require_viewer(bearer(analyst_token)).id == "r1"
    assert require_intervention(bearer(agent_token)).id == "a1"

    with pytest.raises(HTTPException) as exc_info:
        require_intervention(bearer(analyst_token))
    assert exc_info.value.status_code == 403

    with pytest.raises(HTTPException) as exc_info:
        require_viewer(None)
    assert exc_info.value.status_code == 401


@pytest.mark.unit
def test_unknown_role_cannot_view(auth_service):
    token = auth_service.create_token("k1", role=KNOWLEDGE_MANAGER)

    with pytest.raises(HTTPException) as exc_info:
        require_viewer(bearer(token))

    assert exc_info.value.status_code == 403


@pytest.mark.unit
def test_audience_checked(audience_service):
    assert get_auth_service() is audience_service

    good = audience_service.create_token("a1", role=SUPPORT_AGENT)
    assert require_viewer(bearer(good)).id == "a1"

    foreign = AuthService(secret_key="aud-secret", audience="someone-else").create_token("a1", role=SUPPORT_AGENT)
    with pytest.raises(HTTPException) as exc_info:
        require_viewer(bearer(foreign))
    assert exc_info.value.status_code == 401


@pytest.mark.unit
def test_expired_token(auth_service):
    token = auth_service.create_token("a1", role=SUPPORT_AGENT, expires_in=timedelta(minutes=-1))

    with pytest.raises(HTTPException) as exc_info:
        auth_service.verify_token(token)

    assert exc_info.value.detail == "Token has expired"
