"""
Session API routes: resolve on widget open, unload-safe termination and
the operator dashboard listing.
"""
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from typing import List, Optional
import json
import logging

from ...models.schemas import (
    ChatStats,
    EndReason,
    EndSessionRequest,
    ResolveSessionRequest,
    SessionResponse,
    SessionStatus,
)
from ...services.auth_service import AgentIdentity, require_viewer
from ...services.container import ServiceContainer
from ...session import SessionStateError, StoreError
from ..dependencies import get_services

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=SessionResponse)
async def resolve_session(
    request: ResolveSessionRequest,
    services: ServiceContainer = Depends(get_services)
):
    """
    Resolve or create the visitor's session.

    Any other active session of the visitor is closed first.
    """
    try:
        session_id = await services.lifecycle.resolve_or_create_session(
            visitor_id=request.visitor_id,
            chatbot_id=request.chatbot_id,
            platform=request.platform,
            session_id=request.session_id,
            metadata=request.metadata
        )
        session = await services.session_store.get(session_id)
    except SessionStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except StoreError as e:
        logger.error(f"Session store unavailable while opening widget: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Chat is temporarily unavailable"
        )

    return SessionResponse.from_record(session)


@router.get("", response_model=List[SessionResponse])
async def list_sessions(
    status_filter: Optional[SessionStatus] = Query(None, alias="status"),
    chatbot_id: Optional[str] = Query(None),
    visitor_id: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    services: ServiceContainer = Depends(get_services),
    agent: AgentIdentity = Depends(require_viewer)
):
    """Most recently updated sessions with their message counts."""
    filters = {}
    if status_filter is not None:
        filters["status"] = status_filter
    if chatbot_id:
        filters["chatbot_id"] = chatbot_id
    if visitor_id:
        filters["visitor_id"] = visitor_id

    try:
        rows = await services.stats.recent_sessions(limit=limit, **filters)
    except StoreError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return [SessionResponse.from_record(session, count) for session, count in rows]


@router.get("/stats", response_model=ChatStats)
async def session_stats(
    services: ServiceContainer = Depends(get_services),
    agent: AgentIdentity = Depends(require_viewer)
):
    """Dashboard statistics."""
    try:
        return await services.stats.collect()
    except StoreError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    services: ServiceContainer = Depends(get_services),
    agent: AgentIdentity = Depends(require_viewer)
):
    """Session details."""
    try:
        session = await services.session_store.get(session_id)
        if session is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Session {session_id} not found"
            )
        count = await services.message_store.count(session_id)
    except StoreError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return SessionResponse.from_record(session, count)


async def _read_end_request(request: Request) -> EndSessionRequest:
    """Beacons may send no body, JSON, or JSON labelled text/plain."""
    raw = await request.body()
    if not raw.strip():
        return EndSessionRequest()

    try:
        data = json.loads(raw)
    except ValueError:
        logger.debug("Unload beacon body is not JSON; using default reason")
        return EndSessionRequest()

    if not isinstance(data, dict):
        return EndSessionRequest()

    try:
        return EndSessionRequest.model_validate(data)
    except ValueError:
        return EndSessionRequest()


@router.api_route(
    "/{session_id}/end",
    methods=["POST", "PATCH"],
    status_code=status.HTTP_202_ACCEPTED
)
async def end_session(
    session_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    services: ServiceContainer = Depends(get_services)
):
    """
    Unload-safe termination.

    Answers immediately; the status write runs after the response.
    """
    end_request = await _read_end_request(request)
    reason = end_request.reason or EndReason.BROWSER_CLOSED.value

    background_tasks.add_task(services.lifecycle.terminate_session, session_id, reason)
    logger.info(f"Termination of {session_id} accepted ({reason})")

    return {"status": "accepted", "session_id": session_id, "reason": reason}
