"""
Message API routes: history, visitor messages and operator replies.
"""
from fastapi import APIRouter, Depends, HTTPException, status
import logging

from ...models.schemas import (
    MessageHistory,
    MessageResponse,
    MessageRole,
    NewMessage,
    SendMessageRequest,
)
from ...services.auth_service import AgentIdentity, require_intervention
from ...services.container import ServiceContainer
from ...services.intervention import InterventionError
from ...services.reconciler import MessageValidationError
from ...session import SessionNotFoundError, SessionStateError, StoreError
from ..dependencies import get_services

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/{session_id}/messages", response_model=MessageHistory)
async def get_messages(
    session_id: str,
    services: ServiceContainer = Depends(get_services)
):
    """All messages of a session, oldest first."""
    try:
        if await services.session_store.get(session_id) is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Session {session_id} not found"
            )
        records = await services.message_store.query(session_id)
    except StoreError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return MessageHistory(
        messages=[MessageResponse.from_record(r) for r in records],
        total=len(records),
        session_id=session_id
    )


@router.post(
    "/{session_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED
)
async def post_visitor_message(
    session_id: str,
    request: SendMessageRequest,
    services: ServiceContainer = Depends(get_services)
):
    """Persist a visitor message; subscribers receive it through the feed."""
    try:
        session = await services.session_store.get(session_id)
        if session is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Session {session_id} not found"
            )

        if not session.is_active:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Session is {session.status.value}. Cannot send messages to inactive sessions."
            )

        record = await services.message_store.insert(NewMessage(
            session_id=session_id,
            role=MessageRole.USER,
            content=request.message
        ))
    except StoreError as e:
        logger.error(f"Failed to store visitor message for {session_id}: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return MessageResponse.from_record(record)


@router.post(
    "/{session_id}/agent-messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED
)
async def post_agent_message(
    session_id: str,
    request: SendMessageRequest,
    services: ServiceContainer = Depends(get_services),
    agent: AgentIdentity = Depends(require_intervention)
):
    """Operator reply inside a visitor's conversation."""
    try:
        record = await services.bridge.send_agent_message(session_id, request.message, agent)
    except MessageValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except SessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except SessionStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except InterventionError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return MessageResponse.from_record(record)
