"""
Agent intervention bridge and the operator-side session viewer.

An operator's reply is an ordinary assistant row tagged with
``agent_intervention``; it reaches the visitor through the same insert
feed as automated replies.

Version: 1.0.0
"""
import asyncio
import logging
from typing import Callable, List, Optional, Set

from ..models.schemas import MessageMetadata, MessageRecord, MessageRole, NewMessage, SessionRecord
from ..session import (
    MessageStore,
    SessionNotFoundError,
    SessionStateError,
    SessionStore,
    StoreError,
    Subscription,
)
from ..utils.telemetry import track_agent_intervention
from .auth_service import AgentIdentity
from .reconciler import validate_message_text

logger = logging.getLogger(__name__)


class InterventionError(Exception):
    """The operator's message could not be stored."""

    def __init__(self, session_id: str, message: str):
        self.session_id = session_id
        super().__init__(message)


class AgentInterventionBridge:
    """Writes operator replies into a visitor's conversation."""

    def __init__(self, session_store: SessionStore, message_store: MessageStore):
        self.session_store = session_store
        self.message_store = message_store

    async def send_agent_message(
        self,
        session_id: str,
        text: str,
        agent: AgentIdentity
    ) -> MessageRecord:
        """
        Insert an operator reply, then flag the session as human-handled.

        The caller has already checked the operator's role. The metadata
        flag is only written after the message is stored; failing to write
        it is logged and does not fail the call.

        Raises:
            MessageValidationError: If ``text`` is empty
            SessionNotFoundError: If the session does not exist
            SessionStateError: If the session is no longer active
            InterventionError: If the message could not be stored
        """
        content = validate_message_text(text)

        try:
            session = await self.session_store.get(session_id)
        except StoreError as e:
            raise InterventionError(session_id, f"Could not load session {session_id}: {e}") from e
        if session is None:
            raise SessionNotFoundError(session_id)
        if not session.is_active:
            raise SessionStateError(
                session_id,
                session.status.value,
                f"Session {session_id} is {session.status.value}; agents can only reply in active sessions"
            )

        try:
            record = await self.message_store.insert(NewMessage(
                session_id=session_id,
                role=MessageRole.ASSISTANT,
                content=content,
                metadata=MessageMetadata(
                    agent_intervention=True,
                    agent_id=agent.id,
                    agent_email=agent.email
                )
            ))
        except StoreError as e:
            logger.error(f"Agent {agent.id} message to {session_id} failed: {e}")
            raise InterventionError(session_id, f"Failed to send message: {e}") from e

        track_agent_intervention()
        logger.info(f"Agent {agent.id} replied in session {session_id} ({record.id})")

        try:
            await self.session_store.update(session_id, {
                "metadata": {
                    "had_human_intervention": True,
                    "last_agent_id": agent.id
                }
            })
        except StoreError as e:
            logger.error(
                f"Message {record.id} sent but session {session_id} not flagged: {e}",
                exc_info=True
            )

        return record


class SessionViewer:
    """
    Operator view of one conversation.

    Follows the insert feed only while realtime is on and the session is
    active; ``refresh()`` is the polling fallback when it is off.
    """

    def __init__(
        self,
        session_id: str,
        session_store: SessionStore,
        message_store: MessageStore,
        realtime: bool = True,
        on_update: Optional[Callable[["SessionViewer"], None]] = None
    ):
        self.session_id = session_id
        self.session_store = session_store
        self.message_store = message_store
        self.realtime = realtime
        self.on_update = on_update

        self.session: Optional[SessionRecord] = None
        self.messages: List[MessageRecord] = []
        self._ids: Set[str] = set()
        self._subscription: Optional[Subscription] = None
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def subscription(self) -> Optional[Subscription]:
        return self._subscription

    @property
    def is_live(self) -> bool:
        return self._subscription is not None

    async def load(self) -> SessionRecord:
        """
        Fetch the session and its messages.

        Raises:
            SessionNotFoundError: If the session does not exist
        """
        session = await self.session_store.get(self.session_id)
        if session is None:
            raise SessionNotFoundError(self.session_id)

        self.session = session
        self.messages = []
        self._ids = set()
        self._merge(await self.message_store.query(self.session_id))
        await self._sync_subscription()
        return session

    async def refresh(self) -> None:
        """Re-read session status and merge any missed messages."""
        session = await self.session_store.get(self.session_id)
        if session is None:
            raise SessionNotFoundError(self.session_id)
        self.session = session

        self._merge(await self.message_store.query(self.session_id))
        await self._sync_subscription()

    async def set_realtime(self, enabled: bool) -> None:
        self.realtime = enabled
        await self._sync_subscription()

    async def handle_push(self, record: MessageRecord) -> None:
        if self._closed or not self.realtime or record.session_id != self.session_id:
            return
        self._merge([record])

    async def close(self) -> None:
        self._closed = True
        await self._sync_subscription()

    def _merge(self, records: List[MessageRecord]) -> None:
        added = False
        for record in records:
            if record.id in self._ids:
                continue
            self._ids.add(record.id)
            self.messages.append(record)
            added = True

        if added:
            self.messages.sort(key=MessageRecord.sort_key)
            if self.on_update is not None:
                self.on_update(self)

    async def _sync_subscription(self) -> None:
        async with self._lock:
            wanted = (
                not self._closed
                and self.realtime
                and self.session is not None
                and self.session.is_active
            )

            if wanted and self._subscription is None:
                self._subscription = await self.message_store.subscribe(
                    self.session_id, self.handle_push
                )
                logger.debug(f"Viewer following session {self.session_id}")

            elif not wanted and self._subscription is not None:
                await self._subscription.close()
                self._subscription = None
                logger.debug(f"Viewer stopped following session {self.session_id}")

    async def __aenter__(self) -> "SessionViewer":
        await self.load()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


__all__ = ['AgentInterventionBridge', 'InterventionError', 'SessionViewer']
