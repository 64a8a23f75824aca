"""
Abstract message and automation-history store interfaces.

Version: 1.0.0
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..models.schemas import MessageRecord, NewMessage
from .realtime import InProcessFeed, MessageHandler, RealtimeFeed, Subscription
from .session_store import StoreError

logger = logging.getLogger(__name__)


class MessageStore(ABC):
    """
    Time-ordered, append-only message table with an insert feed.

    Subclasses implement ``_insert``; ``insert`` persists the row and then
    publishes it to the feed.
    """

    def __init__(self, feed: Optional[RealtimeFeed] = None):
        self.feed = feed or InProcessFeed()

    async def insert(self, message: NewMessage) -> MessageRecord:
        """
        Persist a message and publish it to the session's subscribers.

        Args:
            message: Message to write

        Returns:
            The stored row, carrying its server-assigned id
        """
        record = await self._insert(message)
        try:
            await self.feed.publish(record)
        except StoreError as e:
            # Row is durable; subscribers catch up through history queries
            logger.error(f"Message {record.id} stored but not published: {e}")
        return record

    @abstractmethod
    async def _insert(self, message: NewMessage) -> MessageRecord:
        pass

    @abstractmethod
    async def query(self, session_id: str) -> List[MessageRecord]:
        """
        All messages of a session ordered by creation time, ties by id.

        Args:
            session_id: Session identifier

        Returns:
            Ordered messages
        """
        pass

    @abstractmethod
    async def count(self, session_id: Optional[str] = None) -> int:
        """Number of messages in one session, or in all sessions."""
        pass

    @abstractmethod
    async def list_messages(self, since: Optional[datetime] = None) -> List[MessageRecord]:
        """
        Messages across every session, oldest first.

        Args:
            since: Only messages created at or after this instant
        """
        pass

    async def subscribe(self, session_id: str, handler: MessageHandler) -> Subscription:
        """Follow inserts into one session."""
        return await self.feed.subscribe(session_id, handler)

    async def close(self) -> None:
        await self.feed.close()


class HistoryStore(ABC):
    """
    Conversation memory owned by the automation engine.

    The engine writes and reads turns through ``append`` and ``load``; the
    chat core only ever calls ``purge`` when a session ends.
    """

    @abstractmethod
    async def append(self, session_id: str, message: Dict[str, Any]) -> None:
        """Record one engine-side turn (the automation engine's write path)."""
        pass

    @abstractmethod
    async def load(self, session_id: str) -> List[Dict[str, Any]]:
        """Turns the engine remembers for a session, oldest first."""
        pass

    @abstractmethod
    async def purge(self, session_id: str) -> int:
        """
        Delete every remembered turn of a session.

        Returns:
            Number of rows removed
        """
        pass


__all__ = ['MessageStore', 'HistoryStore']
