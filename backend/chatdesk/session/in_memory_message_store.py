"""
In-memory message and automation-history stores.

Version: 1.0.0
"""
import asyncio
import logging
import uuid
from copy import deepcopy
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..models.schemas import MessageRecord, NewMessage, utcnow
from .message_store import HistoryStore, MessageStore
from .realtime import RealtimeFeed

logger = logging.getLogger(__name__)


class InMemoryMessageStore(MessageStore):
    """
    Append-only message list per session.

    Creation timestamps are strictly increasing within the store so that
    insertion order and timestamp order always agree.
    """

    def __init__(self, feed: Optional[RealtimeFeed] = None):
        super().__init__(feed)
        self.messages: Dict[str, List[MessageRecord]] = {}
        self.lock = asyncio.Lock()
        self._last_created: Optional[datetime] = None

        logger.info("InMemoryMessageStore initialized")

    def _next_timestamp(self) -> datetime:
        now = utcnow()
        if self._last_created is not None and now <= self._last_created:
            now = self._last_created + timedelta(microseconds=1)
        self._last_created = now
        return now

    async def _insert(self, message: NewMessage) -> MessageRecord:
        async with self.lock:
            record = MessageRecord(
                id=str(uuid.uuid4()),
                session_id=message.session_id,
                role=message.role,
                content=message.content,
                metadata=deepcopy(message.metadata),
                created_at=self._next_timestamp()
            )
            self.messages.setdefault(message.session_id, []).append(record)

        logger.debug(f"Inserted {record.role.value} message {record.id} into {record.session_id}")
        return deepcopy(record)

    async def query(self, session_id: str) -> List[MessageRecord]:
        async with self.lock:
            rows = [deepcopy(m) for m in self.messages.get(session_id, [])]
        return sorted(rows, key=MessageRecord.sort_key)

    async def count(self, session_id: Optional[str] = None) -> int:
        async with self.lock:
            if session_id is not None:
                return len(self.messages.get(session_id, []))
            return sum(len(rows) for rows in self.messages.values())

    async def list_messages(self, since: Optional[datetime] = None) -> List[MessageRecord]:
        async with self.lock:
            rows = [
                deepcopy(m)
                for session_rows in self.messages.values()
                for m in session_rows
                if since is None or m.created_at >= since
            ]
        return sorted(rows, key=MessageRecord.sort_key)


class InMemoryHistoryStore(HistoryStore):
    """Automation memory kept in a dict of lists."""

    def __init__(self):
        self.histories: Dict[str, List[Dict[str, Any]]] = {}
        self.lock = asyncio.Lock()

    async def append(self, session_id: str, message: Dict[str, Any]) -> None:
        async with self.lock:
            self.histories.setdefault(session_id, []).append(deepcopy(message))

    async def load(self, session_id: str) -> List[Dict[str, Any]]:
        async with self.lock:
            return deepcopy(self.histories.get(session_id, []))

    async def purge(self, session_id: str) -> int:
        async with self.lock:
            removed = self.histories.pop(session_id, [])
        if removed:
            logger.debug(f"Purged {len(removed)} history rows for session {session_id}")
        return len(removed)


__all__ = ['InMemoryMessageStore', 'InMemoryHistoryStore']
