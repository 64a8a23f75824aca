"""
SQLAlchemy-backed session, message and history stores.

The ORM sessions are synchronous; every call runs in a worker thread via
``asyncio.to_thread`` so the event loop never blocks on the database.

Version: 1.0.0
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import func, select, delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..models.history import AutomationChatHistory
from ..models.message import ChatMessage
from ..models.schemas import (
    MessageMetadata,
    MessageRecord,
    NewMessage,
    SessionMetadata,
    SessionRecord,
    utcnow,
)
from ..models.session import ChatSession
from .message_store import HistoryStore, MessageStore
from .realtime import RealtimeFeed
from .session_store import (
    DuplicateSessionError,
    SessionNotFoundError,
    SessionStore,
    StoreError,
)
from .validators import SessionFilter, apply_session_patch

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; stored values are always UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _session_to_record(row: ChatSession) -> SessionRecord:
    return SessionRecord(
        session_id=row.session_id,
        chatbot_id=row.chatbot_id,
        visitor_id=row.visitor_id,
        platform=row.platform or "web",
        status=row.status,
        metadata=SessionMetadata.model_validate(row.session_metadata or {}),
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at)
    )


def _message_to_record(row: ChatMessage) -> MessageRecord:
    return MessageRecord(
        id=row.id,
        session_id=row.session_id,
        role=row.role,
        content=row.content,
        metadata=MessageMetadata.model_validate(row.message_metadata or {}),
        created_at=_as_utc(row.created_at)
    )


class _SqlStore:
    """Runs unit-of-work callables against a session factory off the loop."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def _run(self, work: Callable[[Session], T]) -> T:
        return await asyncio.to_thread(self._execute, work)

    def _execute(self, work: Callable[[Session], T]) -> T:
        db = self.session_factory()
        try:
            result = work(db)
            db.commit()
            return result
        except (SessionNotFoundError, DuplicateSessionError):
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error in {type(self).__name__}: {e}")
            raise StoreError(str(e)) from e
        finally:
            db.close()


class SqlSessionStore(_SqlStore, SessionStore):
    """Session store over the ``chat_sessions`` table."""

    async def insert(self, session: SessionRecord) -> SessionRecord:
        def work(db: Session) -> SessionRecord:
            if db.get(ChatSession, session.session_id) is not None:
                raise DuplicateSessionError(session.session_id)

            row = ChatSession(
                session_id=session.session_id,
                chatbot_id=session.chatbot_id,
                visitor_id=session.visitor_id,
                platform=session.platform,
                status=session.status.value,
                session_metadata=session.metadata.to_dict(),
                created_at=session.created_at,
                updated_at=session.updated_at
            )
            db.add(row)
            try:
                db.flush()
            except IntegrityError as e:
                raise DuplicateSessionError(session.session_id) from e
            return _session_to_record(row)

        return await self._run(work)

    async def update(self, session_id: str, patch: Dict[str, Any]) -> SessionRecord:
        def work(db: Session) -> SessionRecord:
            row = db.get(ChatSession, session_id, with_for_update=not self._is_sqlite(db))
            if row is None:
                raise SessionNotFoundError(session_id)

            updated = apply_session_patch(_session_to_record(row), patch)
            row.status = updated.status.value
            row.platform = updated.platform
            row.session_metadata = updated.metadata.to_dict()
            row.updated_at = updated.updated_at
            db.flush()
            return updated

        return await self._run(work)

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        def work(db: Session) -> Optional[SessionRecord]:
            row = db.get(ChatSession, session_id)
            return _session_to_record(row) if row else None

        return await self._run(work)

    async def query(self, session_filter: Optional[SessionFilter] = None) -> List[SessionRecord]:
        session_filter = session_filter or SessionFilter()

        def work(db: Session) -> List[SessionRecord]:
            stmt = select(ChatSession)
            if session_filter.visitor_id is not None:
                stmt = stmt.where(ChatSession.visitor_id == session_filter.visitor_id)
            if session_filter.chatbot_id is not None:
                stmt = stmt.where(ChatSession.chatbot_id == session_filter.chatbot_id)
            if session_filter.status is not None:
                stmt = stmt.where(ChatSession.status == session_filter.status)
            stmt = stmt.order_by(ChatSession.updated_at.desc())
            if session_filter.limit is not None:
                stmt = stmt.limit(session_filter.limit)
            return [_session_to_record(row) for row in db.scalars(stmt)]

        return await self._run(work)

    @staticmethod
    def _is_sqlite(db: Session) -> bool:
        return db.get_bind().dialect.name == "sqlite"


class SqlMessageStore(_SqlStore, MessageStore):
    """Message store over the ``chat_messages`` table."""

    def __init__(self, session_factory: sessionmaker, feed: Optional[RealtimeFeed] = None):
        _SqlStore.__init__(self, session_factory)
        MessageStore.__init__(self, feed)

    async def _insert(self, message: NewMessage) -> MessageRecord:
        def work(db: Session) -> MessageRecord:
            row = ChatMessage(
                id=str(uuid.uuid4()),
                session_id=message.session_id,
                role=message.role.value,
                content=message.content,
                message_metadata=message.metadata.to_dict(),
                created_at=utcnow()
            )
            db.add(row)
            db.flush()
            return _message_to_record(row)

        return await self._run(work)

    async def query(self, session_id: str) -> List[MessageRecord]:
        def work(db: Session) -> List[MessageRecord]:
            stmt = (
                select(ChatMessage)
                .where(ChatMessage.session_id == session_id)
                .order_by(ChatMessage.created_at.asc(), ChatMessage.id.asc())
            )
            return [_message_to_record(row) for row in db.scalars(stmt)]

        return await self._run(work)

    async def count(self, session_id: Optional[str] = None) -> int:
        def work(db: Session) -> int:
            stmt = select(func.count()).select_from(ChatMessage)
            if session_id is not None:
                stmt = stmt.where(ChatMessage.session_id == session_id)
            return db.scalar(stmt) or 0

        return await self._run(work)

    async def list_messages(self, since: Optional[datetime] = None) -> List[MessageRecord]:
        def work(db: Session) -> List[MessageRecord]:
            stmt = select(ChatMessage).order_by(ChatMessage.created_at.asc(), ChatMessage.id.asc())
            if since is not None:
                stmt = stmt.where(ChatMessage.created_at >= since)
            return [_message_to_record(row) for row in db.scalars(stmt)]

        return await self._run(work)


class SqlHistoryStore(_SqlStore, HistoryStore):
    """Automation memory over the ``automation_chat_histories`` table."""

    async def append(self, session_id: str, message: Dict[str, Any]) -> None:
        def work(db: Session) -> None:
            db.add(AutomationChatHistory(session_id=session_id, message=message))

        await self._run(work)

    async def load(self, session_id: str) -> List[Dict[str, Any]]:
        def work(db: Session) -> List[Dict[str, Any]]:
            stmt = (
                select(AutomationChatHistory)
                .where(AutomationChatHistory.session_id == session_id)
                .order_by(AutomationChatHistory.id.asc())
            )
            return [row.message for row in db.scalars(stmt)]

        return await self._run(work)

    async def purge(self, session_id: str) -> int:
        def work(db: Session) -> int:
            result = db.execute(
                delete(AutomationChatHistory).where(AutomationChatHistory.session_id == session_id)
            )
            return result.rowcount or 0

        return await self._run(work)


__all__ = ['SqlSessionStore', 'SqlMessageStore', 'SqlHistoryStore']
