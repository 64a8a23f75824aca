"""
Message model for storing conversation messages.
"""
from sqlalchemy import Column, DateTime, ForeignKey, JSON, String, Text, Index

from ..database import Base
from .schemas import utcnow


class ChatMessage(Base):
    """
    Chat message model. Rows are never updated after insert.
    """
    __tablename__ = "chat_messages"

    id = Column(String(36), primary_key=True)
    session_id = Column(String(255), ForeignKey("chat_sessions.session_id"), nullable=False)

    role = Column(String(20), nullable=False)  # user, assistant, system
    content = Column(Text, nullable=False)
    message_metadata = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_chat_messages_session_created", "session_id", "created_at"),
    )

    def __repr__(self):
        return f"<ChatMessage(id={self.id}, session={self.session_id}, role={self.role})>"
