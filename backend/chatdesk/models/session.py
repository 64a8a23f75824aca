"""
Session model for storing chat sessions.
"""
from sqlalchemy import Column, String, DateTime, JSON, Index

from ..database import Base
from .schemas import utcnow


class ChatSession(Base):
    """
    Chat session model.
    """
    __tablename__ = "chat_sessions"

    session_id = Column(String(255), primary_key=True)
    chatbot_id = Column(String(255), nullable=False, index=True)
    visitor_id = Column(String(255), nullable=False)
    platform = Column(String(50), default="web")

    status = Column(String(20), default="active", nullable=False)  # active, completed, abandoned
    session_metadata = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_chat_sessions_visitor_status", "visitor_id", "status"),
    )

    def __repr__(self):
        return f"<ChatSession(id={self.session_id}, visitor={self.visitor_id}, status={self.status})>"
