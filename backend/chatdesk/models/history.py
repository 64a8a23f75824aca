"""
Conversation memory kept by the automation engine for its own context window.
"""
from sqlalchemy import Column, Integer, JSON, String, DateTime

from ..database import Base
from .schemas import utcnow


class AutomationChatHistory(Base):
    """One remembered turn, keyed by the widget session id."""
    __tablename__ = "automation_chat_histories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(255), nullable=False, index=True)
    message = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<AutomationChatHistory(id={self.id}, session={self.session_id})>"
