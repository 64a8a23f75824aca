"""
Models package.
Exports the SQLAlchemy tables and the pydantic records used by the stores.

Version: 1.0.0
"""

from .session import ChatSession
from .message import ChatMessage
from .history import AutomationChatHistory
from .schemas import (
    MessageRole,
    SessionStatus,
    EndReason,
    SessionMetadata,
    MessageMetadata,
    SessionRecord,
    NewMessage,
    MessageRecord,
    ResponderRequest,
    ResponderReply,
    utcnow,
)

__all__ = [
    'ChatSession',
    'ChatMessage',
    'AutomationChatHistory',
    'MessageRole',
    'SessionStatus',
    'EndReason',
    'SessionMetadata',
    'MessageMetadata',
    'SessionRecord',
    'NewMessage',
    'MessageRecord',
    'ResponderRequest',
    'ResponderReply',
    'utcnow',
]
