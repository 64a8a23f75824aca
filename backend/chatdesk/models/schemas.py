"""
Pydantic schemas for chat sessions, messages and the HTTP surface.
"""
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import List, Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class MessageRole(str, Enum):
    """Message role enumeration."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class SessionStatus(str, Enum):
    """Session status enumeration."""
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class EndReason(str, Enum):
    """Why a session was terminated."""
    NEW_SESSION = "new_session"
    BROWSER_CLOSED = "browser_closed"
    USER_ENDED = "user_ended"


# Metadata bags

class SessionMetadata(BaseModel):
    """
    Session metadata with the keys this codebase reads or writes.

    Any other key is kept as-is and never interpreted.
    """
    model_config = ConfigDict(extra="allow")

    widget_position: Optional[str] = None
    user_agent: Optional[str] = None
    had_human_intervention: Optional[bool] = None
    last_agent_id: Optional[str] = None
    session_ended_at: Optional[datetime] = None
    session_end_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class MessageMetadata(BaseModel):
    """Message metadata; unknown keys pass through untouched."""
    model_config = ConfigDict(extra="allow")

    error: Optional[bool] = None
    timeout: Optional[bool] = None
    is_welcome: Optional[bool] = None
    agent_intervention: Optional[bool] = None
    agent_id: Optional[str] = None
    agent_email: Optional[str] = None
    source: Optional[str] = None
    sources: Optional[List[Any]] = None
    confidence: Optional[float] = None
    handoff_required: Optional[bool] = None
    url: Optional[str] = None
    is_sitemap: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


# Store records

class SessionRecord(BaseModel):
    """One row of the session store."""
    session_id: str = Field(..., min_length=1, max_length=255)
    chatbot_id: str = Field(..., min_length=1, max_length=255)
    visitor_id: str = Field(..., min_length=1, max_length=255)
    platform: str = "web"
    status: SessionStatus = SessionStatus.ACTIVE
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE


class NewMessage(BaseModel):
    """A message about to be written; the store assigns id and timestamp."""
    session_id: str = Field(..., min_length=1)
    role: MessageRole
    content: str
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)


class MessageRecord(BaseModel):
    """
    One persisted message, also the payload of a realtime insert event.
    """
    id: str
    session_id: str
    role: MessageRole
    content: str
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)
    created_at: datetime = Field(default_factory=utcnow)

    def sort_key(self):
        return (self.created_at, self.id)


# Automation responder wire format

class ResponderRequest(BaseModel):
    """Body posted to the automation webhook."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    message: str
    session_id: str
    chatbot_id: str
    user_identifier: Optional[str] = None
    knowledge_base_ids: Optional[List[str]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ResponderReplyMetadata(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    sources: Optional[List[Any]] = None
    confidence: Optional[float] = None
    handoff_required: Optional[bool] = None


class ResponderReply(BaseModel):
    """Synchronous reply from the automation webhook."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    response: str = ""
    session_id: Optional[str] = None
    message_id: Optional[str] = None
    metadata: Optional[ResponderReplyMetadata] = None

    def message_metadata(self) -> MessageMetadata:
        """Map reply metadata onto message metadata flags."""
        metadata = MessageMetadata(source="sync")
        if self.metadata:
            metadata.sources = self.metadata.sources
            metadata.confidence = self.metadata.confidence
            metadata.handoff_required = self.metadata.handoff_required
        return metadata


# Request Schemas

class ResolveSessionRequest(BaseModel):
    """Request to resolve or create the visitor's session."""
    visitor_id: str = Field(..., min_length=1, max_length=255)
    chatbot_id: str = Field(..., min_length=1, max_length=255)
    platform: str = Field(default="web", max_length=50)
    session_id: Optional[str] = Field(default=None, max_length=255)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "visitor_id": "9b1f7c1e-0d8c-4f4e-bb2a-3e6f9a1d2c44",
            "chatbot_id": "support-bot",
            "platform": "web",
            "metadata": {"widget_position": "bottom-right"}
        }
    })


class EndSessionRequest(BaseModel):
    """Optional body of the unload beacon."""
    reason: str = Field(default=EndReason.BROWSER_CLOSED.value, max_length=100)


class SendMessageRequest(BaseModel):
    """Request to persist a visitor or agent message."""
    message: str = Field(..., min_length=1, max_length=4000)

    @field_validator("message")
    @classmethod
    def validate_message(cls, v: str) -> str:
        """Ensure message is not just whitespace."""
        if not v.strip():
            raise ValueError("Message cannot be empty")
        return v.strip()


# Response Schemas

class SessionResponse(BaseModel):
    """Session information response."""
    session_id: str
    chatbot_id: str
    visitor_id: str
    platform: str
    status: SessionStatus
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    message_count: Optional[int] = None

    @classmethod
    def from_record(cls, record: SessionRecord, message_count: Optional[int] = None) -> "SessionResponse":
        return cls(
            session_id=record.session_id,
            chatbot_id=record.chatbot_id,
            visitor_id=record.visitor_id,
            platform=record.platform,
            status=record.status,
            metadata=record.metadata.to_dict(),
            created_at=record.created_at,
            updated_at=record.updated_at,
            message_count=message_count
        )


class MessageResponse(BaseModel):
    """One message as returned by the API."""
    id: str
    session_id: str
    role: MessageRole
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @classmethod
    def from_record(cls, record: MessageRecord) -> "MessageResponse":
        return cls(
            id=record.id,
            session_id=record.session_id,
            role=record.role,
            content=record.content,
            metadata=record.metadata.to_dict(),
            created_at=record.created_at
        )


class MessageHistory(BaseModel):
    """Message history response."""
    messages: List[MessageResponse]
    total: int
    session_id: str


class ChatStats(BaseModel):
    """Dashboard statistics."""
    total_sessions: int = 0
    active_sessions: int = 0
    messages_today: int = 0
    avg_response_time: float = Field(default=0.0, description="Seconds")
    avg_session_duration: float = Field(default=0.0, description="Seconds")
    peak_hour: str = "0:00"
    human_handoffs: int = 0


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: datetime
    version: str
    services: Dict[str, str] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    message: str
    request_id: Optional[str] = None
