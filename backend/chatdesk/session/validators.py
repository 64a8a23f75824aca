"""
Query filters and patch validation shared by the store implementations.
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, Any, Optional

from ..models.schemas import SessionRecord, SessionMetadata, SessionStatus, utcnow

# Top-level session fields a patch may replace
PATCHABLE_FIELDS = frozenset({"status", "platform", "metadata"})


class SessionFilter(BaseModel):
    """Filter criteria for session queries."""
    model_config = ConfigDict(use_enum_values=True)

    visitor_id: Optional[str] = None
    chatbot_id: Optional[str] = None
    status: Optional[SessionStatus] = None
    limit: Optional[int] = Field(None, ge=1)

    def matches(self, session: SessionRecord) -> bool:
        """Check a session against every set criterion."""
        if self.visitor_id is not None and session.visitor_id != self.visitor_id:
            return False
        if self.chatbot_id is not None and session.chatbot_id != self.chatbot_id:
            return False
        if self.status is not None and session.status != self.status:
            return False
        return True


def apply_session_patch(session: SessionRecord, patch: Dict[str, Any]) -> SessionRecord:
    """
    Return a copy of ``session`` with ``patch`` applied.

    Raises:
        ValueError: If the patch names a field that cannot change
    """
    unknown = set(patch) - PATCHABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot patch session fields: {sorted(unknown)}")

    updates: Dict[str, Any] = {}

    if "status" in patch:
        updates["status"] = SessionStatus(patch["status"])

    if "platform" in patch:
        updates["platform"] = patch["platform"]

    if "metadata" in patch:
        incoming = patch["metadata"]
        if isinstance(incoming, SessionMetadata):
            incoming = incoming.model_dump(exclude_none=True)
        merged = session.metadata.model_dump(exclude_none=True)
        merged.update(incoming or {})
        updates["metadata"] = SessionMetadata.model_validate(merged)

    updates["updated_at"] = max(utcnow(), session.updated_at)
    return session.model_copy(update=updates, deep=True)


__all__ = ['SessionFilter', 'apply_session_patch', 'PATCHABLE_FIELDS']
