"""
Abstract session store interface.
Defines the contract for chat session persistence and the errors it raises.

Version: 1.0.0
"""
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional, List

from ..models.schemas import SessionRecord
from .validators import SessionFilter


class StoreError(Exception):
    """The backing store could not be reached or rejected the operation."""
    pass


class SessionNotFoundError(StoreError, LookupError):
    """Raised when a session id has no row."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class DuplicateSessionError(StoreError):
    """Raised when inserting a session id that already exists."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session already exists: {session_id}")


class SessionStateError(StoreError):
    """Raised when a session cannot move to the requested status."""

    def __init__(self, session_id: str, status: str, message: Optional[str] = None):
        self.session_id = session_id
        self.status = status
        super().__init__(message or f"Session {session_id} is {status} and cannot be reopened")


class SessionStore(ABC):
    """
    Abstract base class for session storage.

    Implementations must be async-safe and must return copies, never
    live references to stored state.
    """

    @abstractmethod
    async def insert(self, session: SessionRecord) -> SessionRecord:
        """
        Insert a new session row.

        Args:
            session: Session to store

        Returns:
            The stored session

        Raises:
            DuplicateSessionError: If the id is already taken
        """
        pass

    @abstractmethod
    async def update(self, session_id: str, patch: Dict[str, Any]) -> SessionRecord:
        """
        Patch a session.

        Top-level fields are replaced; a ``metadata`` dict is merged key by
        key into the stored metadata. ``updated_at`` is always bumped.

        Args:
            session_id: Session identifier
            patch: Fields to change

        Returns:
            The updated session

        Raises:
            SessionNotFoundError: If the session does not exist
        """
        pass

    @abstractmethod
    async def get(self, session_id: str) -> Optional[SessionRecord]:
        """
        Get a session by ID.

        Args:
            session_id: Session identifier

        Returns:
            SessionRecord or None if not found
        """
        pass

    @abstractmethod
    async def query(self, session_filter: Optional[SessionFilter] = None) -> List[SessionRecord]:
        """
        Query sessions, most recently updated first.

        Args:
            session_filter: Equality filter and limit

        Returns:
            Matching sessions
        """
        pass

    async def find_active(self, visitor_id: str) -> List[SessionRecord]:
        """Sessions of a visitor that are still active."""
        return await self.query(SessionFilter(visitor_id=visitor_id, status="active"))

    async def close(self) -> None:
        """Release store resources."""
        pass


__all__ = [
    'SessionStore',
    'StoreError',
    'SessionNotFoundError',
    'DuplicateSessionError',
    'SessionStateError',
]
