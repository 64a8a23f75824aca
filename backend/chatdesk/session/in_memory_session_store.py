"""
In-memory session store implementation.
Suitable for development, tests and single-instance deployments.

Version: 1.0.0
"""
import asyncio
import logging
from collections import OrderedDict
from copy import deepcopy
from typing import Dict, Any, Optional, List

from ..models.schemas import SessionRecord
from .session_store import SessionStore, SessionNotFoundError, DuplicateSessionError
from .validators import SessionFilter, apply_session_patch

logger = logging.getLogger(__name__)


class InMemorySessionStore(SessionStore):
    """
    In-memory implementation of SessionStore.

    Features:
    - Async-safe operations using an asyncio lock
    - Deep copies in and out so callers never share state with the store

    Limitations:
    - Sessions lost on restart
    - Not shared across multiple instances
    """

    def __init__(self):
        self.sessions: OrderedDict[str, SessionRecord] = OrderedDict()
        self.lock = asyncio.Lock()

        logger.info("InMemorySessionStore initialized")

    async def insert(self, session: SessionRecord) -> SessionRecord:
        async with self.lock:
            if session.session_id in self.sessions:
                raise DuplicateSessionError(session.session_id)

            self.sessions[session.session_id] = deepcopy(session)
            logger.debug(f"Inserted session {session.session_id}")
            return deepcopy(session)

    async def update(self, session_id: str, patch: Dict[str, Any]) -> SessionRecord:
        async with self.lock:
            current = self.sessions.get(session_id)
            if current is None:
                raise SessionNotFoundError(session_id)

            updated = apply_session_patch(current, patch)
            self.sessions[session_id] = updated
            logger.debug(f"Updated session {session_id}: {list(patch)}")
            return deepcopy(updated)

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        async with self.lock:
            session = self.sessions.get(session_id)
            return deepcopy(session) if session else None

    async def query(self, session_filter: Optional[SessionFilter] = None) -> List[SessionRecord]:
        session_filter = session_filter or SessionFilter()

        async with self.lock:
            matches = [s for s in self.sessions.values() if session_filter.matches(s)]

        matches.sort(key=lambda s: s.updated_at, reverse=True)
        if session_filter.limit is not None:
            matches = matches[:session_filter.limit]
        return [deepcopy(s) for s in matches]


__all__ = ['InMemorySessionStore']
