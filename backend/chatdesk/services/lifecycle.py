"""
Session lifecycle manager.

Keeps at most one active session per visitor, reactivates a completed
session when a widget re-opens it, and terminates sessions on page
unload without ever blocking or raising into the teardown path.

Version: 1.0.0
"""
import asyncio
import logging
import threading
import uuid
from typing import Any, Dict, Optional, Set, Union

from ..models.schemas import EndReason, SessionMetadata, SessionRecord, SessionStatus, utcnow
from ..session import (
    DuplicateSessionError,
    HistoryStore,
    SessionNotFoundError,
    SessionStateError,
    SessionStore,
    StoreError,
)
from ..utils.retry import RetryConfig, RetryStrategy, retry_call
from ..utils.telemetry import track_session_started, track_session_terminated

logger = logging.getLogger(__name__)


def generate_session_id() -> str:
    """Fresh session id; one per widget instantiation."""
    return str(uuid.uuid4())


def generate_visitor_id() -> str:
    return str(uuid.uuid4())


class SessionLifecycleManager:
    """
    Creates, reuses, reactivates and terminates chat sessions.

    Store failures while resolving a session propagate to the caller.
    Store failures while terminating are logged and reported through the
    boolean result only.
    """

    def __init__(
        self,
        session_store: SessionStore,
        history_store: Optional[HistoryStore] = None,
        retry_config: Optional[RetryConfig] = None
    ):
        self.session_store = session_store
        self.history_store = history_store
        self.retry_config = retry_config or RetryConfig(
            max_attempts=2,
            initial_delay=0.5,
            strategy=RetryStrategy.FIXED,
            retry_on_exceptions=(StoreError,)
        )
        if self.retry_config.max_attempts < 2:
            raise ValueError("Termination must be attempted at least twice")

        self._pending: Set[asyncio.Task] = set()
        self._threads: Set[threading.Thread] = set()
        self._threads_lock = threading.Lock()

    # ===========================
    # Resolve / create
    # ===========================

    async def resolve_or_create_session(
        self,
        visitor_id: str,
        chatbot_id: str,
        platform: str = "web",
        session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Return the session id the widget should use.

        Every other active session of the visitor is terminated first with
        reason ``new_session``. An existing ``completed`` row with the same
        id is flipped back to ``active``; an existing ``active`` row is left
        untouched.

        Raises:
            StoreError: If the session store cannot be read or written
            SessionStateError: If the id belongs to an abandoned session or
                to another visitor
        """
        session_id = session_id or generate_session_id()

        existing = await self.session_store.get(session_id)
        if existing is not None:
            self._check_owner(existing, visitor_id)

        active = await self.session_store.find_active(visitor_id)
        for other in active:
            if other.session_id != session_id:
                logger.info(
                    f"Visitor {visitor_id} opened {session_id}; "
                    f"closing previous session {other.session_id}"
                )
                await self.terminate_session(other.session_id, EndReason.NEW_SESSION)

        if existing is None:
            record = SessionRecord(
                session_id=session_id,
                chatbot_id=chatbot_id,
                visitor_id=visitor_id,
                platform=platform,
                status=SessionStatus.ACTIVE,
                metadata=SessionMetadata.model_validate(metadata or {})
            )
            try:
                await self.session_store.insert(record)
                track_session_started("created")
                logger.info(f"Created session {session_id} for visitor {visitor_id}")
                return session_id
            except DuplicateSessionError:
                # Concurrent retry of the same open won the insert
                existing = await self.session_store.get(session_id)
                if existing is None:
                    raise
                self._check_owner(existing, visitor_id)

        return await self._reuse(existing, metadata)

    def _check_owner(self, session: SessionRecord, visitor_id: str) -> None:
        if session.visitor_id != visitor_id:
            logger.warning(
                f"Visitor {visitor_id} tried to open session {session.session_id} "
                f"owned by {session.visitor_id}"
            )
            raise SessionStateError(
                session.session_id,
                session.status.value,
                f"Session {session.session_id} belongs to another visitor"
            )

    async def _reuse(self, session: SessionRecord, metadata: Optional[Dict[str, Any]]) -> str:
        if session.status == SessionStatus.ACTIVE:
            track_session_started("reused")
            logger.debug(f"Session {session.session_id} already active")
            return session.session_id

        if session.status == SessionStatus.COMPLETED:
            reopened = {"session_ended_at": None, "session_end_reason": None}
            reopened.update(metadata or {})
            patch = {"status": SessionStatus.ACTIVE.value, "metadata": reopened}
            await self.session_store.update(session.session_id, patch)
            track_session_started("reactivated")
            logger.info(f"Reactivated completed session {session.session_id}")
            return session.session_id

        raise SessionStateError(session.session_id, session.status.value)

    # ===========================
    # Terminate
    # ===========================

    async def terminate_session(
        self,
        session_id: str,
        reason: Union[EndReason, str] = EndReason.USER_ENDED
    ) -> bool:
        """
        Mark a session completed and purge the automation engine's memory of it.

        The status write is retried per ``retry_config``. Nothing raises:
        failures are logged and reflected in the return value.

        Returns:
            True if the session is completed when the call returns
        """
        reason_value = reason.value if isinstance(reason, EndReason) else str(reason)

        try:
            success = await retry_call(
                self._mark_completed, session_id, reason_value,
                config=self.retry_config
            )
        except StoreError as e:
            logger.error(
                f"Failed to terminate session {session_id} ({reason_value}): {e}",
                exc_info=True
            )
            success = False

        await self._purge_history(session_id)

        track_session_terminated(reason_value, success)
        return success

    async def _mark_completed(self, session_id: str, reason: str) -> bool:
        session = await self.session_store.get(session_id)
        if session is None:
            logger.warning(f"Cannot terminate unknown session {session_id}")
            return False

        if session.status != SessionStatus.ACTIVE:
            logger.debug(f"Session {session_id} already {session.status.value}")
            return session.status == SessionStatus.COMPLETED

        try:
            await self.session_store.update(session_id, {
                "status": SessionStatus.COMPLETED.value,
                "metadata": {
                    "session_ended_at": utcnow(),
                    "session_end_reason": reason
                }
            })
        except SessionNotFoundError:
            logger.warning(f"Session {session_id} vanished before termination")
            return False

        logger.info(f"Terminated session {session_id} ({reason})")
        return True

    async def _purge_history(self, session_id: str) -> None:
        if self.history_store is None:
            return
        try:
            removed = await self.history_store.purge(session_id)
            if removed:
                logger.debug(f"Purged {removed} automation history rows for {session_id}")
        except StoreError as e:
            logger.warning(f"Failed to purge automation history for {session_id}: {e}")

    # ===========================
    # Unload
    # ===========================

    def on_unload(
        self,
        session_id: str,
        reason: Union[EndReason, str] = EndReason.BROWSER_CLOSED
    ) -> None:
        """
        Fire-and-forget termination for a page or process being torn down.

        Returns immediately. Inside a running event loop the termination is
        scheduled as a task; otherwise it runs on a non-daemon thread so the
        interpreter waits for it before exiting.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        try:
            if loop is not None:
                task = loop.create_task(self._terminate_quietly(session_id, reason))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
            else:
                thread = threading.Thread(
                    target=self._run_in_thread,
                    args=(session_id, reason),
                    name=f"terminate-{session_id}",
                    daemon=False
                )
                with self._threads_lock:
                    self._threads.add(thread)
                thread.start()
        except Exception as e:
            logger.error(f"Could not schedule termination of {session_id}: {e}")

    def _run_in_thread(self, session_id: str, reason: Union[EndReason, str]) -> None:
        try:
            asyncio.run(self._terminate_quietly(session_id, reason))
        finally:
            with self._threads_lock:
                self._threads.discard(threading.current_thread())

    async def _terminate_quietly(self, session_id: str, reason: Union[EndReason, str]) -> None:
        try:
            await self.terminate_session(session_id, reason)
        except Exception as e:
            logger.error(f"Unexpected error terminating {session_id}: {e}", exc_info=True)

    @property
    def pending_terminations(self) -> int:
        with self._threads_lock:
            threads = len(self._threads)
        return len(self._pending) + threads

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for every scheduled termination to finish."""
        if self._pending:
            await asyncio.wait(set(self._pending), timeout=timeout)

        with self._threads_lock:
            threads = list(self._threads)
        for thread in threads:
            await asyncio.to_thread(thread.join, timeout)


__all__ = ['SessionLifecycleManager', 'generate_session_id', 'generate_visitor_id']
