"""
Realtime message reconciler.

One instance per open widget session. Merges the visitor's optimistic
echo, the automation webhook's synchronous reply and realtime inserts
into a single timeline in which every message id appears once.

Version: 1.0.0
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional, Set

from ..models.schemas import (
    MessageMetadata,
    MessageRecord,
    MessageRole,
    NewMessage,
    ResponderReply,
    ResponderRequest,
    utcnow,
)
from ..session import MessageStore, StoreError, Subscription
from ..utils.telemetry import track_duplicate_dropped, track_reply_timeout
from .responder import Responder, ResponderError

logger = logging.getLogger(__name__)

LOCAL_ID_PREFIX = "local_"
SYNC_ID_PREFIX = "sync_"
ERROR_ID_PREFIX = "error_"
WELCOME_ID = "welcome"

DEFAULT_WELCOME_MESSAGE = "Hello! How can I help you today?"
SEND_FAILED_TEXT = "Sorry, I encountered an error. Please try again."
TIMEOUT_TEXT = "Sorry, this is taking longer than expected. Please try again."
TIMEOUT_ERROR = "response timeout - try again"


class MessageValidationError(ValueError):
    """Message text is empty or whitespace only."""
    pass


def validate_message_text(text: Optional[str]) -> str:
    """Strip ``text`` and reject it when nothing is left."""
    content = (text or "").strip()
    if not content:
        raise MessageValidationError("Message cannot be empty")
    return content


@dataclass
class TimelineEntry:
    """One rendered bubble."""
    id: str
    role: MessageRole
    content: str
    timestamp: datetime
    metadata: MessageMetadata = field(default_factory=MessageMetadata)
    confirmed: bool = True

    @property
    def is_agent(self) -> bool:
        return bool(self.metadata.agent_intervention)

    @property
    def is_error(self) -> bool:
        return bool(self.metadata.error)

    @classmethod
    def from_record(cls, record: MessageRecord) -> "TimelineEntry":
        return cls(
            id=record.id,
            role=record.role,
            content=record.content,
            timestamp=record.created_at,
            metadata=record.metadata.model_copy(deep=True)
        )


class Timeline:
    """Append-ordered list of entries, addressable by id."""

    def __init__(self):
        self._entries: List[TimelineEntry] = []

    def append(self, entry: TimelineEntry) -> None:
        self._entries.append(entry)

    def reset(self, entries: List[TimelineEntry]) -> None:
        self._entries = list(entries)

    def promote(self, temp_id: str, server_id: str, timestamp: datetime) -> Optional[TimelineEntry]:
        """Replace an optimistic id with the id the store assigned."""
        entry = self.get(temp_id)
        if entry is not None:
            entry.id = server_id
            entry.timestamp = timestamp
            entry.confirmed = True
        return entry

    def get(self, entry_id: str) -> Optional[TimelineEntry]:
        for entry in self._entries:
            if entry.id == entry_id:
                return entry
        return None

    def ids(self) -> List[str]:
        return [entry.id for entry in self._entries]

    def count(self, entry_id: str) -> int:
        return sum(1 for entry in self._entries if entry.id == entry_id)

    def __contains__(self, entry_id: str) -> bool:
        return self.get(entry_id) is not None

    def __iter__(self) -> Iterator[TimelineEntry]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __getitem__(self, index: int) -> TimelineEntry:
        return self._entries[index]


class MessageReconciler:
    """
    Per-session timeline owner.

    State (timeline, processed ids, pending turn, reply timer) lives on the
    instance and is discarded with it. Sends are single-flight: while a
    turn is pending a new send is ignored.
    """

    def __init__(
        self,
        session_id: str,
        message_store: MessageStore,
        responder: Responder,
        chatbot_id: str,
        visitor_id: Optional[str] = None,
        reply_timeout: float = 30.0,
        welcome_message: str = DEFAULT_WELCOME_MESSAGE,
        knowledge_base_ids: Optional[List[str]] = None,
        platform: str = "web",
        on_update: Optional[Callable[["MessageReconciler"], None]] = None
    ):
        self.session_id = session_id
        self.message_store = message_store
        self.responder = responder
        self.chatbot_id = chatbot_id
        self.visitor_id = visitor_id
        self.reply_timeout = reply_timeout
        self.welcome_message = welcome_message
        self.knowledge_base_ids = knowledge_base_ids
        self.platform = platform
        self.on_update = on_update

        self.timeline = Timeline()
        self.processed_ids: Set[str] = set()
        self.last_error: Optional[str] = None

        self._pending = False
        self._turn = 0
        self._timer: Optional[asyncio.TimerHandle] = None
        self._subscription: Optional[Subscription] = None
        self._subscribe_lock = asyncio.Lock()
        self._closed = False

    @property
    def is_pending(self) -> bool:
        return self._pending

    @property
    def subscription(self) -> Optional[Subscription]:
        return self._subscription

    # ===========================
    # Open / close
    # ===========================

    async def open(self) -> None:
        """
        Subscribe to the session's feed, then load its history.

        The subscription is dropped again when history cannot be loaded.
        """
        async with self._subscribe_lock:
            if self._closed:
                raise RuntimeError(f"Reconciler for {self.session_id} is closed")
            if self._subscription is None:
                self._subscription = await self.message_store.subscribe(
                    self.session_id, self.handle_push
                )
        try:
            await self.load_history()
        except StoreError:
            async with self._subscribe_lock:
                if self._subscription is not None:
                    await self._subscription.close()
                    self._subscription = None
            raise

    async def close(self) -> None:
        """Drop the subscription and any reply timer."""
        self._closed = True
        self._clear_pending()
        async with self._subscribe_lock:
            if self._subscription is not None:
                await self._subscription.close()
                self._subscription = None

    async def __aenter__(self) -> "MessageReconciler":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ===========================
    # History
    # ===========================

    async def load_history(self) -> None:
        """
        Seed timeline and processed ids from the store.

        Entries already on the timeline that the store does not know yet
        (optimistic sends, pushes racing the query) are kept after the
        stored rows. An empty session shows a local welcome bubble.
        """
        records = await self.message_store.query(self.session_id)

        if not records:
            if len(self.timeline) == 0:
                self.timeline.append(TimelineEntry(
                    id=WELCOME_ID,
                    role=MessageRole.ASSISTANT,
                    content=self.welcome_message,
                    timestamp=utcnow(),
                    metadata=MessageMetadata(is_welcome=True)
                ))
                self._notify()
            return

        stored: Dict[str, MessageRecord] = {record.id: record for record in records}
        extras = [
            entry for entry in self.timeline
            if entry.id not in stored and entry.id != WELCOME_ID
        ]
        self.timeline.reset([TimelineEntry.from_record(r) for r in records] + extras)
        self.processed_ids.update(stored)

        logger.debug(f"Loaded {len(records)} messages for session {self.session_id}")
        self._notify()

    # ===========================
    # Send
    # ===========================

    async def send_user_message(self, text: str) -> Optional[TimelineEntry]:
        """
        Send one visitor turn.

        Returns:
            The visitor's timeline entry, or None when a turn is already
            pending

        Raises:
            MessageValidationError: If ``text`` is empty
        """
        content = validate_message_text(text)

        if self._pending:
            logger.debug(f"Send ignored for {self.session_id}: reply still pending")
            return None

        self._turn += 1
        turn = self._turn
        self._pending = True
        self.last_error = None

        entry = TimelineEntry(
            id=f"{LOCAL_ID_PREFIX}{uuid.uuid4().hex}",
            role=MessageRole.USER,
            content=content,
            timestamp=utcnow(),
            confirmed=False
        )
        self.timeline.append(entry)
        self._arm_timer(turn)
        self._notify()

        try:
            record = await self.message_store.insert(NewMessage(
                session_id=self.session_id,
                role=MessageRole.USER,
                content=content
            ))
        except StoreError as e:
            logger.error(f"Failed to persist message for {self.session_id}: {e}")
            self._fail_turn(turn)
            return entry

        self.processed_ids.add(record.id)
        self.timeline.promote(entry.id, record.id, record.created_at)

        request = ResponderRequest(
            message=content,
            session_id=self.session_id,
            chatbot_id=self.chatbot_id,
            user_identifier=self.visitor_id,
            knowledge_base_ids=self.knowledge_base_ids,
            metadata={"platform": self.platform, "timestamp": utcnow().isoformat()}
        )
        try:
            reply = await self.responder.send(request)
        except ResponderError as e:
            logger.error(f"Automation responder failed for {self.session_id}: {e}")
            self._fail_turn(turn)
            return entry

        if reply is not None:
            self._accept_sync_reply(turn, reply)
        return entry

    def _accept_sync_reply(self, turn: int, reply: ResponderReply) -> bool:
        """
        Apply the webhook's direct answer to ``turn``.

        A reply without a message id gets a local ``sync_`` id; if its turn
        has been superseded by a newer send it is dropped instead.
        """
        message_id = reply.message_id
        if not message_id:
            if turn != self._turn:
                logger.info(f"Dropping stale id-less reply for turn {turn} of {self.session_id}")
                return False
            message_id = f"{SYNC_ID_PREFIX}{uuid.uuid4().hex}"

        if message_id in self.processed_ids:
            track_duplicate_dropped("sync")
            logger.debug(f"Sync reply {message_id} already rendered")
            if turn == self._turn:
                self._clear_pending()
            return False

        self.processed_ids.add(message_id)
        self.timeline.append(TimelineEntry(
            id=message_id,
            role=MessageRole.ASSISTANT,
            content=reply.response,
            timestamp=utcnow(),
            metadata=reply.message_metadata()
        ))
        if turn == self._turn:
            self._clear_pending()
        self._notify()
        return True

    # ===========================
    # Push
    # ===========================

    async def handle_push(self, record: MessageRecord) -> bool:
        """
        Apply one realtime insert.

        Every row is recorded as processed, but only assistant rows are
        rendered: visitor rows are already on the timeline as local echoes.

        Returns:
            True if the row was appended
        """
        if self._closed or record.session_id != self.session_id:
            return False

        if record.id in self.processed_ids:
            track_duplicate_dropped("push")
            logger.debug(f"Push {record.id} already rendered")
            return False

        self.processed_ids.add(record.id)
        if record.role != MessageRole.ASSISTANT:
            return False

        self.timeline.append(TimelineEntry.from_record(record))
        self._clear_pending()
        self._notify()
        return True

    # ===========================
    # Pending state
    # ===========================

    def _arm_timer(self, turn: int) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.reply_timeout, self._on_timeout, turn)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _clear_pending(self) -> None:
        self._pending = False
        self._cancel_timer()

    def _on_timeout(self, turn: int) -> None:
        self._timer = None
        if turn != self._turn or not self._pending:
            return

        logger.warning(
            f"No reply for session {self.session_id} within {self.reply_timeout}s"
        )
        track_reply_timeout()
        self._clear_pending()
        self.last_error = TIMEOUT_ERROR
        self._append_error(TIMEOUT_TEXT, MessageMetadata(error=True, timeout=True))
        self._notify()

    def _fail_turn(self, turn: int) -> None:
        if turn != self._turn or not self._pending:
            return

        self._clear_pending()
        self.last_error = SEND_FAILED_TEXT
        self._append_error(SEND_FAILED_TEXT, MessageMetadata(error=True))
        self._notify()

    def _append_error(self, content: str, metadata: MessageMetadata) -> None:
        self.timeline.append(TimelineEntry(
            id=f"{ERROR_ID_PREFIX}{uuid.uuid4().hex}",
            role=MessageRole.ASSISTANT,
            content=content,
            timestamp=utcnow(),
            metadata=metadata
        ))

    def _notify(self) -> None:
        if self.on_update is not None:
            self.on_update(self)


__all__ = [
    'MessageReconciler',
    'MessageValidationError',
    'Timeline',
    'TimelineEntry',
    'validate_message_text',
    'DEFAULT_WELCOME_MESSAGE',
    'WELCOME_ID',
]
