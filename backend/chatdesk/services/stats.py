"""
Dashboard statistics over sessions and messages.
"""
import logging
from collections import Counter, defaultdict
from datetime import datetime, tzinfo
from typing import Dict, List, Optional

from ..models.schemas import ChatStats, MessageRecord, MessageRole, SessionRecord, SessionStatus, utcnow
from ..session import MessageStore, SessionFilter, SessionStore

logger = logging.getLogger(__name__)

# Replies slower than this are outliers, not response times
MAX_RESPONSE_SECONDS = 300.0


def compute_chat_stats(
    sessions: List[SessionRecord],
    messages: List[MessageRecord],
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None
) -> ChatStats:
    """
    Aggregate dashboard figures.

    ``tz`` sets the day boundary for "today" and the hour buckets; the
    server's local zone is used when it is None.
    """
    now = (now or utcnow()).astimezone(tz)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)

    by_session: Dict[str, List[MessageRecord]] = defaultdict(list)
    hours: Counter = Counter()
    messages_today = 0

    for message in sorted(messages, key=MessageRecord.sort_key):
        by_session[message.session_id].append(message)
        local = message.created_at.astimezone(tz)
        hours[local.hour] += 1
        if local >= midnight:
            messages_today += 1

    response_times: List[float] = []
    for rows in by_session.values():
        for previous, current in zip(rows, rows[1:]):
            if previous.role == MessageRole.USER and current.role == MessageRole.ASSISTANT:
                elapsed = (current.created_at - previous.created_at).total_seconds()
                if 0 < elapsed < MAX_RESPONSE_SECONDS:
                    response_times.append(elapsed)

    durations: List[float] = []
    for session in sessions:
        if session.status != SessionStatus.COMPLETED:
            continue
        rows = by_session.get(session.session_id, [])
        if len(rows) < 2:
            continue
        duration = (rows[-1].created_at - rows[0].created_at).total_seconds()
        if duration > 0:
            durations.append(duration)

    # Earliest hour wins a tie
    peak_hour = min(hours, key=lambda hour: (-hours[hour], hour)) if hours else 0

    return ChatStats(
        total_sessions=len(sessions),
        active_sessions=sum(1 for s in sessions if s.status == SessionStatus.ACTIVE),
        messages_today=messages_today,
        avg_response_time=round(sum(response_times) / len(response_times)) if response_times else 0,
        avg_session_duration=round(sum(durations) / len(durations)) if durations else 0,
        peak_hour=f"{peak_hour}:00",
        human_handoffs=sum(1 for s in sessions if s.metadata.had_human_intervention)
    )


class StatsService:
    """Reads the stores and feeds ``compute_chat_stats``."""

    def __init__(self, session_store: SessionStore, message_store: MessageStore):
        self.session_store = session_store
        self.message_store = message_store

    async def collect(self, now: Optional[datetime] = None, tz: Optional[tzinfo] = None) -> ChatStats:
        sessions = await self.session_store.query(SessionFilter())
        messages = await self.message_store.list_messages()
        stats = compute_chat_stats(sessions, messages, now=now, tz=tz)
        logger.debug(f"Collected stats over {len(sessions)} sessions, {len(messages)} messages")
        return stats

    async def recent_sessions(self, limit: int = 20, **filters):
        """Most recently updated sessions with their message counts."""
        sessions = await self.session_store.query(SessionFilter(limit=limit, **filters))
        counts = [await self.message_store.count(s.session_id) for s in sessions]
        return list(zip(sessions, counts))


__all__ = ['compute_chat_stats', 'StatsService', 'MAX_RESPONSE_SECONDS']
