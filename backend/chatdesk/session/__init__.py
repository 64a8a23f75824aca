"""
Session management package.
Provides session, message and history storage plus the realtime feed.

Version: 1.0.0
"""
from typing import Optional

from .session_store import (
    SessionStore,
    StoreError,
    SessionNotFoundError,
    DuplicateSessionError,
    SessionStateError,
)
from .message_store import MessageStore, HistoryStore
from .validators import SessionFilter, apply_session_patch
from .realtime import Subscription, RealtimeFeed, InProcessFeed, RedisFeed
from .in_memory_session_store import InMemorySessionStore
from .in_memory_message_store import InMemoryMessageStore, InMemoryHistoryStore


def create_realtime_feed(feed_type: str = "memory", **kwargs) -> RealtimeFeed:
    """
    Factory function to create the realtime feed.

    Args:
        feed_type: 'memory' or 'redis'
        **kwargs: Feed-specific configuration (redis_url, channel_prefix)

    Examples:
        feed = create_realtime_feed('memory')
        feed = create_realtime_feed('redis', redis_url='redis://localhost:6379/0')
    """
    if feed_type == "memory":
        return InProcessFeed()

    elif feed_type == "redis":
        return RedisFeed(**kwargs)

    else:
        raise ValueError(f"Unknown realtime feed type: {feed_type}")


def create_stores(
    store_type: str = "memory",
    feed: Optional[RealtimeFeed] = None,
    session_factory=None
):
    """
    Factory function to create the session, message and history stores.

    Args:
        store_type: 'memory' or 'sql'
        feed: Realtime feed the message store publishes to
        session_factory: SQLAlchemy sessionmaker, required for 'sql'

    Returns:
        Tuple of (SessionStore, MessageStore, HistoryStore)
    """
    if store_type == "memory":
        return InMemorySessionStore(), InMemoryMessageStore(feed), InMemoryHistoryStore()

    elif store_type == "sql":
        if session_factory is None:
            raise ValueError("session_factory is required for the sql store")

        from .sql_store import SqlSessionStore, SqlMessageStore, SqlHistoryStore
        return (
            SqlSessionStore(session_factory),
            SqlMessageStore(session_factory, feed),
            SqlHistoryStore(session_factory),
        )

    else:
        raise ValueError(f"Unknown store type: {store_type}")


__all__ = [
    # Contracts
    'SessionStore',
    'MessageStore',
    'HistoryStore',
    'SessionFilter',
    'apply_session_patch',

    # Errors
    'StoreError',
    'SessionNotFoundError',
    'DuplicateSessionError',
    'SessionStateError',

    # Realtime
    'Subscription',
    'RealtimeFeed',
    'InProcessFeed',
    'RedisFeed',

    # Implementations
    'InMemorySessionStore',
    'InMemoryMessageStore',
    'InMemoryHistoryStore',

    # Factories
    'create_realtime_feed',
    'create_stores',
]
