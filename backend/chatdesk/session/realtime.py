"""
Realtime message feed.

Every persisted message row is published on a per-session channel.
Consumers hold a Subscription handle and must close it when the view
that owns it goes away.

Version: 1.0.0
"""
import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, List, Optional, Union

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..models.schemas import MessageRecord
from .session_store import StoreError

logger = logging.getLogger(__name__)

MessageHandler = Callable[[MessageRecord], Union[None, Awaitable[None]]]


async def _dispatch(handler: MessageHandler, record: MessageRecord) -> None:
    """Invoke a handler, awaiting it when it is a coroutine function."""
    try:
        result = handler(record)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error(
            f"Realtime handler failed for message {record.id} "
            f"(session {record.session_id}): {e}",
            exc_info=True
        )


class Subscription:
    """
    Handle for one live subscription.

    ``close()`` is idempotent; the handler is never called after it returns.
    """

    def __init__(
        self,
        session_id: str,
        handler: MessageHandler,
        on_close: Optional[Callable[["Subscription"], Awaitable[None]]] = None
    ):
        self.session_id = session_id
        self.handler = handler
        self._on_close = on_close
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def deliver(self, record: MessageRecord) -> None:
        if self._closed:
            return
        await _dispatch(self.handler, record)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            await self._on_close(self)
        logger.debug(f"Subscription to session {self.session_id} closed")

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def __repr__(self):
        state = "closed" if self._closed else "open"
        return f"<Subscription(session={self.session_id}, {state})>"


class RealtimeFeed(ABC):
    """Publish/subscribe contract for message insert events."""

    @abstractmethod
    async def publish(self, record: MessageRecord) -> None:
        """
        Deliver an inserted row to the session's subscribers.

        Args:
            record: The persisted message
        """
        pass

    @abstractmethod
    async def subscribe(self, session_id: str, handler: MessageHandler) -> Subscription:
        """
        Register a handler for rows inserted into a session.

        Args:
            session_id: Session to follow
            handler: Called once per delivered row (sync or async)

        Returns:
            Subscription handle that must be closed by the caller
        """
        pass

    async def close(self) -> None:
        """Release feed resources."""
        pass


class InProcessFeed(RealtimeFeed):
    """
    Feed delivering to handlers registered in this process.

    Handlers are awaited inline, so ``publish`` returns after every
    subscriber has seen the row. Handler exceptions are logged and do not
    reach the publisher.
    """

    def __init__(self):
        self._subscriptions: Dict[str, List[Subscription]] = {}
        logger.info("InProcessFeed initialized")

    async def publish(self, record: MessageRecord) -> None:
        subscriptions = list(self._subscriptions.get(record.session_id, ()))
        for subscription in subscriptions:
            await subscription.deliver(record.model_copy(deep=True))

    async def subscribe(self, session_id: str, handler: MessageHandler) -> Subscription:
        subscription = Subscription(session_id, handler, on_close=self._unsubscribe)
        self._subscriptions.setdefault(session_id, []).append(subscription)
        logger.debug(f"Subscribed to session {session_id}")
        return subscription

    async def _unsubscribe(self, subscription: Subscription) -> None:
        subscriptions = self._subscriptions.get(subscription.session_id)
        if not subscriptions:
            return
        if subscription in subscriptions:
            subscriptions.remove(subscription)
        if not subscriptions:
            del self._subscriptions[subscription.session_id]

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscriptions.get(session_id, ()))

    async def close(self) -> None:
        for subscriptions in list(self._subscriptions.values()):
            for subscription in list(subscriptions):
                await subscription.close()
        self._subscriptions.clear()


class RedisFeed(RealtimeFeed):
    """
    Feed backed by Redis pub/sub, shared by every process on the same Redis.

    Each subscription owns its own PubSub connection and reader task.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        channel_prefix: str = "chat_messages:",
        max_connections: int = 50,
        socket_timeout: float = 5.0
    ):
        self.redis_url = redis_url
        self.channel_prefix = channel_prefix
        self.pool = redis.ConnectionPool.from_url(
            redis_url,
            max_connections=max_connections,
            socket_connect_timeout=socket_timeout,
            decode_responses=True
        )
        self.client = redis.Redis(connection_pool=self.pool)
        self._readers: Dict[Subscription, asyncio.Task] = {}

        logger.info(f"RedisFeed initialized (url={redis_url}, prefix={channel_prefix})")

    def channel(self, session_id: str) -> str:
        return f"{self.channel_prefix}{session_id}"

    async def publish(self, record: MessageRecord) -> None:
        try:
            await self.client.publish(self.channel(record.session_id), record.model_dump_json())
        except RedisError as e:
            raise StoreError(f"Failed to publish message {record.id}: {e}") from e

    async def subscribe(self, session_id: str, handler: MessageHandler) -> Subscription:
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.subscribe(self.channel(session_id))
        except RedisError as e:
            await pubsub.aclose()
            raise StoreError(f"Failed to subscribe to session {session_id}: {e}") from e

        subscription = Subscription(session_id, handler, on_close=self._unsubscribe)
        self._readers[subscription] = asyncio.create_task(
            self._read(pubsub, subscription),
            name=f"realtime-{session_id}"
        )
        logger.debug(f"Subscribed to channel {self.channel(session_id)}")
        return subscription

    async def _read(self, pubsub, subscription: Subscription) -> None:
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    record = MessageRecord.model_validate_json(message["data"])
                except ValueError as e:
                    logger.warning(f"Dropping malformed realtime payload: {e}")
                    continue
                await subscription.deliver(record)
                if subscription.closed:
                    break
        except asyncio.CancelledError:
            pass
        except RedisError as e:
            logger.error(f"Realtime reader for session {subscription.session_id} stopped: {e}")
        finally:
            try:
                await pubsub.unsubscribe()
                await pubsub.aclose()
            except RedisError as e:
                logger.debug(f"Error closing pubsub: {e}")

    async def _unsubscribe(self, subscription: Subscription) -> None:
        task = self._readers.pop(subscription, None)
        if task is None:
            return
        if task is asyncio.current_task():
            # Closed from inside its own handler; _read stops after this delivery
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            logger.error(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        for subscription in list(self._readers):
            await subscription.close()
        await self.client.aclose()
        await self.pool.disconnect()
        logger.info("RedisFeed closed")


__all__ = [
    'MessageHandler',
    'Subscription',
    'RealtimeFeed',
    'InProcessFeed',
    'RedisFeed',
]
