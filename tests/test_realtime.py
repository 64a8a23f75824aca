"""
Tests for the realtime insert feeds.
Redis tests skip when no server is reachable on localhost.
"""
import asyncio
import pytest

from chatdesk.models.schemas import MessageRecord, MessageRole
from chatdesk.session import InProcessFeed, RedisFeed, Subscription, create_realtime_feed


def row(record_id, session_id="s1"):
    return MessageRecord(id=record_id, session_id=session_id, role=MessageRole.ASSISTANT, content=record_id)


# ===========================
# Fixtures
# ===========================

@pytest.fixture
async def redis_feed():
    """Redis feed on a test database (if available)."""
    feed = RedisFeed(redis_url="redis://localhost:6379/15", channel_prefix="test:chat_messages:")

    if not await feed.ping():
        await feed.close()
        pytest.skip("Redis not running")

    yield feed

    await feed.close()


# ===========================
# InProcessFeed
# ===========================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_publish_reaches_sync_and_async_handlers(feed):
    seen_sync, seen_async = [], []

    async def async_handler(record):
        seen_async.append(record.id)

    await feed.subscribe("s1", lambda record: seen_sync.append(record.id))
    await feed.subscribe("s1", async_handler)

    await feed.publish(row("m1"))

    assert seen_sync == ["m1"]
    assert seen_async == ["m1"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_handler_failure_is_isolated(feed, caplog):
    """Test that one failing subscriber does not starve the others."""
    seen = []

    def broken(record):
        raise RuntimeError("boom")

    await feed.subscribe("s1", broken)
    await feed.subscribe("s1", seen.append)

    await feed.publish(row("m1"))

    assert [r.id for r in seen] == ["m1"]
    assert "Realtime handler failed for message m1" in caplog.text


@pytest.mark.unit
@pytest.mark.asyncio
async def test_subscribers_get_copies(feed):
    received = []
    await feed.subscribe("s1", received.append)
    await feed.subscribe("s1", received.append)

    await feed.publish(row("m1"))
    received[0].content = "changed"

    assert received[1].content == "m1"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_close_is_idempotent(feed):
    seen = []
    async with await feed.subscribe("s1", seen.append) as subscription:
        await feed.publish(row("m1"))

    await subscription.close()
    await feed.publish(row("m2"))

    assert subscription.closed is True
    assert [r.id for r in seen] == ["m1"]
    assert feed.subscriber_count("s1") == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_feed_close_releases_subscriptions(feed):
    subscription = await feed.subscribe("s1", lambda record: None)

    await feed.close()

    assert subscription.closed is True
    assert feed.subscriber_count("s1") == 0


@pytest.mark.unit
def test_feed_factory():
    assert isinstance(create_realtime_feed("memory"), InProcessFeed)
    with pytest.raises(ValueError):
        create_realtime_feed("carrier-pigeon")


# ===========================
# RedisFeed
# ===========================

class ScriptedPubSub:
    """Stands in for a redis PubSub that stays connected after its messages."""

    def __init__(self, records):
        self.records = records
        self.closed = False

    async def listen(self):
        for record in self.records:
            yield {"type": "message", "data": record.model_dump_json()}
        await asyncio.Event().wait()

    async def unsubscribe(self):
        pass

    async def aclose(self):
        self.closed = True


@pytest.mark.unit
@pytest.mark.asyncio
async def test_redis_reader_stops_when_handler_closes_subscription():
    """Test that closing a subscription from its own handler releases the connection."""
    feed = RedisFeed(redis_url="redis://localhost:6379/15")
    pubsub = ScriptedPubSub([row("m1"), row("m2")])
    received = []

    async def handler(record):
        received.append(record.id)
        await subscription.close()

    subscription = Subscription("s1", handler, on_close=feed._unsubscribe)
    reader = asyncio.create_task(feed._read(pubsub, subscription))
    feed._readers[subscription] = reader

    await asyncio.wait_for(reader, timeout=2)

    assert received == ["m1"]
    assert subscription.closed is True
    assert pubsub.closed is True
    assert not reader.cancelled()
    assert subscription not in feed._readers

    await feed.close()


@pytest.mark.requires_redis
@pytest.mark.asyncio
async def test_redis_subscription_closed_by_its_handler(redis_feed):
    received = []

    async def handler(record):
        received.append(record.id)
        await subscription.close()

    subscription = await redis_feed.subscribe("s1", handler)
    reader = redis_feed._readers[subscription]
    await asyncio.sleep(0.05)

    await redis_feed.publish(row("m1"))
    await redis_feed.publish(row("m2"))
    await asyncio.wait_for(reader, timeout=2)

    assert received == ["m1"]
    assert subscription not in redis_feed._readers


@pytest.mark.requires_redis
@pytest.mark.asyncio
async def test_redis_feed_round_trip(redis_feed):
    """Test that a published row reaches a subscriber through Redis."""
    received = asyncio.Queue()
    subscription = await redis_feed.subscribe("s1", received.put_nowait)
    await asyncio.sleep(0.05)

    await redis_feed.publish(row("m1"))
    await redis_feed.publish(row("x1", session_id="s2"))

    record = await asyncio.wait_for(received.get(), timeout=2)
    assert record.id == "m1"
    assert record.role == MessageRole.ASSISTANT

    await subscription.close()
    assert received.empty()


@pytest.mark.requires_redis
@pytest.mark.asyncio
async def test_redis_feed_stops_after_close(redis_feed):
    received = []
    subscription = await redis_feed.subscribe("s1", received.append)
    await subscription.close()

    await redis_feed.publish(row("m1"))
    await asyncio.sleep(0.1)

    assert received == []
