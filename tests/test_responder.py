"""
Tests for the automation webhook client.
Runs the client against a local aiohttp test server.
"""
import asyncio
import json
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from chatdesk.models.schemas import ResponderRequest
from chatdesk.services.responder import (
    AutomationResponder,
    ResponderHTTPError,
    ResponderUnavailableError,
    parse_reply,
)


def make_request(text="help"):
    return ResponderRequest(
        message=text,
        session_id="s1",
        chatbot_id="bot-1",
        user_identifier="visitor-1",
        metadata={"platform": "web"}
    )


# ===========================
# Fixtures
# ===========================

@pytest.fixture
async def webhook():
    """Local webhook whose status, body and delay the test controls."""
    state = {"status": 200, "body": "", "delay": 0.0, "requests": []}

    async def handle(request):
        state["requests"].append(await request.json())
        if state["delay"]:
            await asyncio.sleep(state["delay"])
        return web.Response(status=state["status"], text=state["body"], content_type="application/json")

    app = web.Application()
    app.router.add_post("/hook", handle)
    server = TestServer(app)
    await server.start_server()

    state["url"] = str(server.make_url("/hook"))
    yield state

    await server.close()


@pytest.fixture
async def responder(webhook):
    client = AutomationResponder(webhook["url"], timeout=2, failure_threshold=2, recovery_timeout=60)
    await client.initialize()
    yield client
    await client.cleanup()


# ===========================
# parse_reply
# ===========================

@pytest.mark.unit
def test_parse_reply_object():
    reply = parse_reply({
        "response": "Hello",
        "sessionId": "s1",
        "messageId": "a1",
        "metadata": {"confidence": 0.8, "handoffRequired": True, "sources": ["faq"]}
    })

    assert reply.response == "Hello"
    assert reply.message_id == "a1"
    metadata = reply.message_metadata()
    assert metadata.source == "sync"
    assert metadata.confidence == 0.8
    assert metadata.handoff_required is True
    assert metadata.sources == ["faq"]


@pytest.mark.unit
def test_parse_reply_list_takes_first():
    reply = parse_reply([{"response": "first"}, {"response": "second"}])

    assert reply.response == "first"
    assert reply.message_id is None


@pytest.mark.unit
@pytest.mark.parametrize("body", [None, [], "text", {"response": "   "}, {"response": 42}, {}])
def test_parse_reply_without_answer(body):
    assert parse_reply(body) is None


# ===========================
# Webhook calls
# ===========================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_send_posts_camel_case_payload(responder, webhook):
    """Test request body and synchronous reply."""
    webhook["body"] = json.dumps({"response": "Hi!", "messageId": "a1"})

    reply = await responder.send(make_request())

    assert reply.response == "Hi!"
    assert reply.message_id == "a1"
    sent = webhook["requests"][0]
    assert sent["message"] == "help"
    assert sent["sessionId"] == "s1"
    assert sent["chatbotId"] == "bot-1"
    assert sent["userIdentifier"] == "visitor-1"
    assert sent["metadata"] == {"platform": "web"}
    assert "knowledgeBaseIds" not in sent


@pytest.mark.unit
@pytest.mark.asyncio
async def test_empty_body_means_no_sync_reply(responder, webhook):
    webhook["body"] = ""

    assert await responder.send(make_request()) is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_non_json_body_means_no_sync_reply(responder, webhook):
    webhook["body"] = "accepted"

    assert await responder.send(make_request()) is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_error_status_raises(responder, webhook):
    webhook["status"] = 502

    with pytest.raises(ResponderHTTPError) as exc_info:
        await responder.send(make_request())

    assert exc_info.value.status == 502


@pytest.mark.unit
@pytest.mark.asyncio
async def test_circuit_opens_after_repeated_failures(responder, webhook):
    """Test that the breaker stops calling a failing webhook."""
    webhook["status"] = 500

    with pytest.raises(ResponderHTTPError):
        await responder.send(make_request())

    # The second failure trips the breaker
    with pytest.raises(ResponderUnavailableError):
        await responder.send(make_request())

    with pytest.raises(ResponderUnavailableError):
        await responder.send(make_request())

    assert len(webhook["requests"]) == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_refused_connection_is_retried(monkeypatch):
    attempts = []
    original = AutomationResponder._post

    async def counting_post(self, payload):
        attempts.append(payload)
        return await original(self, payload)

    monkeypatch.setattr(AutomationResponder, "_post", counting_post)
    client = AutomationResponder("http://127.0.0.1:9/hook", timeout=1, retry_attempts=3, retry_wait=0.01)

    try:
        with pytest.raises(ResponderUnavailableError):
            await client.send(make_request())
    finally:
        await client.cleanup()

    assert len(attempts) == 3


@pytest.mark.unit
@pytest.mark.asyncio
async def test_timeout_maps_to_unavailable(webhook):
    webhook["delay"] = 0.5
    client = AutomationResponder(webhook["url"], timeout=0.1)

    try:
        with pytest.raises(ResponderUnavailableError):
            await client.send(make_request())
    finally:
        await client.cleanup()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unreachable_webhook():
    client = AutomationResponder("http://127.0.0.1:9/hook", timeout=1)

    try:
        with pytest.raises(ResponderUnavailableError):
            await client.send(make_request())
    finally:
        await client.cleanup()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_missing_url():
    client = AutomationResponder("")

    with pytest.raises(ResponderUnavailableError):
        await client.send(make_request())
    assert client.session is None
