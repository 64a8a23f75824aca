"""
Automation responder client.

Posts a visitor turn to the automation engine's webhook and parses the
optional synchronous reply. The engine may also (or only) answer by
writing an assistant row that reaches the widget through the realtime feed.

Version: 1.0.0
"""
import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Optional

import aiohttp
from aiobreaker import CircuitBreaker, CircuitBreakerError
from aiohttp import ClientConnectorError, ClientError, ClientSession, ClientTimeout
from pydantic import ValidationError
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential
)

from ..models.schemas import ResponderReply, ResponderRequest
from ..utils.telemetry import track_responder_latency

logger = logging.getLogger(__name__)


# ===========================
# Custom Exceptions
# ===========================

class ResponderError(Exception):
    """Base exception for automation webhook failures."""
    pass


class ResponderHTTPError(ResponderError):
    """Webhook answered with a non-2xx status."""

    def __init__(self, status: int, reason: str = ""):
        self.status = status
        self.reason = reason
        super().__init__(f"Automation webhook returned {status} {reason}".strip())


class ResponderUnavailableError(ResponderError):
    """Webhook unreachable, timed out, or circuit open."""
    pass


# ===========================
# Responder Contract
# ===========================

class Responder(ABC):
    """Anything that can take a visitor turn and maybe answer it."""

    @abstractmethod
    async def send(self, request: ResponderRequest) -> Optional[ResponderReply]:
        """
        Submit one visitor turn.

        Args:
            request: Turn payload

        Returns:
            The synchronous reply, or None when the answer will only
            arrive through the realtime feed

        Raises:
            ResponderError: On transport failure or non-2xx status
        """
        pass

    async def initialize(self) -> None:
        pass

    async def cleanup(self) -> None:
        pass


def parse_reply(body: Any) -> Optional[ResponderReply]:
    """
    Interpret a decoded 2xx body.

    Objects and one-element lists are accepted; anything else, or a reply
    with empty ``response`` text, counts as "no synchronous reply".
    """
    if isinstance(body, list):
        body = body[0] if body else None

    if not isinstance(body, dict):
        return None

    try:
        reply = ResponderReply.model_validate(body)
    except ValidationError as e:
        logger.warning(f"Ignoring malformed responder reply: {e}")
        return None

    if not reply.response.strip():
        return None
    return reply


# ===========================
# Webhook Implementation
# ===========================

class AutomationResponder(Responder):
    """
    aiohttp client for the automation webhook.

    Features:
    - One pooled ClientSession per responder
    - Retry with exponential backoff when the connection cannot be opened
    - Circuit breaker around the webhook
    - Non-2xx and transport errors mapped to ResponderError subclasses
    """

    def __init__(
        self,
        webhook_url: Optional[str],
        timeout: float = 60.0,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        retry_attempts: int = 2,
        retry_wait: float = 0.5
    ):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.session: Optional[ClientSession] = None
        self.circuit_breaker = CircuitBreaker(
            fail_max=failure_threshold,
            timeout_duration=timedelta(seconds=recovery_timeout),
            name="automation_webhook"
        )

        # Only connection setup failures are retried; the request never reached the engine
        self._post_with_retry = retry(
            stop=stop_after_attempt(retry_attempts),
            wait=wait_exponential(multiplier=retry_wait, min=retry_wait, max=retry_wait * 8),
            retry=retry_if_exception_type(ClientConnectorError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )(self._post)

    async def initialize(self) -> None:
        """Create the HTTP session."""
        if self.session is not None:
            return

        if not self.webhook_url:
            logger.warning("Automation webhook URL not configured (set RESPONDER_WEBHOOK_URL)")

        connector = aiohttp.TCPConnector(limit=50, ttl_dns_cache=300)
        self.session = ClientSession(
            timeout=ClientTimeout(total=self.timeout),
            connector=connector,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json"
            }
        )
        logger.info(f"✓ Automation responder initialized (endpoint: {self.webhook_url})")

    async def cleanup(self) -> None:
        """Close the HTTP session."""
        if self.session:
            await self.session.close()
            self.session = None
            logger.info("✓ Automation responder cleanup complete")

    async def send(self, request: ResponderRequest) -> Optional[ResponderReply]:
        if not self.webhook_url:
            raise ResponderUnavailableError("Automation webhook URL not configured")

        if self.session is None:
            await self.initialize()

        started = time.perf_counter()
        try:
            body = await self.circuit_breaker.call_async(self._post_with_retry, request.to_payload())
        except CircuitBreakerError as e:
            logger.error(f"Automation webhook circuit open for session {request.session_id}: {e}")
            raise ResponderUnavailableError(f"Automation webhook circuit open: {e}") from e
        except (ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Automation webhook unreachable for session {request.session_id}: {e}")
            raise ResponderUnavailableError(f"Automation webhook unreachable: {e}") from e
        finally:
            track_responder_latency(time.perf_counter() - started)

        reply = parse_reply(body)
        if reply is None:
            logger.debug(f"No synchronous reply for session {request.session_id}")
        return reply

    async def _post(self, payload: dict) -> Any:
        async with self.session.post(self.webhook_url, json=payload) as response:
            if response.status >= 300:
                raise ResponderHTTPError(response.status, response.reason or "")

            text = await response.text()

        if not text.strip():
            return None
        try:
            return json.loads(text)
        except ValueError:
            logger.warning("Automation webhook returned a non-JSON body")
            return None


__all__ = [
    'Responder',
    'AutomationResponder',
    'ResponderError',
    'ResponderHTTPError',
    'ResponderUnavailableError',
    'parse_reply',
]
