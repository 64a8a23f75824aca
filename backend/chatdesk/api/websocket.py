"""
WebSocket relay of a session's message feed.

All sockets of one session share a single feed subscription, opened with
the first socket and closed when the last one leaves.
"""
from fastapi import WebSocket, WebSocketDisconnect, Query
from starlette.websockets import WebSocketState
from typing import Dict, Optional
import asyncio
import logging
import uuid

from ..models.schemas import MessageRecord, MessageResponse, utcnow
from ..session import MessageStore, StoreError, Subscription
from ..utils.telemetry import update_websocket_connections

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Manages WebSocket connections and their feed subscriptions."""

    def __init__(self):
        self.active_connections: Dict[str, Dict[str, WebSocket]] = {}
        self.subscriptions: Dict[str, Subscription] = {}
        self._lock = asyncio.Lock()

    @property
    def connection_count(self) -> int:
        return sum(len(clients) for clients in self.active_connections.values())

    async def connect(
        self,
        websocket: WebSocket,
        session_id: str,
        client_id: str,
        message_store: MessageStore
    ) -> None:
        """
        Accept and register a connection, subscribing the session if needed.

        Raises:
            StoreError: If the feed subscription cannot be opened
        """
        await websocket.accept()

        async with self._lock:
            if session_id not in self.subscriptions:
                self.subscriptions[session_id] = await message_store.subscribe(
                    session_id, self.broadcast_record
                )
            self.active_connections.setdefault(session_id, {})[client_id] = websocket

        update_websocket_connections(self.connection_count)
        logger.info(f"WebSocket connected: session={session_id}, client={client_id}")

    async def disconnect(self, session_id: str, client_id: str) -> None:
        """Remove a connection; drop the subscription with the last one."""
        subscription = None

        async with self._lock:
            clients = self.active_connections.get(session_id)
            if clients is not None:
                clients.pop(client_id, None)
                if not clients:
                    del self.active_connections[session_id]
                    subscription = self.subscriptions.pop(session_id, None)

            if subscription is not None:
                await subscription.close()

        update_websocket_connections(self.connection_count)
        logger.info(f"WebSocket client {client_id} disconnected from session {session_id}")

    async def broadcast_record(self, record: MessageRecord) -> None:
        await self.broadcast_to_session(
            {
                "type": "message",
                "message": MessageResponse.from_record(record).model_dump(mode="json")
            },
            record.session_id
        )

    async def broadcast_to_session(self, message: dict, session_id: str) -> None:
        """Send a JSON event to every socket of a session."""
        disconnected = []

        for client_id, websocket in list(self.active_connections.get(session_id, {}).items()):
            try:
                if websocket.client_state == WebSocketState.CONNECTED:
                    await websocket.send_json(message)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.error(f"Error broadcasting to client {client_id}: {e}")
                disconnected.append(client_id)

        for client_id in disconnected:
            await self.disconnect(session_id, client_id)

    async def close(self) -> None:
        async with self._lock:
            subscriptions = list(self.subscriptions.values())
            self.subscriptions.clear()
            self.active_connections.clear()
        for subscription in subscriptions:
            await subscription.close()
        update_websocket_connections(0)


async def websocket_endpoint(
    websocket: WebSocket,
    session_id: Optional[str] = Query(None)
):
    """
    Relay message inserts of ``session_id`` to the browser.

    Client frames: ``{"type": "ping"}``. Server frames: ``connected``,
    ``message``, ``pong``, ``error``.
    """
    if not session_id or session_id == "undefined":
        logger.warning(f"Invalid session_id provided: {session_id}")
        await websocket.close(code=4001, reason="Invalid session_id")
        return

    services = getattr(websocket.app.state, "services", None)
    manager: Optional[ConnectionManager] = getattr(websocket.app.state, "connections", None)
    if services is None or manager is None:
        await websocket.close(code=1011, reason="Services not initialized")
        return

    try:
        session = await services.session_store.get(session_id)
    except StoreError as e:
        logger.error(f"Error validating session: {e}")
        await websocket.close(code=1011, reason="Session store unavailable")
        return

    if session is None:
        logger.warning(f"Session not found: {session_id}")
        await websocket.close(code=4004, reason="Session not found")
        return

    client_id = str(uuid.uuid4())
    try:
        await manager.connect(websocket, session_id, client_id, services.message_store)
    except StoreError as e:
        logger.error(f"Could not subscribe session {session_id}: {e}")
        await websocket.close(code=1011, reason="Realtime feed unavailable")
        return

    try:
        await websocket.send_json({
            "type": "connected",
            "session_id": session_id,
            "client_id": client_id,
            "timestamp": utcnow().isoformat()
        })

        while True:
            data = await websocket.receive_json()

            if isinstance(data, dict) and data.get("type") == "ping":
                await websocket.send_json({"type": "pong", "timestamp": utcnow().isoformat()})
            else:
                await websocket.send_json({
                    "type": "error",
                    "message": "Unsupported frame",
                    "timestamp": utcnow().isoformat()
                })

    except WebSocketDisconnect:
        logger.debug(f"WebSocket client {client_id} left session {session_id}")
    except ValueError:
        logger.warning(f"Invalid JSON from client {client_id}; closing")
        await websocket.close(code=1003, reason="Invalid JSON")
    finally:
        await manager.disconnect(session_id, client_id)
