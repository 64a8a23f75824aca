"""
Embeddable chat widget client.

Ties the lifecycle manager and one message reconciler together the way a
browser widget uses them: persisted visitor id, fresh session per
instantiation, history on open, termination on unload.

Version: 1.0.0
"""
import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .config import settings
from .services.lifecycle import SessionLifecycleManager, generate_session_id, generate_visitor_id
from .services.reconciler import MessageReconciler, TimelineEntry
from .services.responder import AutomationResponder, Responder
from .session import HistoryStore, MessageStore, SessionStore

logger = logging.getLogger(__name__)

VISITOR_KEY = "chat_user_id"


class WidgetConfig(BaseModel):
    """Embed options of one widget."""
    chatbot_id: str = Field(..., min_length=1)
    webhook_url: Optional[str] = None
    position: str = Field(default="bottom-right", pattern="^(bottom|top)-(right|left)$")
    welcome_message: str = Field(default_factory=lambda: settings.welcome_message)
    platform: str = "web"
    reply_timeout: float = Field(default_factory=lambda: settings.reply_timeout_seconds, gt=0)
    knowledge_base_ids: Optional[List[str]] = None
    user_agent: Optional[str] = None


# ===========================
# Visitor id persistence
# ===========================

class VisitorStorage(ABC):
    """Key/value storage that outlives one widget instance."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        pass

    def visitor_id(self) -> str:
        """Stored visitor id, created on first use."""
        existing = self.get(VISITOR_KEY)
        if existing:
            return existing

        visitor_id = generate_visitor_id()
        self.set(VISITOR_KEY, visitor_id)
        logger.info(f"Created visitor id {visitor_id}")
        return visitor_id


class MemoryVisitorStorage(VisitorStorage):

    def __init__(self, values: Optional[Dict[str, str]] = None):
        self.values: Dict[str, str] = dict(values or {})

    def get(self, key: str) -> Optional[str]:
        return self.values.get(key)

    def set(self, key: str, value: str) -> None:
        self.values[key] = value


class LocalVisitorStorage(VisitorStorage):
    """JSON file storage, the local equivalent of browser localStorage."""

    def __init__(self, path: os.PathLike):
        self.path = Path(path)

    def _read(self) -> Dict[str, str]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable visitor storage {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str) -> Optional[str]:
        value = self._read().get(key)
        return str(value) if value else None

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f)
        os.replace(tmp, self.path)


# ===========================
# Widget client
# ===========================

class ChatWidgetClient:
    """
    One widget instance.

    Usage:
        async with ChatWidgetClient(config, sessions, messages, responder) as widget:
            await widget.send("help")
            for entry in widget.timeline:
                ...
    """

    def __init__(
        self,
        config: WidgetConfig,
        session_store: SessionStore,
        message_store: MessageStore,
        responder: Optional[Responder] = None,
        visitor_storage: Optional[VisitorStorage] = None,
        history_store: Optional[HistoryStore] = None,
        lifecycle: Optional[SessionLifecycleManager] = None
    ):
        self.config = config
        self.message_store = message_store
        self._owns_responder = responder is None
        self.responder = responder or AutomationResponder(
            config.webhook_url or settings.responder_webhook_url,
            timeout=settings.responder_timeout_seconds,
            failure_threshold=settings.responder_failure_threshold,
            recovery_timeout=settings.responder_recovery_timeout,
            retry_attempts=settings.responder_retry_attempts
        )
        self.visitor_storage = visitor_storage or MemoryVisitorStorage()
        self.lifecycle = lifecycle or SessionLifecycleManager(session_store, history_store)

        self.visitor_id: Optional[str] = None
        self.session_id = generate_session_id()
        self.reconciler: Optional[MessageReconciler] = None
        self._disposals = set()

    @property
    def timeline(self):
        return self.reconciler.timeline if self.reconciler else []

    @property
    def is_loading(self) -> bool:
        return bool(self.reconciler and self.reconciler.is_pending)

    @property
    def last_error(self) -> Optional[str]:
        return self.reconciler.last_error if self.reconciler else None

    async def open(self) -> str:
        """
        Resolve the session and start following it.

        Raises:
            StoreError: If the session cannot be created
        """
        if self.reconciler is not None:
            return self.session_id

        self.visitor_id = self.visitor_storage.visitor_id()

        metadata = {"widget_position": self.config.position}
        if self.config.user_agent:
            metadata["user_agent"] = self.config.user_agent

        await self.lifecycle.resolve_or_create_session(
            self.visitor_id,
            self.config.chatbot_id,
            platform=self.config.platform,
            session_id=self.session_id,
            metadata=metadata
        )

        reconciler = MessageReconciler(
            session_id=self.session_id,
            message_store=self.message_store,
            responder=self.responder,
            chatbot_id=self.config.chatbot_id,
            visitor_id=self.visitor_id,
            reply_timeout=self.config.reply_timeout,
            welcome_message=self.config.welcome_message,
            knowledge_base_ids=self.config.knowledge_base_ids,
            platform=self.config.platform
        )
        await reconciler.open()
        self.reconciler = reconciler
        logger.info(f"Widget opened session {self.session_id} for visitor {self.visitor_id}")
        return self.session_id

    async def send(self, text: str) -> Optional[TimelineEntry]:
        if self.reconciler is None:
            raise RuntimeError("Widget is not open")
        return await self.reconciler.send_user_message(text)

    def unload(self) -> None:
        """Page teardown: terminate the session without waiting."""
        if self.reconciler is None:
            return

        self.lifecycle.on_unload(self.session_id)

        reconciler, self.reconciler = self.reconciler, None
        try:
            task = asyncio.get_running_loop().create_task(reconciler.close())
        except RuntimeError:
            return
        self._disposals.add(task)
        task.add_done_callback(self._disposals.discard)

    async def close(self) -> None:
        """Dispose the subscription and wait for background terminations."""
        if self.reconciler is not None:
            await self.reconciler.close()
            self.reconciler = None
        if self._disposals:
            await asyncio.gather(*list(self._disposals))
        await self.lifecycle.drain()
        if self._owns_responder:
            await self.responder.cleanup()

    async def __aenter__(self) -> "ChatWidgetClient":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


__all__ = [
    'ChatWidgetClient',
    'WidgetConfig',
    'VisitorStorage',
    'LocalVisitorStorage',
    'MemoryVisitorStorage',
    'VISITOR_KEY',
]
