"""
Service container wiring stores and core services from settings.
"""
import logging
from typing import Optional

from ..config import Settings, settings as default_settings
from ..session import (
    HistoryStore,
    MessageStore,
    RealtimeFeed,
    SessionStore,
    StoreError,
    create_realtime_feed,
    create_stores,
)
from ..utils.retry import RetryConfig, RetryStrategy
from .intervention import AgentInterventionBridge
from .lifecycle import SessionLifecycleManager
from .stats import StatsService

logger = logging.getLogger(__name__)


class ServiceContainer:
    """Container for all service instances with centralized initialization."""

    def __init__(self, cfg: Optional[Settings] = None):
        self.cfg = cfg or default_settings
        self.feed: Optional[RealtimeFeed] = None
        self.session_store: Optional[SessionStore] = None
        self.message_store: Optional[MessageStore] = None
        self.history_store: Optional[HistoryStore] = None
        self.lifecycle: Optional[SessionLifecycleManager] = None
        self.bridge: Optional[AgentInterventionBridge] = None
        self.stats: Optional[StatsService] = None
        self.initialized = False

    @classmethod
    def from_components(
        cls,
        session_store: SessionStore,
        message_store: MessageStore,
        history_store: Optional[HistoryStore] = None,
        cfg: Optional[Settings] = None
    ) -> "ServiceContainer":
        """Build a container around ready-made stores (tests, embedding)."""
        container = cls(cfg)
        container.session_store = session_store
        container.message_store = message_store
        container.feed = message_store.feed
        container.history_store = history_store
        container._build_services()
        container.initialized = True
        return container

    async def initialize(self) -> None:
        """Initialize all service components with proper dependency order."""
        if self.initialized:
            return

        try:
            self.feed = create_realtime_feed(
                self.cfg.realtime_backend,
                **self._feed_options()
            )

            session_factory = None
            if self.cfg.store_backend == "sql":
                from ..database import init_db
                session_factory = init_db()

            self.session_store, self.message_store, self.history_store = create_stores(
                self.cfg.store_backend,
                feed=self.feed,
                session_factory=session_factory
            )

            self._build_services()
            self.initialized = True
            logger.info(
                f"✓ Services initialized (store={self.cfg.store_backend}, "
                f"realtime={self.cfg.realtime_backend})"
            )
        except (StoreError, ValueError) as e:
            logger.error(f"Error initializing services: {e}")
            raise

    def _feed_options(self) -> dict:
        if self.cfg.realtime_backend == "redis":
            return {
                "redis_url": self.cfg.redis_url,
                "channel_prefix": self.cfg.realtime_channel_prefix
            }
        return {}

    def _build_services(self) -> None:
        self.lifecycle = SessionLifecycleManager(
            self.session_store,
            self.history_store,
            retry_config=RetryConfig(
                max_attempts=self.cfg.terminate_retry_attempts,
                initial_delay=self.cfg.terminate_retry_delay,
                strategy=RetryStrategy.FIXED,
                retry_on_exceptions=(StoreError,)
            )
        )
        self.bridge = AgentInterventionBridge(self.session_store, self.message_store)
        self.stats = StatsService(self.session_store, self.message_store)

    async def cleanup(self) -> None:
        """Drain pending terminations and release connections."""
        if self.lifecycle is not None:
            await self.lifecycle.drain(timeout=10)

        if self.message_store is not None:
            await self.message_store.close()

        if self.session_store is not None:
            await self.session_store.close()

        if self.cfg.store_backend == "sql":
            from ..database import cleanup_db
            cleanup_db()

        self.initialized = False
        logger.info("Services cleaned up")


__all__ = ['ServiceContainer']
