"""
Application settings.
Loaded from environment variables and an optional .env file.

Version: 1.0.0
"""
from functools import lru_cache
from typing import List, Optional
import logging

from pydantic import Field, SecretStr, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Runtime configuration for the chat core and its HTTP surface.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ===========================
    # Application
    # ===========================

    app_name: str = Field(default="Chatdesk", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Deployment environment")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    api_prefix: str = Field(default="/api/v1", description="Prefix for REST routes")
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000, ge=1, le=65535)
    cors_origins: str = Field(
        default="*",
        description="Comma separated origins allowed to embed the widget"
    )

    # ===========================
    # Stores
    # ===========================

    store_backend: str = Field(
        default="memory",
        description="Session/message store backend: 'memory' or 'sql'"
    )
    database_url: str = Field(default="sqlite:///./data/chatdesk.db")
    database_echo: bool = Field(default=False)
    database_pool_size: int = Field(default=10, ge=1)
    database_pool_overflow: int = Field(default=20, ge=0)

    realtime_backend: str = Field(
        default="memory",
        description="Message feed backend: 'memory' or 'redis'"
    )
    redis_url: str = Field(default="redis://localhost:6379/0")
    realtime_channel_prefix: str = Field(default="chat_messages:")

    # ===========================
    # Automation responder
    # ===========================

    responder_webhook_url: Optional[str] = Field(
        default=None,
        description="Webhook of the automation engine that produces replies"
    )
    responder_timeout_seconds: float = Field(default=60.0, gt=0)
    responder_failure_threshold: int = Field(default=5, ge=1)
    responder_recovery_timeout: float = Field(default=30.0, gt=0)
    responder_retry_attempts: int = Field(default=2, ge=1, le=5)

    # ===========================
    # Session lifecycle
    # ===========================

    reply_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Bounded wait for a reply to one user turn"
    )
    terminate_retry_attempts: int = Field(default=2, ge=2, le=10)
    terminate_retry_delay: float = Field(default=0.5, ge=0)
    welcome_message: str = Field(default="Hello! How can I help you today?")

    # ===========================
    # Identity provider
    # ===========================

    jwt_secret: Optional[SecretStr] = Field(default=None)
    jwt_algorithm: str = Field(default="HS256")
    jwt_role_claim: str = Field(default="user_role")
    jwt_audience: Optional[str] = Field(default=None)

    # ===========================
    # Telemetry
    # ===========================

    enable_telemetry: bool = Field(default=False)

    @field_validator("store_backend", "realtime_backend")
    @classmethod
    def validate_backend(cls, v: str, info: ValidationInfo) -> str:
        """Normalise backend names."""
        v = v.strip().lower()
        if v in ("in_memory", "inmemory"):
            v = "memory"
        allowed = ("memory", "sql") if info.field_name == "store_backend" else ("memory", "redis")
        if v not in allowed:
            raise ValueError(f"{info.field_name} must be one of {allowed}, got {v!r}")
        return v

    @property
    def cors_origin_list(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    def get_jwt_secret(self) -> Optional[str]:
        """Return the raw JWT secret, if configured."""
        if self.jwt_secret is None:
            return None
        return self.jwt_secret.get_secret_value()


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
