"""Application configuration using pydantic-settings."""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=("../.env", ".env"),  # Load root .env first, then backend/.env (overrides)
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Authentication (shared with the HTTP layer that issues user tokens)
    jwt_secret: str = "change-me-jwt-secret"
    jwt_algorithm: str = "HS256"
    jwt_ttl_seconds: int = 3600

    # Producer webhooks (GPU worker / mask service callbacks)
    webhook_secret: str = "change-me-webhook-secret"

    # Client side: collaborator HTTP API and realtime endpoint
    api_base_url: str = "http://localhost:3000/api"
    websocket_url: str = "ws://localhost:8000/ws"
    api_timeout: float = 30.0
    api_retry_attempts: int = 3
    api_retry_max_wait: float = 10.0
    refresh_page_limit: int = 100

    # Connection lifecycle
    heartbeat_interval: float = 15.0
    heartbeat_timeout: float = 30.0
    reconnect_attempts: int = 3
    reconnect_interval: float = 3.0

    # Settle delays in seconds
    phase_two_delay: float = 0.5
    prompt_restore_delay: float = 0.5
    outpaint_select_delay: float = 0.2
    inpaint_select_delay: float = 1.0

    # Soft timeout after which the blocking spinner is hidden (job keeps running)
    generation_soft_timeout: float = 120.0

    # Recent completions remembered so replays do not repeat side effects
    completion_memory: int = 500

    # Client subscription topics reissued for the viewed resource
    subscription_topics: list[str] = Field(default_factory=lambda: ["generation", "masks"])

    # Application
    debug: bool = False
    log_level: str = "info"
    log_format: Literal["console", "json"] = "console"
    host: str = "0.0.0.0"
    port: int = 8000


settings = Settings()
