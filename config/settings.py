"""
Application settings using Pydantic Settings.
Loads configuration from .env file with validation.
"""

from functools import lru_cache
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """Engine configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Store Connection
    # -------------------------------------------------------------------------
    store_url: Optional[str] = Field(
        default=None,
        description="Base URL of a remote store host (unset = in-memory store)"
    )
    store_api_key: Optional[str] = Field(
        default=None,
        description="Bearer token this process sends to a remote store host"
    )
    feed_read_timeout: float = Field(
        default=45.0,
        gt=0,
        description="Seconds of feed silence (no change, status or heartbeat) before it counts as lost"
    )

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    server_host: str = Field(
        default="127.0.0.1",
        description="Server bind host"
    )
    server_port: int = Field(
        default=5175,
        description="Server bind port"
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    host_api_key: Optional[str] = Field(
        default=None,
        description="Bearer token required on the store, rpc and feed endpoints (unset = open)"
    )
    feed_heartbeat_interval: float = Field(
        default=15.0,
        gt=0,
        description="Seconds between keepalive lines on an idle change feed"
    )

    # -------------------------------------------------------------------------
    # Retry / Reconnect
    # -------------------------------------------------------------------------
    retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts for transient network failures before giving up"
    )
    retry_base_delay: float = Field(
        default=0.5,
        ge=0,
        le=60,
        description="First backoff delay in seconds (doubles per attempt)"
    )
    retry_max_delay: float = Field(
        default=8.0,
        ge=0,
        le=300,
        description="Upper bound for a single backoff delay in seconds"
    )

    # -------------------------------------------------------------------------
    # Consistency
    # -------------------------------------------------------------------------
    prefer_atomic_votes: bool = Field(
        default=True,
        description="Use the store's add_vote routine when available"
    )
    atomic_set_list_activation: bool = Field(
        default=True,
        description="Deactivate-all-then-activate in one store routine when available"
    )

    # -------------------------------------------------------------------------
    # Request Limits
    # -------------------------------------------------------------------------
    max_photo_bytes: int = Field(
        default=1024 * 1024,
        ge=1,
        description="Largest inline requester photo accepted"
    )
    max_message_length: int = Field(
        default=100,
        ge=0,
        le=1000,
        description="Requester messages are cut to this many characters"
    )

    # -------------------------------------------------------------------------
    # Diagnostics
    # -------------------------------------------------------------------------
    audit_log_dir: str = Field(
        default="logs/audit",
        description="Directory for queue-reset / activation audit CSVs"
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.
    Uses lru_cache to only load settings once.
    """
    return Settings()
