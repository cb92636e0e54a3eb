"""
Service configuration.

Settings are read from ``EPISODE_RPC_*`` environment variables or a ``.env``
file via Pydantic Settings.
"""
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings for the episode RPC service."""

    model_config = SettingsConfigDict(
        env_prefix="EPISODE_RPC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    server_name: str = "episode-rpc"

    # Storage; ":memory:" keeps nothing across restarts
    database_path: str = ":memory:"

    # Bounded retries for transient storage failures
    store_retry_attempts: int = Field(default=3, ge=1)
    store_retry_backoff: float = Field(default=0.05, ge=0)
    store_retry_max_wait: float = Field(default=1.0, ge=0)

    # Number generator
    sequence_initial_value: int = Field(default=0, ge=0)
    max_allocation_count: int = Field(default=10_000, ge=1)

    # Approval query
    default_page_size: int = Field(default=20, ge=1)
    max_page_size: int = Field(default=100, ge=1)
    approval_expiry_interval: float = Field(default=60.0, gt=0)

    # Client types that may see every episode
    privileged_client_types: List[str] = ["NHS"]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
