"""
Central configuration for the Scorefeed ingestion worker.
Uses pydantic-settings for env-based config with validation.
"""
from __future__ import annotations

from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import Field, RedisDsn
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PRODUCTION = "production"


class CacheBackendKind(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"


class Settings(BaseSettings):
    """Root settings for the ingestion worker."""

    model_config = SettingsConfigDict(
        env_prefix="SF_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── General ──────────────────────────────────────────────
    environment: Environment = Environment.DEV
    log_level: str = "INFO"
    instance_id: str = Field(default="", description="Unique pod/container ID, bound to every log line")

    # ── Redis ────────────────────────────────────────────────
    redis_url: RedisDsn = Field(default="redis://redis:6379/0")
    redis_max_connections: int = 50
    redis_connect_attempts: int = 5
    cache_backend: CacheBackendKind = CacheBackendKind.REDIS

    # ── Cache ────────────────────────────────────────────────
    cache_prefix: str = "sports_data:"
    cache_single_flight: bool = False
    cache_ttl_default_s: float = 300.0
    cache_ttl_live_s: float = 60.0
    cache_ttl_upcoming_s: float = 600.0
    cache_ttl_completed_s: float = 3600.0
    cache_ttl_standings_s: float = 3600.0
    cache_ttl_static_info_s: float = 86400.0

    # ── Change detection ─────────────────────────────────────
    snapshot_prefix: str = "match_previous_state:"
    snapshot_ttl_s: int = 86400
    snapshot_completed_ttl_s: Optional[int] = Field(
        default=3600,
        description="TTL for snapshots of finished matches; None keeps snapshot_ttl_s for every status.",
    )
    change_channel_prefix: str = "changes"

    # ── Retry ────────────────────────────────────────────────
    retry_max_attempts: int = 3
    retry_base_delay_ms: float = 1000.0
    retry_max_delay_ms: float = 10000.0

    # ── Provider ─────────────────────────────────────────────
    provider_name: str = "rapidapi"
    provider_base_url: str = "https://api-football-v1.p.rapidapi.com/v3"
    provider_api_key: str = ""
    provider_api_host: str = "api-football-v1.p.rapidapi.com"
    provider_request_timeout_s: float = 30.0

    # ── Polling ──────────────────────────────────────────────
    live_poll_interval_s: float = 15.0
    schedule_poll_interval_s: float = 300.0

    # ── Observability ────────────────────────────────────────
    metrics_enabled: bool = True
    metrics_port: int = 9090

    @property
    def redis_url_str(self) -> str:
        return str(self.redis_url)

    @property
    def cache_ttls(self) -> dict[str, float]:
        """Per-category TTL table in seconds."""
        return {
            "default": self.cache_ttl_default_s,
            "live": self.cache_ttl_live_s,
            "upcoming": self.cache_ttl_upcoming_s,
            "completed": self.cache_ttl_completed_s,
            "standings": self.cache_ttl_standings_s,
            "static_info": self.cache_ttl_static_info_s,
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Singleton access to validated settings."""
    return Settings()
