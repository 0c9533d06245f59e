"""
Application settings and configuration management.

This module handles all environment variables and tuning knobs for the
adapters, the live query path and the batch jobs, using Pydantic settings
management for type safety and validation.
"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_BANNED_TERMS = [
    "service",
    "services",
    "consulting",
    "consultant",
    "custom made",
    "made to order",
    "customization service",
    "design service",
    "dropshipping",
    "drop shipping",
    "sourcing agent",
    "shipping agent",
    "buying agent",
    "freight",
    "freight forwarder",
    "logistics",
    "inspection service",
]


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Every value has a working default so the CLI runs against a local SQLite
    file without any configuration. Settings are validated on load and cached.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        populate_by_name=True,
    )

    # Application Configuration
    app_env: Literal["development", "staging", "production"] = Field(
        default="development",
        alias="APP_ENV"
    )
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        alias="LOG_LEVEL"
    )
    log_json: bool = Field(default=False, alias="LOG_JSON")
    log_file: Optional[str] = Field(default=None, alias="LOG_FILE")

    # Persistence
    database_url: str = Field(
        default="sqlite+aiosqlite:///./aggregator.db",
        alias="DATABASE_URL"
    )
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")

    # Cache Settings
    cache_enabled: bool = Field(default=True, alias="CACHE_ENABLED")
    cache_ttl_seconds: int = Field(default=300, alias="CACHE_TTL_SECONDS")
    cache_max_entries: int = Field(default=500, alias="CACHE_MAX_ENTRIES")
    snapshot_max_age_minutes: int = Field(default=180, alias="SNAPSHOT_MAX_AGE_MINUTES")

    # Live query path
    default_page_size: int = Field(default=50, alias="DEFAULT_PAGE_SIZE")
    max_page_size: int = Field(default=200, alias="MAX_PAGE_SIZE")
    adapter_timeout_seconds: float = Field(default=20.0, alias="ADAPTER_TIMEOUT_SECONDS")
    prefetch_timeout_seconds: float = Field(default=12.0, alias="PREFETCH_TIMEOUT_SECONDS")
    circuit_failure_threshold: int = Field(default=3, alias="CIRCUIT_FAILURE_THRESHOLD")
    circuit_recovery_seconds: float = Field(default=300.0, alias="CIRCUIT_RECOVERY_SECONDS")

    # Transport
    request_timeout_seconds: float = Field(default=15.0, alias="REQUEST_TIMEOUT_SECONDS")
    page_timeout_seconds: float = Field(default=30.0, alias="PAGE_TIMEOUT_SECONDS")
    render_scroll_rounds: int = Field(default=4, alias="RENDER_SCROLL_ROUNDS")
    headless_escalation_threshold: int = Field(default=10, alias="HEADLESS_ESCALATION_THRESHOLD")
    rotate_user_agents: bool = Field(default=True, alias="ROTATE_USER_AGENTS")
    accept_language: str = Field(default="en-US,en;q=0.9", alias="ACCEPT_LANGUAGE")

    # Quality
    quality_good_threshold: int = Field(default=10, alias="QUALITY_GOOD_THRESHOLD")
    quality_partial_threshold: int = Field(default=1, alias="QUALITY_PARTIAL_THRESHOLD")
    banned_terms: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_BANNED_TERMS),
        alias="BANNED_TERMS"
    )

    # Images
    image_cache_dir: Path = Field(default=Path("data/images"), alias="IMAGE_CACHE_DIR")
    image_download_attempts: int = Field(default=2, alias="IMAGE_DOWNLOAD_ATTEMPTS")

    # Coverage orchestrator
    taxonomy_path: Optional[Path] = Field(default=None, alias="TAXONOMY_PATH")
    coverage_stages: Annotated[list[int], NoDecode] = Field(default_factory=lambda: [1, 4, 8], alias="COVERAGE_STAGES")
    coverage_max_cycles: int = Field(default=6, alias="COVERAGE_MAX_CYCLES")
    coverage_cooldown_runs: int = Field(default=2, alias="COVERAGE_COOLDOWN_RUNS")
    coverage_concurrency: int = Field(default=3, alias="COVERAGE_CONCURRENCY")
    coverage_max_per_leaf: int = Field(default=480, alias="COVERAGE_MAX_PER_LEAF")
    coverage_random_tokens: int = Field(default=6, alias="COVERAGE_RANDOM_TOKENS")
    coverage_rotate: bool = Field(default=True, alias="COVERAGE_ROTATE")
    coverage_shuffle: bool = Field(default=False, alias="COVERAGE_SHUFFLE")

    # Backfill worker
    backfill_batch_size: int = Field(default=3, alias="BACKFILL_BATCH_SIZE")
    backfill_concurrency: int = Field(default=2, alias="BACKFILL_CONCURRENCY")
    backfill_max_attempts: int = Field(default=2, alias="BACKFILL_MAX_ATTEMPTS")
    backfill_block_threshold: int = Field(default=5, alias="BACKFILL_BLOCK_THRESHOLD")
    backfill_cooldown_seconds: float = Field(default=300.0, alias="BACKFILL_COOLDOWN_SECONDS")
    backfill_batch_delay_seconds: float = Field(default=1.5, alias="BACKFILL_BATCH_DELAY_SECONDS")

    @field_validator("banned_terms", mode="before")
    @classmethod
    def split_banned_terms(cls, v):
        """Accept a comma separated string from the environment."""
        if isinstance(v, str):
            if v.strip().startswith("["):
                return json.loads(v)
            return [t.strip().lower() for t in v.split(",") if t.strip()]
        return v

    @field_validator("coverage_stages", mode="before")
    @classmethod
    def split_stages(cls, v):
        """Accept "1,4,8" as well as a JSON list."""
        if isinstance(v, str):
            if v.strip().startswith("["):
                return json.loads(v)
            return [int(s) for s in v.split(",") if s.strip()]
        return v

    @field_validator("coverage_stages")
    @classmethod
    def validate_stages(cls, v: list[int]) -> list[int]:
        if not v or any(s < 1 for s in v):
            raise ValueError("Coverage stages must be positive integers")
        return sorted(set(v))

    @field_validator("quality_partial_threshold", "quality_good_threshold")
    @classmethod
    def validate_thresholds(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Quality thresholds must be >= 1")
        return v

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
