# src/config/settings.py — v2
"""Typed configuration loaded from .env via pydantic-settings.

Single source of truth for scheduler, cache and logging settings.
Scheduler and cache components take their own pydantic models
(SchedulerConfig, CacheOptions); both can be derived from Settings.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 10_000


class ConfigurationError(Exception):
    """Raised when configuration is internally inconsistent."""


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="PROGCOMPUTE_",
        extra="ignore",
    )

    # === Scheduler ===
    batch_size: int = 500
    slice_budget_ms: float = 16.0
    idle_timeout_ms: float = 1000.0
    delivery_interval_ms: float = 16.0

    # === Cache ===
    cache_enabled: bool = False
    cache_backend: Literal["sqlite", "memory"] = "sqlite"
    cache_root: Path = Path("~/.progcompute/cache")
    cache_db_name: str = "ProgressiveComputeCache"
    cache_store_name: str = "cache_entries"
    cache_schema_version: str = "1.0.0"
    cache_max_age_ms: int = 24 * 60 * 60 * 1000
    cache_max_entries: int = 100
    cache_max_storage_bytes: int = 50 * 1024 * 1024
    cache_flush_debounce_ms: float = 50.0
    cache_operation_timeout_ms: float = 5000.0
    cache_init_timeout_ms: float = 10000.0
    cache_dedupe_batches: bool = False

    # === Logging ===
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Path | None = None
    log_rotation: str = "10MB"
    log_retention: int = 30

    # --- Validators ---

    @field_validator("batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:  # noqa: N805
        if not MIN_BATCH_SIZE <= v <= MAX_BATCH_SIZE:
            raise ValueError(
                f"batch_size must be in [{MIN_BATCH_SIZE}, {MAX_BATCH_SIZE}]"
            )
        return v

    @field_validator("slice_budget_ms", "idle_timeout_ms")
    @classmethod
    def validate_positive_ms(cls, v: float) -> float:  # noqa: N805
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @model_validator(mode="after")
    def validate_config_consistency(self) -> Settings:
        """Validate cross-field consistency rules."""
        errors: list[str] = []

        if self.delivery_interval_ms < 0:
            errors.append("DELIVERY_INTERVAL_MS must be >= 0")

        if self.cache_max_entries < 1:
            errors.append("CACHE_MAX_ENTRIES must be >= 1")

        if self.cache_max_age_ms <= 0:
            errors.append("CACHE_MAX_AGE_MS must be > 0")

        if self.cache_max_storage_bytes <= 0:
            errors.append("CACHE_MAX_STORAGE_BYTES must be > 0")

        if self.cache_flush_debounce_ms < 0:
            errors.append("CACHE_FLUSH_DEBOUNCE_MS must be >= 0")

        if "_" in self.cache_schema_version:
            # '_' separates fingerprint components
            errors.append("CACHE_SCHEMA_VERSION must not contain '_'")

        if errors:
            raise ConfigurationError("; ".join(errors))

        return self

    # --- Helpers ---

    @property
    def cache_db_path(self) -> Path:
        """Full path of the sqlite cache database."""
        return self.cache_root.expanduser() / f"{self.cache_db_name}.db"


def load_settings(**overrides: object) -> Settings:
    """Load settings from .env with optional overrides.

    Args:
        **overrides: Field-level overrides (for testing or per-run config).

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If configuration is internally inconsistent.
    """
    return Settings(**overrides)  # type: ignore[arg-type]
