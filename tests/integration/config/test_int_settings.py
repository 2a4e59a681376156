# tests/integration/config/test_int_settings.py — v2
"""Integration tests for configuration loading.

Tests Settings with real .env files and the models derived from them.
No external services required.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from progcompute.cache.models import CacheOptions
from progcompute.config.settings import ConfigurationError, Settings
from progcompute.scheduler.models import SchedulerConfig


class TestSettingsLoading:

    def test_from_env_file(self, tmp_path: Path):
        env_file = tmp_path / ".env"
        env_file.write_text(
            "PROGCOMPUTE_BATCH_SIZE=200\n"
            "PROGCOMPUTE_SLICE_BUDGET_MS=8\n"
            "PROGCOMPUTE_CACHE_ENABLED=true\n"
            "PROGCOMPUTE_CACHE_BACKEND=memory\n"
            f"PROGCOMPUTE_CACHE_ROOT={tmp_path / 'cache'}\n"
            "PROGCOMPUTE_CACHE_MAX_ENTRIES=25\n"
            "PROGCOMPUTE_LOG_FORMAT=text\n"
            "UNRELATED_VARIABLE=ignored\n"
        )
        settings = Settings(_env_file=str(env_file))
        assert settings.batch_size == 200
        assert settings.slice_budget_ms == 8.0
        assert settings.log_format == "text"

        config = SchedulerConfig.from_settings(settings)
        assert config.cache is True
        assert config.cache_options.backend == "memory"
        assert config.cache_options.max_entries == 25
        assert config.cache_options.db_path == tmp_path / "cache" / "ProgressiveComputeCache.db"

    def test_env_var_overrides_file(self, tmp_path: Path, monkeypatch):
        env_file = tmp_path / ".env"
        env_file.write_text("PROGCOMPUTE_BATCH_SIZE=200\n")
        monkeypatch.setenv("PROGCOMPUTE_BATCH_SIZE", "300")
        assert Settings(_env_file=str(env_file)).batch_size == 300

    def test_inconsistent_file_rejected(self, tmp_path: Path):
        env_file = tmp_path / ".env"
        env_file.write_text("PROGCOMPUTE_CACHE_MAX_STORAGE_BYTES=0\n")
        with pytest.raises(ConfigurationError, match="CACHE_MAX_STORAGE_BYTES"):
            Settings(_env_file=str(env_file))

    def test_cache_options_round_trip(self, tmp_path: Path):
        settings = Settings(_env_file=None, cache_root=tmp_path, cache_dedupe_batches=True)
        options = CacheOptions.from_settings(settings)
        assert options.dedupe_batches is True
        assert options.schema_version == settings.cache_schema_version
