"""
Tests for settings loading from the environment
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from mfgsync.settings import DEFAULT_TTL_MS, EndpointPaths, SyncSettings, load_settings


@pytest.fixture
def clean_env(monkeypatch):
    for name in (
        "MFGSYNC_API_BASE",
        "MFGSYNC_REQUEST_TIMEOUT_S",
        "MFGSYNC_CACHE_TTL_MS",
        "MFGSYNC_REFRESH_PERIOD_MS",
        "MFGSYNC_CACHE_DIR",
        "MFGSYNC_DEFAULT_PAGE_SIZE",
        "MFGSYNC_PATHS__LEAD_TIMES",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestLoadSettings:
    """MFGSYNC_* environment variables"""

    def test_defaults_when_unset(self, clean_env):
        settings = load_settings()
        assert settings.api_base == "http://localhost:8000"
        assert settings.cache_ttl_ms == DEFAULT_TTL_MS == 300_000
        assert settings.refresh_period_ms == 300_000
        assert settings.default_page_size == 25
        assert settings.paths == EndpointPaths()
        assert settings.paths.health == "/analysis_status/"

    def test_values_are_coerced(self, clean_env):
        clean_env.setenv("MFGSYNC_API_BASE", "http://etl.internal:9000/")
        clean_env.setenv("MFGSYNC_PATHS__LEAD_TIMES", "/v2/lead-time")
        clean_env.setenv("MFGSYNC_REQUEST_TIMEOUT_S", "2.5")
        clean_env.setenv("MFGSYNC_CACHE_TTL_MS", "60000")
        clean_env.setenv("MFGSYNC_CACHE_DIR", "/tmp/dash-cache")
        clean_env.setenv("MFGSYNC_DEFAULT_PAGE_SIZE", "50")
        settings = load_settings()
        assert settings.api_base == "http://etl.internal:9000"
        assert settings.paths.lead_times == "/v2/lead-time"
        assert settings.paths.summary == "/dashboard-summary"
        assert settings.request_timeout_s == 2.5
        assert settings.cache_ttl_ms == 60_000
        assert settings.cache_dir == Path("/tmp/dash-cache")
        assert settings.default_page_size == 50

    @pytest.mark.parametrize(
        "name,value",
        [
            ("MFGSYNC_REQUEST_TIMEOUT_S", "fast"),
            ("MFGSYNC_CACHE_TTL_MS", "-1"),
            ("MFGSYNC_REFRESH_PERIOD_MS", "0"),
            ("MFGSYNC_DEFAULT_PAGE_SIZE", "5000"),
        ],
    )
    def test_invalid_values_are_rejected(self, clean_env, name, value):
        clean_env.setenv(name, value)
        with pytest.raises(ValidationError):
            load_settings()

    def test_settings_are_frozen(self):
        settings = SyncSettings(api_base="http://backend.test/")
        assert settings.api_base == "http://backend.test"
        with pytest.raises(ValidationError):
            settings.cache_ttl_ms = 1
