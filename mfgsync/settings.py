"""Runtime configuration read from ``MFGSYNC_*`` environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_TTL_MS = 300_000
DEFAULT_REFRESH_PERIOD_MS = 300_000
MAX_PAGE_SIZE = 200


class EndpointPaths(BaseModel):
    """Backend routes, relative to ``api_base``."""

    model_config = ConfigDict(frozen=True)

    health: str = "/analysis_status/"
    summary: str = "/dashboard-summary"
    lead_times: str = "/lead-time"
    stock_status: str = "/stock-vs-demand"
    parallelization_pairs: str = "/optimized-parallelization"


class SyncSettings(BaseSettings):
    """Top-level sync engine settings.

    Nested fields use ``__``: ``MFGSYNC_PATHS__LEAD_TIMES=/v2/lead-time``.
    """

    api_base: str = "http://localhost:8000"
    paths: EndpointPaths = Field(default_factory=EndpointPaths)
    request_timeout_s: float = Field(default=30.0, gt=0)
    cache_ttl_ms: int = Field(default=DEFAULT_TTL_MS, gt=0)
    refresh_period_ms: int = Field(default=DEFAULT_REFRESH_PERIOD_MS, gt=0)
    cache_dir: Path = Path(".mfgsync-cache")
    default_page_size: int = Field(default=25, ge=1, le=MAX_PAGE_SIZE)

    model_config = SettingsConfigDict(env_prefix="MFGSYNC_", env_nested_delimiter="__", frozen=True)

    @field_validator("api_base")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


def load_settings() -> SyncSettings:
    """Settings from the environment; raises ``ValidationError`` on bad values."""
    return SyncSettings()
