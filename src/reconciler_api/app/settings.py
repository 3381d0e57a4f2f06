"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "generation-reconciler"
    database_url: str = ""
    # 0 disables the in-process sweep scheduler (cron can call the CLI instead).
    poll_interval_s: float = Field(default=60.0, ge=0.0)
    poll_min_age_s: float = Field(default=60.0, ge=0.0)
    poll_batch_size: int = Field(default=50, ge=1)
    poll_max_concurrency: int = Field(default=3, ge=1)
    poll_request_delay_s: float = Field(default=0.5, ge=0.0)
    # Per-sweep cap on listed errors; `failed` still counts every failure.
    poll_max_reported_errors: int = Field(default=100, ge=0)
    provider_query_timeout_s: float = Field(default=10.0, ge=0.01)
    webhook_parse_timeout_s: float = Field(default=2.0, ge=0.01)
    status_cache_ttl_s: float = Field(default=0.0, ge=0.0)
    status_cache_max_entries: int = Field(default=1024, ge=1)
    kie_api_key: str = ""
    kie_base_url: str = "https://api.kie.ai"
    enabled_providers: str = "kie_jobs,omnihuman"
    failure_rate_window_minutes: int = Field(default=60, ge=1)
    failure_rate_threshold_pct: float = Field(default=10.0, ge=0.0)
    failure_rate_critical_pct: float = Field(default=25.0, ge=0.0)

    model_config = SettingsConfigDict(
        env_prefix="RECONCILER_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_kie_api_key(self) -> str:
        return self.kie_api_key or os.getenv("KIE_API_KEY", "")

    def provider_names(self) -> list[str]:
        names = [item.strip() for item in self.enabled_providers.split(",")]
        return [name for name in names if name]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
