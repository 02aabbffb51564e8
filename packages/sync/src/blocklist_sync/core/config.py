from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LogFormat = Literal["json", "console"]
TransportMode = Literal["platform", "coordinator"]

# Scheduler floor for backoff delays, in seconds.
MIN_BACKOFF_S = 10.0


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="BLOCKLIST_SYNC_",
        env_file=".env",
        extra="ignore",
    )

    data_root: Path = Field(default=Path("data"))
    log_level: str = Field(default="INFO")
    log_format: LogFormat = Field(default="console")

    transport: TransportMode = Field(default="platform")
    app_version: int = Field(default=1, ge=0)
    local_enabled: bool = Field(default=True)
    update_check_url: str = Field(
        default="https://download.rethinkdns.com/update/blocklists"
    )
    download_base_url: str = Field(default="https://download.rethinkdns.com/")
    artifacts_file: Optional[Path] = Field(default=None)

    worker_concurrency: int = Field(default=2, ge=1)
    watch_initial_delay_s: float = Field(default=10.0, ge=0)
    backoff_delay_s: float = Field(default=MIN_BACKOFF_S)
    job_max_attempts: int = Field(default=10, ge=1)
    watch_timeout_s: float = Field(default=40 * 60, gt=0)
    http_max_attempts: int = Field(default=3, ge=1)

    @field_validator("backoff_delay_s")
    @classmethod
    def _floor_backoff(cls, v: float) -> float:
        return max(MIN_BACKOFF_S, float(v))


@lru_cache(maxsize=1)
def load_settings() -> Settings:
    return Settings()
