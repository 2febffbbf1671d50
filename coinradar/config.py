"""Runtime configuration read from the environment.

Business settings (pillar weights, hybrid mode, allowed domains, the user's
LLM key) are *not* here: they live in the singleton ``settings`` table and
reach the pipeline as a :class:`coinradar.schemas.RunSettings` value object.
"""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _default_db_path() -> Path:
    override = _env("RADAR_DB_PATH")
    if override:
        return Path(override).expanduser()
    return Path(__file__).parent / "data" / "radar.db"


class Settings(BaseModel):
    database_path: Path = Field(default_factory=_default_db_path)
    log_level: str = Field(default_factory=lambda: _env("RADAR_LOG_LEVEL", "INFO").upper())

    listings_url: str = Field(
        default_factory=lambda: _env("RADAR_LISTINGS_URL", "https://www.coingecko.com/en/new-cryptocurrencies")
    )
    listings_domain: str = "coingecko.com"

    request_timeout_seconds: float = Field(default_factory=lambda: _env_float("RADAR_REQUEST_TIMEOUT", 30.0))
    max_fetch_attempts: int = Field(default_factory=lambda: _env_int("RADAR_MAX_FETCH_ATTEMPTS", 3))
    detail_delay_seconds: float = Field(default_factory=lambda: _env_float("RADAR_DETAIL_DELAY", 1.0))
    page_delay_seconds: float = Field(default_factory=lambda: _env_float("RADAR_PAGE_DELAY", 2.0))
    discovery_attempts: int = 3
    discovery_backoff_seconds: float = Field(default_factory=lambda: _env_float("RADAR_DISCOVERY_BACKOFF", 2.0))

    link_batch_size: int = 10
    retry_batch_size: int = 10
    page_batch_size: int = 5
    fact_batch_size: int = 3
    score_batch_size: int = 5
    deep_batch_size: int = 3

    stuck_after_minutes: int = Field(default_factory=lambda: _env_int("RADAR_STUCK_AFTER_MINUTES", 60))
    retry_expiry_hours: int = 24
    max_fact_retries: int = 3

    llm_provider: str = Field(default_factory=lambda: _env("LLM_PROVIDER", "openai"))
    default_model: str = Field(default_factory=lambda: _env("LLM_MODEL", ""))
    premium_model: str = Field(default_factory=lambda: _env("LLM_PREMIUM_MODEL", "gpt-4o"))
    openai_api_key: str = Field(default_factory=lambda: _env("OPENAI_API_KEY"))
    openai_base_url: str = Field(default_factory=lambda: _env("OPENAI_BASE_URL"))
    anthropic_api_key: str = Field(default_factory=lambda: _env("ANTHROPIC_API_KEY"))

    @property
    def database_url(self) -> str:
        return f"sqlite:///{self.database_path}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
