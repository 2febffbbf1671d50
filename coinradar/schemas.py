"""Pydantic request/response schemas for the radar API."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RunRequest(BaseModel):
    manual_url: str | None = None
    reset_coin_id: str | None = None
    reset_all_stuck: bool = False

    @field_validator("manual_url", "reset_coin_id")
    @classmethod
    def blank_is_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None


class RunSettings(BaseModel):
    """Business settings snapshot handed to every pipeline stage."""

    model_config = ConfigDict(frozen=True)

    weights: dict[str, float] = {}
    hybrid_mode: bool = False
    allow_domains: list[str] = []
    strategy_version: str = "web_only_v1"
    user_api_key: str | None = None


class CoinOut(BaseModel):
    id: str
    name: str
    symbol: str
    source: str
    status: str
    coingecko_coin_url: str | None = None
    manual_url: str | None = None
    official_links: dict[str, str] = {}
    first_seen: str | None = None
    updated_at: str | None = None
    retry_count: int = 0
    overall: float | None = None
    confidence: float | None = None


class PageOut(BaseModel):
    id: int
    url: str
    link_type: str
    status: str
    http_status: int | None = None
    content_excerpt: str = ""
    content_hash: str | None = None
    fetched_at: str | None = None


class ScoreOut(BaseModel):
    id: int
    as_of: str
    overall: float
    overall_cap: float | None = None
    confidence: float
    pillars: dict[str, float] = {}
    penalties: float = 0.0
    red_flags: list[str] = []
    green_flags: list[str] = []
    summary: str = ""
    strategy_version: str = ""


class StatusEventOut(BaseModel):
    from_status: str
    to_status: str
    reason: str
    created_at: str


class CoinDetail(CoinOut):
    pages: list[PageOut] = []
    facts: dict[str, Any] | None = None
    scores: list[ScoreOut] = []
    deep_analysis: dict[str, Any] | None = None
    status_events: list[StatusEventOut] = []


class SettingsOut(BaseModel):
    strategy_version: str
    weights: dict[str, float]
    hybrid_mode: bool
    allow_domains: list[str]
    has_llm_api_key: bool
    weights_total: float
    warnings: list[str] = []


class SettingsUpdate(BaseModel):
    strategy_version: str | None = None
    weights: dict[str, float] | None = None
    hybrid_mode: bool | None = None
    allow_domains: list[str] | None = None
    llm_api_key: str | None = Field(default=None, description="Empty string clears the stored key")

    @field_validator("weights")
    @classmethod
    def weights_non_negative(cls, v: dict[str, float] | None) -> dict[str, float] | None:
        if v is None:
            return v
        for key, weight in v.items():
            if weight < 0:
                raise ValueError(f"weight for {key!r} must be non-negative")
        return v


class StatsOut(BaseModel):
    total: int
    by_status: dict[str, int]
    scored: int
    deep_analyzed: int
    average_score: float | None = None
