from __future__ import annotations

import json
import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from coinradar.utils import json_parse, utcnow


class Base(DeclarativeBase):
    pass


class CoinStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    DEEP_ANALYSIS_PENDING = "deep_analysis_pending"
    ANALYZED = "analyzed"
    FAILED = "failed"
    INSUFFICIENT_DATA = "insufficient_data"
    RETRY_PENDING = "retry_pending"


class PageStatus(StrEnum):
    PENDING = "pending"
    FETCHED = "fetched"
    FAILED = "failed"
    EMPTY = "empty"
    INVALID_CONTENT = "invalid_content"
    BLOCKED = "blocked"
    PDF_DETECTED = "pdf_detected"
    JS_EMPTY = "js_empty"
    INSUFFICIENT_CONTENT = "insufficient_content"


class CoinSource(StrEnum):
    AUTO = "auto"
    MANUAL = "manual"


DEFAULT_WEIGHTS: dict[str, int] = {
    "security_rug_pull": 15,
    "tokenomics": 10,
    "team_transparency": 20,
    "product_roadmap": 20,
    "onchain_traction": 10,
    "market_narrative": 15,
    "community": 10,
}

DEFAULT_ALLOW_DOMAINS: list[str] = ["coingecko.com", "github.com", "twitter.com", "medium.com", "docs."]


def _new_id() -> str:
    return str(uuid.uuid4())


class Coin(Base):
    __tablename__ = "coins"
    __table_args__ = (UniqueConstraint("name", "symbol", name="uq_coins_name_symbol"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    symbol: Mapped[str] = mapped_column(String(50), nullable=False)
    first_seen: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    source: Mapped[str] = mapped_column(String(20), default=CoinSource.AUTO)
    coingecko_coin_url: Mapped[str | None] = mapped_column(String(500), unique=True, nullable=True)
    manual_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    official_links_json: Mapped[str] = mapped_column(Text, default="{}")
    status: Mapped[str] = mapped_column(String(30), default=CoinStatus.PENDING, index=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    retry_since: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    pages: Mapped[list[Page]] = relationship("Page", back_populates="coin", cascade="all, delete-orphan")
    facts: Mapped[list[Fact]] = relationship("Fact", back_populates="coin", cascade="all, delete-orphan")
    scores: Mapped[list[Score]] = relationship("Score", back_populates="coin", cascade="all, delete-orphan")
    deep_analyses: Mapped[list[DeepAnalysis]] = relationship(
        "DeepAnalysis", back_populates="coin", cascade="all, delete-orphan",
    )
    status_events: Mapped[list[StatusEvent]] = relationship(
        "StatusEvent", back_populates="coin", cascade="all, delete-orphan",
    )

    @property
    def official_links(self) -> dict[str, str]:
        links = json_parse(self.official_links_json)
        return links if isinstance(links, dict) else {}

    @official_links.setter
    def official_links(self, links: dict[str, str]) -> None:
        self.official_links_json = json.dumps(links)


class Page(Base):
    __tablename__ = "pages"
    __table_args__ = (UniqueConstraint("coin_id", "url", name="uq_pages_coin_url"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    coin_id: Mapped[str] = mapped_column(String(36), ForeignKey("coins.id", ondelete="CASCADE"), nullable=False, index=True)
    url: Mapped[str] = mapped_column(String(1000), nullable=False)
    link_type: Mapped[str] = mapped_column(String(30), default="")
    status: Mapped[str] = mapped_column(String(30), default=PageStatus.PENDING, index=True)
    http_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    content_text: Mapped[str] = mapped_column(Text, default="")
    content_excerpt: Mapped[str] = mapped_column(Text, default="")
    content_hash: Mapped[str | None] = mapped_column(String(16), nullable=True, index=True)
    fetched_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    coin: Mapped[Coin] = relationship("Coin", back_populates="pages")


class Fact(Base):
    __tablename__ = "facts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    coin_id: Mapped[str] = mapped_column(String(36), ForeignKey("coins.id", ondelete="CASCADE"), nullable=False, index=True)
    as_of: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    extracted_json: Mapped[str] = mapped_column(Text, default="{}")  # evidence.Facts payload
    sources_json: Mapped[str] = mapped_column(Text, default="{}")
    llm_model: Mapped[str] = mapped_column(String(100), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    coin: Mapped[Coin] = relationship("Coin", back_populates="facts")


class Score(Base):
    __tablename__ = "scores"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    coin_id: Mapped[str] = mapped_column(String(36), ForeignKey("coins.id", ondelete="CASCADE"), nullable=False, index=True)
    as_of: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    overall: Mapped[float] = mapped_column(Float, nullable=False)
    overall_cap: Mapped[float | None] = mapped_column(Float, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    pillars_json: Mapped[str] = mapped_column(Text, default="{}")
    penalties: Mapped[float] = mapped_column(Float, default=0.0)
    red_flags_json: Mapped[str] = mapped_column(Text, default="[]")
    green_flags_json: Mapped[str] = mapped_column(Text, default="[]")
    summary: Mapped[str] = mapped_column(Text, default="")
    strategy_version: Mapped[str] = mapped_column(String(50), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    coin: Mapped[Coin] = relationship("Coin", back_populates="scores")


class DeepAnalysis(Base):
    __tablename__ = "deep_analysis"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    coin_id: Mapped[str] = mapped_column(String(36), ForeignKey("coins.id", ondelete="CASCADE"), nullable=False, index=True)
    team_deep_dive_json: Mapped[str] = mapped_column(Text, default="{}")
    partnership_analysis_json: Mapped[str] = mapped_column(Text, default="{}")
    competitor_analysis_json: Mapped[str] = mapped_column(Text, default="{}")
    red_flag_analysis_json: Mapped[str] = mapped_column(Text, default="{}")
    social_sentiment_json: Mapped[str] = mapped_column(Text, default="{}")
    financial_deep_dive_json: Mapped[str] = mapped_column(Text, default="{}")
    llm_model: Mapped[str] = mapped_column(String(100), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    coin: Mapped[Coin] = relationship("Coin", back_populates="deep_analyses")


class StatusEvent(Base):
    __tablename__ = "status_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    coin_id: Mapped[str] = mapped_column(String(36), ForeignKey("coins.id", ondelete="CASCADE"), nullable=False, index=True)
    from_status: Mapped[str] = mapped_column(String(30), nullable=False)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    reason: Mapped[str] = mapped_column(String(300), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    coin: Mapped[Coin] = relationship("Coin", back_populates="status_events")


class AppSettings(Base):
    """Singleton row (id=1) holding the user-editable pipeline settings."""

    __tablename__ = "settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    strategy_version: Mapped[str] = mapped_column(String(50), default="web_only_v1")
    weights_json: Mapped[str] = mapped_column(Text, default=lambda: json.dumps(DEFAULT_WEIGHTS))
    hybrid_mode: Mapped[bool] = mapped_column(Boolean, default=False)
    allow_domains_json: Mapped[str] = mapped_column(Text, default=lambda: json.dumps(DEFAULT_ALLOW_DOMAINS))
    llm_api_key: Mapped[str | None] = mapped_column(String(300), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
