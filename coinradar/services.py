"""Shared business logic for the radar API and the pipeline."""
from __future__ import annotations

import json
import logging
from collections import Counter
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from coinradar.db import seed_default_settings
from coinradar.deep_analysis import SECTIONS
from coinradar.models import DEFAULT_WEIGHTS, AppSettings, Coin, DeepAnalysis, Fact, Score
from coinradar.schemas import RunSettings, SettingsUpdate
from coinradar.utils import json_parse

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def get_app_settings(session: Session) -> AppSettings:
    row = session.get(AppSettings, 1)
    return row if row is not None else seed_default_settings(session)


def load_run_settings(session: Session) -> RunSettings:
    """Snapshot the settings row into the value object passed to every stage."""
    row = get_app_settings(session)
    weights = json_parse(row.weights_json, {})
    if not isinstance(weights, dict):
        log.warning("Stored weights are not a mapping, falling back to defaults")
        weights = dict(DEFAULT_WEIGHTS)
    domains = json_parse(row.allow_domains_json, [])
    return RunSettings(
        weights={k: float(v) for k, v in weights.items() if isinstance(v, (int, float))},
        hybrid_mode=bool(row.hybrid_mode),
        allow_domains=[d for d in domains if isinstance(d, str)] if isinstance(domains, list) else [],
        strategy_version=row.strategy_version or "",
        user_api_key=(row.llm_api_key or "").strip() or None,
    )


def weight_warnings(weights: dict[str, float]) -> list[str]:
    warnings: list[str] = []
    total = sum(weights.values())
    if round(total, 6) != 100:
        warnings.append(f"Weights sum to {total:g}, not 100; scores will not span 0-100")
    unknown = sorted(set(weights) - set(DEFAULT_WEIGHTS))
    if unknown:
        warnings.append(f"Unknown weight keys ignored by the scorer: {', '.join(unknown)}")
    return warnings


def settings_out(row: AppSettings) -> dict:
    weights = json_parse(row.weights_json, {})
    weights = weights if isinstance(weights, dict) else {}
    return {
        "strategy_version": row.strategy_version,
        "weights": weights,
        "hybrid_mode": bool(row.hybrid_mode),
        "allow_domains": json_parse(row.allow_domains_json, []),
        "has_llm_api_key": bool(row.llm_api_key),
        "weights_total": sum(v for v in weights.values() if isinstance(v, (int, float))),
        "warnings": weight_warnings({k: v for k, v in weights.items() if isinstance(v, (int, float))}),
    }


def update_settings(session: Session, body: SettingsUpdate) -> AppSettings:
    """Apply a partial settings update (caller must commit)."""
    row = get_app_settings(session)
    if body.strategy_version is not None:
        row.strategy_version = body.strategy_version
    if body.weights is not None:
        row.weights_json = json.dumps(body.weights)
        for warning in weight_warnings(body.weights):
            log.warning("Settings: %s", warning)
    if body.hybrid_mode is not None:
        row.hybrid_mode = body.hybrid_mode
    if body.allow_domains is not None:
        row.allow_domains_json = json.dumps([d.strip().lower() for d in body.allow_domains if d.strip()])
    if body.llm_api_key is not None:
        row.llm_api_key = body.llm_api_key.strip() or None
    return row


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def latest_fact(coin: Coin) -> Fact | None:
    return max(coin.facts, key=lambda f: (f.created_at, f.id), default=None)


def latest_score(coin: Coin) -> Score | None:
    return max(coin.scores, key=lambda s: (s.as_of, s.id), default=None)


def latest_deep_analysis(coin: Coin) -> DeepAnalysis | None:
    return max(coin.deep_analyses, key=lambda d: (d.created_at, d.id), default=None)


def score_out(score: Score) -> dict:
    return {
        "id": score.id, "as_of": score.as_of.isoformat(), "overall": score.overall,
        "overall_cap": score.overall_cap, "confidence": score.confidence,
        "pillars": json_parse(score.pillars_json, {}), "penalties": score.penalties,
        "red_flags": json_parse(score.red_flags_json, []),
        "green_flags": json_parse(score.green_flags_json, []),
        "summary": score.summary, "strategy_version": score.strategy_version,
    }


def deep_analysis_out(row: DeepAnalysis) -> dict:
    out: dict[str, Any] = {s: json_parse(getattr(row, f"{s}_json"), {}) for s in SECTIONS}
    out["llm_model"] = row.llm_model
    out["created_at"] = row.created_at.isoformat()
    return out


def coin_summary(coin: Coin) -> dict:
    latest = latest_score(coin)
    return {
        "id": coin.id, "name": coin.name, "symbol": coin.symbol, "source": coin.source,
        "status": coin.status, "coingecko_coin_url": coin.coingecko_coin_url,
        "manual_url": coin.manual_url, "official_links": coin.official_links,
        "first_seen": _iso(coin.first_seen), "updated_at": _iso(coin.updated_at),
        "retry_count": coin.retry_count,
        "overall": latest.overall if latest else None,
        "confidence": latest.confidence if latest else None,
    }


def coin_detail(coin: Coin) -> dict:
    base = coin_summary(coin)
    fact = latest_fact(coin)
    deep = latest_deep_analysis(coin)
    base["pages"] = [
        {"id": p.id, "url": p.url, "link_type": p.link_type, "status": p.status,
         "http_status": p.http_status, "content_excerpt": p.content_excerpt,
         "content_hash": p.content_hash, "fetched_at": _iso(p.fetched_at)}
        for p in sorted(coin.pages, key=lambda p: p.id)
    ]
    base["facts"] = json_parse(fact.extracted_json, {}) if fact else None
    base["scores"] = [score_out(s) for s in sorted(coin.scores, key=lambda s: (s.as_of, s.id))]
    base["deep_analysis"] = deep_analysis_out(deep) if deep else None
    base["status_events"] = [
        {"from_status": e.from_status, "to_status": e.to_status, "reason": e.reason,
         "created_at": e.created_at.isoformat()}
        for e in sorted(coin.status_events, key=lambda e: e.id)
    ]
    return base


def list_coins(session: Session, *, status: str | None = None, search: str | None = None) -> list[dict]:
    stmt = select(Coin).order_by(Coin.first_seen.desc())
    if status:
        stmt = stmt.where(Coin.status.in_([s.strip() for s in status.split(",") if s.strip()]))
    items = [coin_summary(c) for c in session.execute(stmt).scalars().all()]
    if search:
        q = search.lower()
        items = [i for i in items if q in i["name"].lower() or q in i["symbol"].lower()]
    return items


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


def delete_coin(session: Session, coin: Coin) -> None:
    """Hard-delete a coin and all of its children (caller must commit)."""
    log.info("Deleting coin %s (%s)", coin.name, coin.id)
    session.delete(coin)


def compute_stats(session: Session) -> dict:
    coins = session.execute(select(Coin)).scalars().all()
    by_status: Counter[str] = Counter()
    scored = deep = 0
    latest_overall: list[float] = []
    for coin in coins:
        by_status[coin.status] += 1
        latest = latest_score(coin)
        if latest is not None:
            scored += 1
            latest_overall.append(latest.overall)
        if coin.deep_analyses:
            deep += 1
    return {
        "total": len(coins), "by_status": dict(by_status), "scored": scored,
        "deep_analyzed": deep,
        "average_score": round(sum(latest_overall) / len(latest_overall), 2) if latest_overall else None,
    }
