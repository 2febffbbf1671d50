"""Qualitative deep analysis of a scored coin.

Best-effort enrichment: callers treat every error raised here as "no deep
analysis" and still complete the coin.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Sequence

from coinradar.evidence import Facts
from coinradar.llm import LLMClient, parse_json_object
from coinradar.models import Coin, Page

log = logging.getLogger(__name__)

DEEP_MAX_TOKENS = 3000
DEEP_TEMPERATURE = 0.3
EXCERPT_LIMIT = 1_000

# section -> (score field, list fields)
SECTIONS: dict[str, tuple[str, tuple[str, ...]]] = {
    "team_deep_dive": ("credibility_score", ("key_findings", "red_flags")),
    "partnership_analysis": ("legitimacy_score", ("verified_partnerships", "questionable_claims")),
    "competitor_analysis": ("competitive_score", ("main_competitors",)),
    "red_flag_analysis": ("risk_score", ("critical_flags", "minor_concerns")),
    "social_sentiment": ("authenticity_score", ("engagement_quality",)),
    "financial_deep_dive": ("health_score", ("risk_factors",)),
}
# free-text fields besides ``analysis``
_TEXT_FIELDS: dict[str, tuple[str, ...]] = {
    "social_sentiment": ("sentiment_trend",),
    "financial_deep_dive": ("transparency_rating",),
}


class DeepAnalysisError(ValueError):
    """The reply does not contain the six sections."""


SYSTEM_PROMPT = """\
You are a skeptical crypto due-diligence analyst. Using ONLY the evidence \
provided, write six short qualitative analyses of the project. Each section \
has a narrative, a 0-100 sub-score and supporting or refuting lists. Return \
ONLY valid JSON.
"""

USER_PROMPT_TEMPLATE = """\
COIN: {name} ({symbol})

EXTRACTED FACTS:
{facts}

SCORE PILLARS (weighted contributions):
{pillars}

PAGE EXCERPTS:
{excerpts}

Respond with ONLY valid JSON:
{{
  "team_deep_dive": {{"analysis": "...", "credibility_score": 0, "key_findings": [], "red_flags": []}},
  "partnership_analysis": {{"analysis": "...", "legitimacy_score": 0, "verified_partnerships": [], \
"questionable_claims": []}},
  "competitor_analysis": {{"analysis": "...", "competitive_score": 0, "main_competitors": []}},
  "red_flag_analysis": {{"analysis": "...", "risk_score": 0, "critical_flags": [], "minor_concerns": []}},
  "social_sentiment": {{"analysis": "...", "authenticity_score": 0, "sentiment_trend": "...", \
"engagement_quality": []}},
  "financial_deep_dive": {{"analysis": "...", "health_score": 0, "transparency_rating": "...", \
"risk_factors": []}}
}}
"""


def build_prompt(coin: Coin, facts: Facts, pillars: dict[str, float], pages: Sequence[Page]) -> str:
    excerpts = "\n\n".join(
        f"URL: {p.url}\n{(p.content_excerpt or p.content_text or '')[:EXCERPT_LIMIT]}" for p in pages
    ) or "(none)"
    return USER_PROMPT_TEMPLATE.format(
        name=coin.name,
        symbol=coin.symbol,
        facts=json.dumps(facts.model_dump(), indent=1),
        pillars=json.dumps(pillars, indent=1),
        excerpts=excerpts,
    )


def _clamp_score(value: Any) -> int:
    try:
        return int(min(100, max(0, round(float(value)))))
    except (TypeError, ValueError):
        return 0


def normalize_sections(raw: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Validate and normalise the six sections. Raises DeepAnalysisError."""
    missing = [s for s in SECTIONS if not isinstance(raw.get(s), dict)]
    if missing:
        raise DeepAnalysisError(f"missing sections: {', '.join(missing)}")
    out: dict[str, dict[str, Any]] = {}
    for section, (score_field, list_fields) in SECTIONS.items():
        data = raw[section]
        entry: dict[str, Any] = {
            "analysis": str(data.get("analysis") or ""),
            score_field: _clamp_score(data.get(score_field)),
        }
        for name in list_fields:
            value = data.get(name)
            entry[name] = [str(v) for v in value] if isinstance(value, list) else []
        for name in _TEXT_FIELDS.get(section, ()):
            entry[name] = str(data.get(name) or "")
        out[section] = entry
    return out


@dataclass
class DeepAnalysisResult:
    sections: dict[str, dict[str, Any]]
    model: str


async def analyze(
    coin: Coin,
    facts: Facts,
    pillars: dict[str, float],
    pages: Sequence[Page],
    client: LLMClient,
) -> DeepAnalysisResult:
    reply = await client.complete(
        SYSTEM_PROMPT,
        build_prompt(coin, facts, pillars, pages),
        max_tokens=DEEP_MAX_TOKENS,
        temperature=DEEP_TEMPERATURE,
    )
    sections = normalize_sections(parse_json_object(reply))
    log.info("Deep analysis complete for %s (%s)", coin.name, coin.symbol)
    return DeepAnalysisResult(sections=sections, model=client.model)
