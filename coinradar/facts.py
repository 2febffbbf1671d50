"""LLM-backed fact extraction for a coin's fetched pages."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Sequence

from pydantic import ValidationError

from coinradar.evidence import PILLARS, Facts, FactsShapeError, validate_facts
from coinradar.llm import JSONPayloadError, LLMClient, parse_json_object
from coinradar.models import Coin, Page, PageStatus

log = logging.getLogger(__name__)

PAGE_TEXT_LIMIT = 10_000
FACTS_MAX_TOKENS = 2000
FACTS_TEMPERATURE = 0.2


class ExtractionError(Exception):
    """The model reply could not be turned into a usable claims payload."""


SYSTEM_PROMPT = """\
You are a factual extractor for newly listed crypto projects. Return ONLY a \
JSON object in the requested schema. Cite every claim with proof_urls taken \
from the PAGES section and a short verbatim excerpt. Do not interpret, do not \
score, do not invent URLs. Mark unknown values as "unknown".
"""

USER_PROMPT_TEMPLATE = """\
COIN: {name} ({symbol}) - {detail_url}

PAGES:
{pages}

TASK: Extract structured facts and return ONLY JSON in this exact schema:
{{
  "claims": [
    {{"id": "c1", "pillar": "<{pillars}>", "type": "<e.g. audit, doxxed_team, total_supply, \
vesting, roadmap, mainnet_live, narrative, competitors, telegram_channel, partnership, integration>",
     "value": "<string|number|boolean>", "proof_urls": ["<url>"], "excerpt": "<=300 chars", \
"confidence_local": 0.0}}
  ],
  "on_chain_traction": {{"partners": [], "integrations": [], "tvl": null, "holders": null, "proof_urls": []}},
  "contradictions": [{{"claim_ids": ["c1", "c2"], "reason": "...", "proof_urls": []}}],
  "red_flags": {{
    "guaranteed_returns": ["<verbatim phrase promising returns>"],
    "audit_claim_no_source": false,
    "suspected_copycat": {{"brand": "...", "reason": "...", "proof_urls": []}},
    "misleading_claims": [{{"claim_id": "c1", "reason": "..."}}]
  }}
}}

Use null for suspected_copycat when there is no copycat signal. Every claim \
MUST carry at least one proof URL from the pages above.
"""


def usable_pages(pages: Sequence[Page]) -> list[Page]:
    return [p for p in pages if p.status == PageStatus.FETCHED and (p.content_text or "").strip()]


def build_prompt(coin: Coin, pages: Sequence[Page]) -> str:
    sections = [
        f"URL: {p.url}\nTYPE: {p.link_type or 'page'}\nCONTENT: {p.content_text[:PAGE_TEXT_LIMIT]}"
        for p in pages
    ]
    return USER_PROMPT_TEMPLATE.format(
        name=coin.name,
        symbol=coin.symbol,
        detail_url=coin.coingecko_coin_url or coin.manual_url or "",
        pages="\n\n".join(sections),
        pillars="|".join(PILLARS),
    )


def parse_facts(text: str) -> Facts:
    """Decode a model reply into :class:`Facts`; ExtractionError if unusable."""
    try:
        raw: Any = parse_json_object(text)
        return validate_facts(raw)
    except (JSONPayloadError, FactsShapeError, ValidationError) as exc:
        raise ExtractionError(str(exc)) from exc


@dataclass
class ExtractedFacts:
    facts: Facts
    sources: list[str]
    model: str


async def extract_facts(coin: Coin, pages: Sequence[Page], client: LLMClient) -> ExtractedFacts:
    """Run one extraction call over *pages*.

    The caller guarantees at least one usable page. LLMCallError propagates
    from the client; unusable replies raise :class:`ExtractionError`.
    """
    reply = await client.complete(
        SYSTEM_PROMPT,
        build_prompt(coin, pages),
        max_tokens=FACTS_MAX_TOKENS,
        temperature=FACTS_TEMPERATURE,
    )
    facts = parse_facts(reply)
    log.info("Extracted %d claim(s) for %s (%s)", len(facts.claims), coin.name, coin.symbol)
    return ExtractedFacts(facts=facts, sources=[p.url for p in pages], model=client.model)
