"""Deterministic scoring of extracted facts.

Architecture
------------
``score(facts, weights)`` is a pure function: same facts and weights always
give the same result, no clock, no randomness, no I/O.

1. Claims are grouped by the seven pillars.
2. Each pillar gets a 0-100 sub-score from a rule table over claim types
   (points for the presence of a kind of evidence, per-item points with a
   ceiling for countable evidence, and partner bands for traction).
3. Contribution = ``sub_score / 100 * weight`` keyed by the weight name.
4. Base = sum of contributions; penalties from red flags are added; a hard
   cap of 20 applies when contradictions or misleading claims exist.
5. The final value is clamped to [0, 100].

Confidence blends proof coverage, source-domain diversity and a fixed
freshness placeholder.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from coinradar.evidence import PILLAR_WEIGHT_KEYS, PILLARS, Claim, Facts
from coinradar.utils import host_of

log = logging.getLogger(__name__)

CAP_ON_CONTRADICTION = 20.0
FRESHNESS_PLACEHOLDER = 0.5
DOMAIN_SATURATION = 3

_NEGATIVE_VALUES = {"", "no", "false", "none", "unknown", "n/a", "na", "null", "not found", "0"}

PARTNER_BANDS: tuple[int, ...] = (0, 25, 45, 65, 85)
INTEGRATION_POINTS = 5
INTEGRATION_CAP = 15
OTHER_EVIDENCE_POINTS = 5
OTHER_EVIDENCE_CAP = 10

PENALTY_SEVERE = -15.0
PENALTY_MODERATE = -10.0
PENALTY_GENERIC = -5.0
PENALTY_AUDIT_NO_SOURCE = -3.0
PENALTY_COPYCAT = -7.0

_SEVERE_RE = re.compile(
    r"guarante\w*.*\b(profit|return|gain|income)s?\b|\d+(\.\d+)?\s*%\s*(profit|return|roi|gain)s?\b",
    re.IGNORECASE,
)
_MODERATE_RE = re.compile(
    r"risk[\s-]?free|passive income|can'?t lose|cannot lose|no risk|zero risk",
    re.IGNORECASE,
)


# ---------------------------------------------------------------------------
# Rule table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Rule:
    label: str
    keywords: tuple[str, ...]
    points: int
    per_item: bool = False
    cap: int | None = None

    def matches(self, claim_type: str) -> bool:
        return any(k in claim_type for k in self.keywords)

    def award(self, count: int) -> int:
        if count <= 0:
            return 0
        if not self.per_item:
            return self.points
        return min(self.points * count, self.cap if self.cap is not None else self.points * count)


PILLAR_RULES: dict[str, tuple[Rule, ...]] = {
    "security": (
        Rule("audit", ("audit",), 60),
        Rule("liquidity lock", ("liquidity_lock", "lp_lock", "locked_liquidity", "liquidity_locked"), 20),
        Rule("verified contract", ("renounce", "verified_contract", "contract_verified", "contract_verification"), 20),
        Rule("bug bounty", ("bug_bounty", "bounty"), 10),
        Rule("KYC", ("kyc",), 10),
    ),
    "team": (
        Rule("doxxed team", ("doxx", "doxed", "public_team", "identified_team"), 70),
        Rule("team members", ("member", "founder", "cofounder", "co_founder"), 10, per_item=True, cap=20),
        Rule("team background", ("advisor", "experience", "linkedin", "background"), 10),
    ),
    "tokenomics": (
        Rule("supply", ("supply",), 25),
        Rule("distribution", ("distribution", "allocation"), 25),
        Rule("vesting", ("vesting", "unlock"), 25),
        Rule("utility", ("utility", "use_of_token"), 15),
        Rule("tax/fees", ("tax", "fee"), 10),
    ),
    "product": (
        Rule("live product", ("mvp", "live", "mainnet", "launched", "product_available"), 50),
        Rule("roadmap", ("roadmap", "milestone"), 25),
        Rule("documentation", ("whitepaper", "docs", "documentation"), 15),
        Rule("code", ("github", "code", "repo", "open_source"), 10),
    ),
    "market": (
        Rule("narrative", ("narrative", "sector", "category"), 40),
        Rule("competitors", ("competitor", "competition"), 20),
        Rule("listing", ("listing", "exchange", "listed"), 25),
        Rule("use case", ("use_case", "usecase", "target_market"), 15),
    ),
    "community": (
        Rule("channels", ("channel", "twitter", "telegram", "discord", "social"), 20, per_item=True, cap=60),
        Rule("engagement", ("engagement", "follower", "members_count", "community_size"), 40),
    ),
}


def _normalize_type(value: str) -> str:
    return re.sub(r"[\s-]+", "_", value.strip().lower())


def is_affirmative(value: Any) -> bool:
    """Whether a claim value asserts the evidence rather than denying it."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value > 0
    if isinstance(value, (list, tuple, dict)):
        return len(value) > 0
    return str(value).strip().lower() not in _NEGATIVE_VALUES


@dataclass
class PillarScore:
    pillar: str
    sub_score: int
    matched: list[str] = field(default_factory=list)


def _rule_score(pillar: str, claims: list[Claim]) -> PillarScore:
    rules = PILLAR_RULES.get(pillar, ())
    counts: dict[str, int] = {}
    other = 0
    for claim in claims:
        if not is_affirmative(claim.value):
            continue
        ctype = _normalize_type(claim.type)
        rule = next((r for r in rules if r.matches(ctype)), None)
        if rule is None:
            other += 1
        else:
            counts[rule.label] = counts.get(rule.label, 0) + 1
    total = sum(r.award(counts.get(r.label, 0)) for r in rules)
    total += min(other * OTHER_EVIDENCE_POINTS, OTHER_EVIDENCE_CAP)
    matched = [r.label for r in rules if counts.get(r.label)]
    return PillarScore(pillar=pillar, sub_score=min(total, 100), matched=matched)


def _traction_score(claims: list[Claim], facts: Facts) -> PillarScore:
    affirmed = [c for c in claims if is_affirmative(c.value)]
    partner_claims = sum(1 for c in affirmed if "partner" in _normalize_type(c.type))
    integration_claims = sum(1 for c in affirmed if "integration" in _normalize_type(c.type))
    partners = max(partner_claims, len(facts.on_chain_traction.partners))
    integrations = max(integration_claims, len(facts.on_chain_traction.integrations))
    band = PARTNER_BANDS[min(partners, len(PARTNER_BANDS) - 1)]
    bonus = min(integrations * INTEGRATION_POINTS, INTEGRATION_CAP)
    other = len(affirmed) - partner_claims - integration_claims
    total = band + bonus + min(max(other, 0) * OTHER_EVIDENCE_POINTS, OTHER_EVIDENCE_CAP)
    matched = []
    if partners:
        matched.append(f"{partners} partner(s)")
    if integrations:
        matched.append(f"{integrations} integration(s)")
    return PillarScore(pillar="traction", sub_score=min(total, 100), matched=matched)


def pillar_sub_scores(facts: Facts) -> dict[str, PillarScore]:
    grouped: dict[str, list[Claim]] = {p: [] for p in PILLARS}
    for claim in facts.claims:
        if claim.pillar in grouped:
            grouped[claim.pillar].append(claim)
    out: dict[str, PillarScore] = {}
    for pillar, claims in grouped.items():
        if not claims:
            out[pillar] = PillarScore(pillar=pillar, sub_score=0)
        elif pillar == "traction":
            out[pillar] = _traction_score(claims, facts)
        else:
            out[pillar] = _rule_score(pillar, claims)
    return out


# ---------------------------------------------------------------------------
# Penalties
# ---------------------------------------------------------------------------


def classify_guarantee(phrase: str) -> str:
    if _SEVERE_RE.search(phrase):
        return "severe"
    if _MODERATE_RE.search(phrase):
        return "moderate"
    return "generic"


_GUARANTEE_PENALTIES = {"severe": PENALTY_SEVERE, "moderate": PENALTY_MODERATE, "generic": PENALTY_GENERIC}


def _penalties(facts: Facts) -> tuple[float, list[str]]:
    total = 0.0
    flags: list[str] = []
    red = facts.red_flags

    by_category: dict[str, list[str]] = {}
    for phrase in red.guaranteed_returns:
        by_category.setdefault(classify_guarantee(phrase), []).append(phrase)
    for category in ("severe", "moderate", "generic"):
        phrases = by_category.get(category)
        if not phrases:
            continue
        amount = _GUARANTEE_PENALTIES[category]
        total += amount
        quoted = ", ".join(f'"{p}"' for p in phrases[:3])
        flags.append(f"Guaranteed-returns language ({category}, {amount:g}): {quoted}")

    if red.audit_claim_no_source:
        total += PENALTY_AUDIT_NO_SOURCE
        flags.append(f"Audit claimed without a verifiable source ({PENALTY_AUDIT_NO_SOURCE:g})")

    copycat = red.suspected_copycat
    if copycat is not None and copycat.brand:
        total += PENALTY_COPYCAT
        reason = f": {copycat.reason}" if copycat.reason else ""
        flags.append(f"Suspected copycat of {copycat.brand} ({PENALTY_COPYCAT:g}){reason}")

    return total, flags


# ---------------------------------------------------------------------------
# Confidence
# ---------------------------------------------------------------------------


def compute_confidence(facts: Facts) -> float:
    claims = facts.claims
    if not claims:
        return 0.0
    with_proof = sum(1 for c in claims if c.proof_urls)
    coverage = with_proof / len(claims)
    domains = {host_of(u) for c in claims for u in c.proof_urls} - {""}
    diversity = min(len(domains), DOMAIN_SATURATION) / DOMAIN_SATURATION
    value = 0.6 * coverage + 0.2 * diversity + 0.2 * FRESHNESS_PLACEHOLDER
    return round(min(max(value, 0.0), 1.0), 2)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


@dataclass
class ScoreResult:
    overall: float
    overall_cap: float | None
    confidence: float
    pillars: dict[str, float]
    penalties: float
    red_flags: list[str]
    green_flags: list[str]
    summary: str
    sub_scores: dict[str, int] = field(default_factory=dict)


def _weight(weights: dict[str, Any], key: str) -> float:
    try:
        value = float(weights.get(key, 0) or 0)
    except (TypeError, ValueError):
        return 0.0
    return value if value > 0 else 0.0


def score(facts: Facts, weights: dict[str, Any]) -> ScoreResult:
    """Score *facts* against the pillar *weights* (keyed by weight name)."""
    subs = pillar_sub_scores(facts)

    pillars: dict[str, float] = {}
    green_flags: list[str] = []
    for pillar in PILLARS:
        key = PILLAR_WEIGHT_KEYS[pillar]
        sub = subs[pillar]
        pillars[key] = round(sub.sub_score / 100 * _weight(weights, key), 2)
        if sub.sub_score >= 60:
            evidence = ", ".join(sub.matched) or "supporting claims"
            green_flags.append(f"Strong {pillar} evidence ({sub.sub_score}/100): {evidence}")
    base = sum(subs[p].sub_score / 100 * _weight(weights, PILLAR_WEIGHT_KEYS[p]) for p in PILLARS)

    penalties, red_flags = _penalties(facts)
    raw = base + penalties

    overall_cap: float | None = None
    for contradiction in facts.contradictions:
        ids = ", ".join(contradiction.claim_ids) or "unspecified claims"
        red_flags.append(f"Contradiction between {ids}: {contradiction.reason or 'no reason given'}")
    for misleading in facts.red_flags.misleading_claims:
        red_flags.append(f"Misleading claim {misleading.claim_id or '?'}: {misleading.reason or 'no reason given'}")
    if facts.contradictions or facts.red_flags.misleading_claims:
        overall_cap = CAP_ON_CONTRADICTION
        red_flags.append(f"Score capped at {CAP_ON_CONTRADICTION:g} due to contradictory or misleading claims")
        raw = min(overall_cap, raw)

    overall = round(min(max(raw, 0.0), 100.0), 2)
    confidence = compute_confidence(facts)
    covered = sum(1 for p in PILLARS if subs[p].sub_score > 0)
    summary = (
        f"Score: {overall:g}/100 ({confidence:.0%} confidence); "
        f"{len(facts.claims)} claim(s) covering {covered}/{len(PILLARS)} pillars"
    )
    if penalties:
        summary += f"; penalties {penalties:g}"
    if overall_cap is not None:
        summary += f"; capped at {overall_cap:g}"

    return ScoreResult(
        overall=overall,
        overall_cap=overall_cap,
        confidence=confidence,
        pillars=pillars,
        penalties=penalties,
        red_flags=red_flags,
        green_flags=green_flags,
        summary=summary,
        sub_scores={p: subs[p].sub_score for p in PILLARS},
    )
