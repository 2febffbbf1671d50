"""Claims schema shared by the fact extractor, the scorer and the deep analyzer.

``validate_facts`` is the one place where raw LLM output becomes a
:class:`Facts` value: absent sections get empty defaults and claims that
cannot be traced to a source (no proof URL) or to a known pillar are dropped.
"""
from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

log = logging.getLogger(__name__)

PILLARS: tuple[str, ...] = ("security", "tokenomics", "team", "product", "market", "community", "traction")

PILLAR_WEIGHT_KEYS: dict[str, str] = {
    "security": "security_rug_pull",
    "tokenomics": "tokenomics",
    "team": "team_transparency",
    "product": "product_roadmap",
    "traction": "onchain_traction",
    "market": "market_narrative",
    "community": "community",
}


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip()]


def _text(value: Any) -> str:
    # models put null or numbers where a string belongs
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Claim(_Lenient):
    id: str = ""
    pillar: str = ""
    type: str = ""
    value: Any = None
    proof_urls: list[str] = []
    excerpt: str = ""
    confidence_local: float = 0.5

    @field_validator("id", "pillar", "type", "excerpt", mode="before")
    @classmethod
    def _coerce_str(cls, v: Any) -> str:
        return _text(v)

    @field_validator("proof_urls", mode="before")
    @classmethod
    def _coerce_urls(cls, v: Any) -> list[str]:
        return _str_list(v)

    @field_validator("confidence_local", mode="before")
    @classmethod
    def _coerce_confidence(cls, v: Any) -> float:
        try:
            return min(1.0, max(0.0, float(v)))
        except (TypeError, ValueError):
            return 0.5


class OnChainTraction(_Lenient):
    partners: list[str] = []
    integrations: list[str] = []
    tvl: Any = None
    holders: Any = None
    proof_urls: list[str] = []

    @field_validator("partners", "integrations", "proof_urls", mode="before")
    @classmethod
    def _lists(cls, v: Any) -> list[str]:
        return _str_list(v)


class Contradiction(_Lenient):
    claim_ids: list[str] = []
    reason: str = ""
    proof_urls: list[str] = []

    @field_validator("claim_ids", "proof_urls", mode="before")
    @classmethod
    def _lists(cls, v: Any) -> list[str]:
        return _str_list(v)

    @field_validator("reason", mode="before")
    @classmethod
    def _reason(cls, v: Any) -> str:
        return _text(v)


class SuspectedCopycat(_Lenient):
    brand: str = ""
    reason: str = ""
    proof_urls: list[str] = []

    @field_validator("brand", "reason", mode="before")
    @classmethod
    def _texts(cls, v: Any) -> str:
        return _text(v)

    @field_validator("proof_urls", mode="before")
    @classmethod
    def _lists(cls, v: Any) -> list[str]:
        return _str_list(v)


class MisleadingClaim(_Lenient):
    claim_id: str = ""
    reason: str = ""

    @field_validator("claim_id", "reason", mode="before")
    @classmethod
    def _texts(cls, v: Any) -> str:
        return _text(v)


class RedFlags(_Lenient):
    guaranteed_returns: list[str] = []
    audit_claim_no_source: bool = False
    suspected_copycat: SuspectedCopycat | None = None
    misleading_claims: list[MisleadingClaim] = []

    @field_validator("guaranteed_returns", mode="before")
    @classmethod
    def _phrases(cls, v: Any) -> list[str]:
        return _str_list(v)

    @field_validator("audit_claim_no_source", mode="before")
    @classmethod
    def _flag(cls, v: Any) -> bool:
        if isinstance(v, str):
            return v.strip().lower() in ("true", "yes", "1")
        return bool(v)

    @field_validator("suspected_copycat", mode="before")
    @classmethod
    def _copycat(cls, v: Any) -> Any:
        return v if isinstance(v, dict) else None

    @field_validator("misleading_claims", mode="before")
    @classmethod
    def _misleading(cls, v: Any) -> list[Any]:
        return [m for m in v if isinstance(m, dict)] if isinstance(v, list) else []


class Facts(_Lenient):
    claims: list[Claim] = []
    on_chain_traction: OnChainTraction = Field(default_factory=OnChainTraction)
    contradictions: list[Contradiction] = []
    red_flags: RedFlags = Field(default_factory=RedFlags)

    def source_urls(self) -> list[str]:
        """Every distinct proof URL referenced anywhere in the payload, in order."""
        seen: dict[str, None] = {}
        for claim in self.claims:
            for url in claim.proof_urls:
                seen.setdefault(url, None)
        for url in self.on_chain_traction.proof_urls:
            seen.setdefault(url, None)
        return list(seen)


class FactsShapeError(ValueError):
    """The payload has no usable ``claims`` list."""


def _contradictions(items: list[Any]) -> list[Contradiction]:
    kept: list[Contradiction] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            kept.append(Contradiction.model_validate(item))
        except ValidationError as exc:
            log.info("Dropped malformed contradiction: %s", exc.error_count())
    return kept


def validate_facts(raw: Any) -> Facts:
    """Normalise a decoded LLM payload into :class:`Facts`.

    Raises :class:`FactsShapeError` when ``raw`` is not an object or its
    ``claims`` member is missing or not a list. Individual claims that do
    not validate are dropped rather than failing the whole payload.
    """
    if not isinstance(raw, dict):
        raise FactsShapeError("facts payload is not a JSON object")
    claims = raw.get("claims")
    if not isinstance(claims, list):
        raise FactsShapeError("facts payload has no claims list")

    kept: list[Claim] = []
    dropped = 0
    for i, item in enumerate(claims):
        if not isinstance(item, dict):
            dropped += 1
            continue
        try:
            claim = Claim.model_validate(item)
        except ValidationError:
            dropped += 1
            continue
        claim.id = claim.id or f"c{i + 1}"
        claim.pillar = claim.pillar.lower()
        if claim.pillar not in PILLARS or not claim.proof_urls:
            dropped += 1
            continue
        kept.append(claim)
    if dropped:
        log.info("Dropped %d unusable claim(s)", dropped)

    def _section(key: str, default: Any) -> Any:
        value = raw.get(key)
        return value if isinstance(value, type(default)) else default

    return Facts(
        claims=kept,
        on_chain_traction=OnChainTraction.model_validate(_section("on_chain_traction", {})),
        contradictions=_contradictions(_section("contradictions", [])),
        red_flags=RedFlags.model_validate(_section("red_flags", {})),
    )
