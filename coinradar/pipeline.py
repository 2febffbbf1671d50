"""Batch pipeline: discovery, links, retries, pages, facts, scores, deep analysis.

Each stage pulls a bounded batch by status, processes coins one at a time and
commits per coin, so an interrupted run leaves every finished coin durable
and repeated runs converge. Status changes go through
:func:`coinradar.states.transition`.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from datetime import timedelta

import httpx
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from coinradar.config import Settings, get_settings
from coinradar.deep_analysis import SECTIONS, analyze
from coinradar.discoverer import Listing, discover, normalize_detail_url, provisional_identity
from coinradar.evidence import Facts
from coinradar.extractor import Extraction, extract
from coinradar.facts import ExtractionError, extract_facts, usable_pages
from coinradar.fetcher import FetchResult, fetch, open_client, page_status_for
from coinradar.links import FETCHABLE_LINK_TYPES, resolve_links
from coinradar.llm import LLMCallError, LLMClient, LLMConfigError, select_model
from coinradar.models import (
    Coin,
    CoinSource,
    CoinStatus,
    DeepAnalysis,
    Fact,
    Page,
    PageStatus,
    Score,
)
from coinradar.schemas import RunRequest, RunSettings
from coinradar.scorer import score
from coinradar.services import latest_fact, latest_score, load_run_settings
from coinradar.states import record_creation, transition
from coinradar.utils import content_hash, json_parse, utcnow

log = logging.getLogger(__name__)


@dataclass
class RunReport:
    discovered: int = 0
    links_resolved: int = 0
    retries_handled: int = 0
    pages_fetched: int = 0
    facts_extracted: int = 0
    scored: int = 0
    deep_analyzed: int = 0
    reset: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _clear_children(session: Session, coin: Coin, *, include_deep: bool = False) -> None:
    session.execute(delete(Page).where(Page.coin_id == coin.id))
    session.execute(delete(Fact).where(Fact.coin_id == coin.id))
    session.execute(delete(Score).where(Score.coin_id == coin.id))
    if include_deep:
        session.execute(delete(DeepAnalysis).where(DeepAnalysis.coin_id == coin.id))
    session.expire(coin, ["pages", "facts", "scores", "deep_analyses"])


def upsert_page(
    session: Session,
    coin: Coin,
    url: str,
    link_type: str,
    result: FetchResult,
    extraction: Extraction,
    status: PageStatus,
) -> Page:
    """Insert or overwrite the page row for (coin, url) (caller must commit)."""
    page = session.execute(
        select(Page).where(Page.coin_id == coin.id, Page.url == url)
    ).scalar_one_or_none()
    if page is None:
        page = Page(coin_id=coin.id, url=url)
        session.add(page)
    page.link_type = link_type
    page.status = status
    page.http_status = result.status_code
    page.content_text = extraction.text
    page.content_excerpt = extraction.excerpt
    page.content_hash = extraction.hash if extraction.text else None
    page.fetched_at = utcnow()
    return page


def _fetched_page_count(session: Session, coin: Coin) -> int:
    return len(session.execute(
        select(Page.id).where(Page.coin_id == coin.id, Page.status == PageStatus.FETCHED)
    ).all())


def _make_llm_client(run_settings: RunSettings, config: Settings) -> LLMClient:
    choice = select_model(run_settings, config)
    log.info("Using %s model %s", choice.provider, choice.model)
    return LLMClient.from_choice(choice)


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


def ingest_listings(session: Session, listings: list[Listing]) -> int:
    """Insert new coins in ``pending``; existing detail URLs and name/symbol pairs are skipped."""
    added = 0
    seen_pairs: set[tuple[str, str]] = set()
    for listing in listings:
        pair = (listing.name, listing.symbol)
        if pair in seen_pairs:
            continue
        seen_pairs.add(pair)
        existing = session.execute(
            select(Coin.id).where(
                (Coin.coingecko_coin_url == listing.detail_url)
                | ((Coin.name == listing.name) & (Coin.symbol == listing.symbol))
            )
        ).first()
        if existing is not None:
            continue
        coin = Coin(
            name=listing.name,
            symbol=listing.symbol,
            coingecko_coin_url=listing.detail_url,
            source=CoinSource.AUTO,
            status=CoinStatus.PENDING,
        )
        session.add(coin)
        record_creation(session, coin, "discovered")
        added += 1
    session.commit()
    log.info("Discovery added %d new coin(s) from %d listing(s)", added, len(listings))
    return added


async def submit_manual(
    session: Session,
    url: str,
    *,
    config: Settings,
    client: httpx.AsyncClient | None = None,
) -> Coin | None:
    """Ingest a user-supplied detail URL. ValueError for a malformed URL.

    Returns the new coin, or ``None`` when the URL (or its name/symbol) is
    already known.
    """
    detail_url = normalize_detail_url(url)
    existing = session.execute(
        select(Coin).where(Coin.coingecko_coin_url == detail_url)
    ).scalar_one_or_none()
    if existing is not None:
        log.info("Manual URL %s already tracked as coin %s", detail_url, existing.id)
        return None

    result = await fetch(detail_url, client=client, max_attempts=config.max_fetch_attempts)
    await asyncio.sleep(config.detail_delay_seconds)
    name, symbol = provisional_identity(result.body if result.ok else "", detail_url)
    clash = session.execute(
        select(Coin.id).where(Coin.name == name, Coin.symbol == symbol)
    ).first()
    if clash is not None:
        log.info("Manual URL %s resolves to existing coin %s (%s)", detail_url, name, symbol)
        return None

    coin = Coin(
        name=name,
        symbol=symbol,
        coingecko_coin_url=detail_url,
        manual_url=url.strip(),
        source=CoinSource.MANUAL,
        status=CoinStatus.PENDING,
    )
    session.add(coin)
    record_creation(session, coin, "manual submission")
    session.commit()
    log.info("Manual coin added: %s (%s)", name, symbol)
    return coin


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


def _requeue(session: Session, coin: Coin) -> None:
    """Move a still-pending coin to the back of the link queue."""
    coin.updated_at = utcnow()
    session.commit()


async def resolve_links_stage(session: Session, config: Settings, client: httpx.AsyncClient) -> int:
    coins = session.execute(
        select(Coin).where(Coin.status == CoinStatus.PENDING)
        .order_by(Coin.updated_at).limit(config.link_batch_size)
    ).scalars().all()
    done = 0
    for coin in coins:
        try:
            if not coin.coingecko_coin_url:
                log.warning("Coin %s has no detail URL, skipping link resolution", coin.id)
                _requeue(session, coin)
                continue
            result = await fetch(coin.coingecko_coin_url, client=client, max_attempts=config.max_fetch_attempts)
            if not result.ok:
                log.warning("Detail page fetch failed for %s: %s", coin.name, result.error)
                _requeue(session, coin)
                continue
            links = resolve_links(result.body, coin.coingecko_coin_url)
            coin.official_links = links
            if transition(session, coin, CoinStatus.PROCESSING, f"links resolved ({len(links)})"):
                done += 1
            session.commit()
        except Exception as exc:
            session.rollback()
            log.warning("Link resolution failed for coin %s: %s", coin.id, exc)
        finally:
            await asyncio.sleep(config.detail_delay_seconds)
    log.info("Resolved links for %d coin(s)", done)
    return done


def handle_retries(session: Session, config: Settings) -> int:
    coins = session.execute(
        select(Coin).where(Coin.status == CoinStatus.RETRY_PENDING)
        .order_by(Coin.updated_at).limit(config.retry_batch_size)
    ).scalars().all()
    now = utcnow()
    expiry = timedelta(hours=config.retry_expiry_hours)
    handled = 0
    for coin in coins:
        try:
            if coin.retry_count > config.max_fact_retries:
                moved = transition(session, coin, CoinStatus.FAILED, f"retries exhausted ({coin.retry_count})")
            elif coin.retry_since is not None and now - coin.retry_since > expiry:
                moved = transition(session, coin, CoinStatus.FAILED, "retry window expired")
            elif _fetched_page_count(session, coin) > 0:
                moved = transition(session, coin, CoinStatus.PROCESSING, "retry extraction")
            else:
                session.execute(delete(Page).where(Page.coin_id == coin.id))
                session.expire(coin, ["pages"])
                moved = transition(session, coin, CoinStatus.PENDING, "full retry, no fetched pages")
            session.commit()
            handled += int(moved)
        except Exception as exc:
            session.rollback()
            log.warning("Retry handling failed for coin %s: %s", coin.id, exc)
    return handled


async def fetch_pages_stage(session: Session, config: Settings, client: httpx.AsyncClient) -> int:
    coins = session.execute(
        select(Coin).where(Coin.status == CoinStatus.PROCESSING, ~Coin.pages.any())
        .order_by(Coin.updated_at).limit(config.page_batch_size)
    ).scalars().all()
    total_fetched = 0
    for coin in coins:
        try:
            targets: dict[str, str] = {}
            for link_type, url in coin.official_links.items():
                if link_type in FETCHABLE_LINK_TYPES and url and url not in targets:
                    targets[url] = link_type
            for url, link_type in targets.items():
                result = await fetch(url, client=client, max_attempts=config.max_fetch_attempts)
                if result.ok and result.is_textual and not result.is_pdf:
                    extraction = extract(result.body, url)
                else:
                    extraction = Extraction(text="", is_js_heavy=False, method="none")
                status = page_status_for(result, extraction.text, extraction.is_js_heavy)
                upsert_page(session, coin, url, link_type, result, extraction, status)
                log.info("Page %s for %s: %s", url, coin.name, status)
                await asyncio.sleep(config.page_delay_seconds)
            session.flush()
            fetched = _fetched_page_count(session, coin)
            if fetched == 0:
                transition(session, coin, CoinStatus.INSUFFICIENT_DATA, f"0 of {len(targets)} page(s) fetched")
            total_fetched += fetched
            session.commit()
        except Exception as exc:
            session.rollback()
            log.warning("Page fetching failed for coin %s: %s", coin.id, exc)
    return total_fetched


async def extract_facts_stage(
    session: Session,
    run_settings: RunSettings,
    config: Settings,
    llm_client: LLMClient | None = None,
) -> int:
    coins = session.execute(
        select(Coin).where(Coin.status == CoinStatus.PROCESSING, Coin.pages.any(), ~Coin.facts.any())
        .order_by(Coin.updated_at).limit(config.fact_batch_size)
    ).scalars().all()
    done = 0
    for coin in coins:
        pages = usable_pages(coin.pages)
        if not pages:
            transition(session, coin, CoinStatus.INSUFFICIENT_DATA, "no usable page content")
            session.commit()
            continue
        if llm_client is None:
            llm_client = _make_llm_client(run_settings, config)
        try:
            try:
                extracted = await extract_facts(coin, pages, llm_client)
            except LLMCallError as exc:
                log.warning("LLM call failed for %s: %s", coin.name, exc)
                transition(session, coin, CoinStatus.FAILED, f"LLM error: {exc}")
                session.commit()
                continue
            except ExtractionError as exc:
                log.warning("Unusable facts for %s: %s", coin.name, exc)
                transition(
                    session, coin, CoinStatus.RETRY_PENDING, f"facts unparsable: {exc}",
                    retry_count=coin.retry_count + 1,
                    retry_since=coin.retry_since or utcnow(),
                )
                session.commit()
                continue
            session.add(Fact(
                coin_id=coin.id,
                extracted_json=extracted.facts.model_dump_json(),
                sources_json=json.dumps({"pages": extracted.sources, "cited": extracted.facts.source_urls()}),
                llm_model=extracted.model,
            ))
            session.commit()
            done += 1
        except Exception as exc:
            session.rollback()
            log.warning("Fact extraction failed for coin %s: %s", coin.id, exc)
    return done


def score_stage(session: Session, run_settings: RunSettings, config: Settings) -> int:
    coins = session.execute(
        select(Coin).where(Coin.status == CoinStatus.PROCESSING, Coin.facts.any())
        .order_by(Coin.updated_at).limit(config.score_batch_size)
    ).scalars().all()
    done = 0
    for coin in coins:
        try:
            fact = latest_fact(coin)
            facts = Facts.model_validate(json_parse(fact.extracted_json, {}))
            result = score(facts, run_settings.weights)
            session.add(Score(
                coin_id=coin.id,
                overall=result.overall,
                overall_cap=result.overall_cap,
                confidence=result.confidence,
                pillars_json=json.dumps(result.pillars),
                penalties=result.penalties,
                red_flags_json=json.dumps(result.red_flags),
                green_flags_json=json.dumps(result.green_flags),
                summary=result.summary,
                strategy_version=run_settings.strategy_version,
            ))
            transition(session, coin, CoinStatus.DEEP_ANALYSIS_PENDING, f"scored {result.overall:g}")
            session.commit()
            done += 1
            log.info("Scored %s: %s", coin.name, result.summary)
        except Exception as exc:
            session.rollback()
            log.warning("Scoring failed for coin %s: %s", coin.id, exc)
    return done


async def deep_analysis_stage(
    session: Session,
    run_settings: RunSettings,
    config: Settings,
    llm_client: LLMClient | None = None,
) -> int:
    coins = session.execute(
        select(Coin).where(Coin.status == CoinStatus.DEEP_ANALYSIS_PENDING)
        .order_by(Coin.updated_at).limit(config.deep_batch_size)
    ).scalars().all()
    if not coins:
        return 0
    if llm_client is None:
        try:
            llm_client = _make_llm_client(run_settings, config)
        except LLMConfigError as exc:
            log.warning("Deep analysis unavailable: %s", exc)
    done = 0
    for coin in coins:
        outcome = "deep analysis skipped"
        try:
            if llm_client is not None:
                fact = latest_fact(coin)
                latest = latest_score(coin)
                facts = Facts.model_validate(json_parse(fact.extracted_json, {})) if fact else Facts()
                pillars = json_parse(latest.pillars_json, {}) if latest else {}
                result = await analyze(coin, facts, pillars, usable_pages(coin.pages), llm_client)
                session.add(DeepAnalysis(
                    coin_id=coin.id,
                    llm_model=result.model,
                    **{f"{s}_json": json.dumps(result.sections[s]) for s in SECTIONS},
                ))
                outcome = "deep analysis stored"
                done += 1
        except Exception as exc:
            log.warning("Deep analysis failed for %s, completing anyway: %s", coin.name, exc)
            outcome = f"deep analysis failed: {exc}"
        try:
            transition(session, coin, CoinStatus.ANALYZED, outcome)
            session.commit()
        except Exception as exc:
            session.rollback()
            log.warning("Completing coin %s failed: %s", coin.id, exc)
    return done


# ---------------------------------------------------------------------------
# Resets
# ---------------------------------------------------------------------------


def reset_stuck(session: Session, config: Settings | None = None) -> int:
    """Send coins stuck in processing/retry_pending back to pending."""
    config = config or get_settings()
    cutoff = utcnow() - timedelta(minutes=config.stuck_after_minutes)
    coins = session.execute(
        select(Coin).where(
            Coin.status.in_([CoinStatus.PROCESSING, CoinStatus.RETRY_PENDING]),
            Coin.updated_at < cutoff,
        )
    ).scalars().all()
    count = 0
    for coin in coins:
        _clear_children(session, coin)
        if transition(session, coin, CoinStatus.PENDING, "stuck reset", retry_count=0, retry_since=None):
            count += 1
    session.commit()
    log.info("Reset %d stuck coin(s)", count)
    return count


def reset_coin(session: Session, coin_id: str) -> Coin:
    """Manual reset of one coin to pending. LookupError for an unknown id."""
    coin = session.get(Coin, coin_id)
    if coin is None:
        raise LookupError(f"Coin {coin_id} not found")
    _clear_children(session, coin, include_deep=True)
    if coin.status != CoinStatus.PENDING:
        transition(session, coin, CoinStatus.PENDING, "manual reset", retry_count=0, retry_since=None)
    session.commit()
    log.info("Coin %s reset to pending", coin_id)
    return coin


# ---------------------------------------------------------------------------
# Full run
# ---------------------------------------------------------------------------


async def _run_stages(
    session: Session,
    request: RunRequest,
    config: Settings,
    client: httpx.AsyncClient,
    llm_client: LLMClient | None,
) -> RunReport:
    report = RunReport()
    run_settings = load_run_settings(session)

    if request.manual_url:
        coin = await submit_manual(session, request.manual_url, config=config, client=client)
        report.discovered = int(coin is not None)
    else:
        listings = await discover(run_settings, config, client=client)
        report.discovered = ingest_listings(session, listings) if listings else 0

    report.links_resolved = await resolve_links_stage(session, config, client)
    report.retries_handled = handle_retries(session, config)
    report.pages_fetched = await fetch_pages_stage(session, config, client)
    report.facts_extracted = await extract_facts_stage(session, run_settings, config, llm_client)
    report.scored = score_stage(session, run_settings, config)
    report.deep_analyzed = await deep_analysis_stage(session, run_settings, config, llm_client)
    return report


async def run_pipeline(
    session: Session,
    request: RunRequest | None = None,
    *,
    config: Settings | None = None,
    http_client: httpx.AsyncClient | None = None,
    llm_client: LLMClient | None = None,
) -> RunReport:
    """One invocation of the pipeline.

    Reset requests perform the reset and return without running the stages.
    """
    request = request or RunRequest()
    config = config or get_settings()

    if request.reset_coin_id or request.reset_all_stuck:
        report = RunReport()
        if request.reset_coin_id:
            reset_coin(session, request.reset_coin_id)
            report.reset += 1
        if request.reset_all_stuck:
            report.reset += reset_stuck(session, config)
        return report

    log.info("Pipeline run started")
    if http_client is None:
        async with open_client(config) as client:
            report = await _run_stages(session, request, config, client, llm_client)
    else:
        report = await _run_stages(session, request, config, http_client, llm_client)
    log.info("Pipeline run finished: %s", report.as_dict())
    return report
