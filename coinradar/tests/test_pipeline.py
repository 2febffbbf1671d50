"""Tests for the status state machine and the batch pipeline stages.

HTTP goes through ``httpx.MockTransport`` and the LLM is a mock exposing
``model`` and an async ``complete``; nothing leaves the process.
"""
from __future__ import annotations

import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from sqlalchemy import create_engine, func, select, update
from sqlalchemy.orm import Session, sessionmaker

from coinradar.config import Settings
from coinradar.db import seed_default_settings
from coinradar.deep_analysis import SECTIONS
from coinradar.discoverer import Listing
from coinradar.extractor import Extraction
from coinradar.fetcher import FetchResult
from coinradar.llm import LLMCallError, LLMConfigError
from coinradar.models import (
    Base,
    Coin,
    CoinSource,
    CoinStatus,
    DeepAnalysis,
    Fact,
    Page,
    PageStatus,
    Score,
    StatusEvent,
)
from coinradar.pipeline import (
    deep_analysis_stage,
    extract_facts_stage,
    handle_retries,
    ingest_listings,
    reset_coin,
    reset_stuck,
    resolve_links_stage,
    run_pipeline,
    score_stage,
    submit_manual,
    upsert_page,
)
from coinradar.schemas import RunRequest, RunSettings
from coinradar.services import load_run_settings
from coinradar.states import InvalidTransition, is_allowed, record_creation, transition
from coinradar.utils import utcnow

LISTINGS_URL = "https://www.coingecko.com/en/new-cryptocurrencies"
DETAIL_URL = "https://www.coingecko.com/en/coins/proto-finance"

ARTICLE = " ".join(
    f"Paragraph {i}: Proto Finance is a lending protocol whose team is publicly listed on the about page."
    for i in range(15)
)

FACTS_REPLY = json.dumps({
    "claims": [
        {"id": "c1", "pillar": "team", "type": "doxxed_team", "value": "yes",
         "proof_urls": ["https://proto.io"], "excerpt": "team is publicly listed"},
        {"id": "c2", "pillar": "product", "type": "mainnet_live", "value": True,
         "proof_urls": ["https://proto.io"]},
    ],
    "red_flags": {"guaranteed_returns": []},
})

DEEP_REPLY = json.dumps({
    section: {"analysis": "ok", score_field: 60, **{f: [] for f in lists}}
    for section, (score_field, lists) in SECTIONS.items()
})

SITE = {
    LISTINGS_URL: '<html><body><a href="/en/coins/proto-finance">Proto Finance (PRF)</a></body></html>',
    DETAIL_URL: """<html><head><title>Proto Finance Price: PRF</title></head><body>
        <h1>Proto Finance (PRF)</h1>
        <a href="https://proto.io">Website</a>
        <a href="https://docs.proto.io">Whitepaper</a>
        <a href="https://twitter.com/protofi">Twitter</a>
    </body></html>""",
    "https://proto.io": f"<html><body><article><h1>Proto</h1><p>{ARTICLE}</p></article></body></html>",
}


def _site_handler(request: httpx.Request) -> httpx.Response:
    url = str(request.url).rstrip("/")
    if url in SITE:
        return httpx.Response(200, html=SITE[url])
    return httpx.Response(404)


def _mock_llm(*replies) -> MagicMock:
    client = MagicMock()
    client.model = "gpt-4o-mini"
    client.complete = AsyncMock(side_effect=list(replies))
    return client


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    seed_default_settings(sess)
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def config() -> Settings:
    return Settings(
        listings_url=LISTINGS_URL,
        detail_delay_seconds=0,
        page_delay_seconds=0,
        discovery_backoff_seconds=0,
        max_fetch_attempts=1,
        llm_provider="openai",
        openai_api_key="",
        anthropic_api_key="",
    )


@pytest.fixture(autouse=True)
def no_backoff():
    with patch("coinradar.fetcher._backoff_delay", return_value=0):
        yield


@pytest.fixture()
def http_client():
    return httpx.AsyncClient(transport=httpx.MockTransport(_site_handler))


def _add_coin(session: Session, status: CoinStatus = CoinStatus.PENDING, **kwargs) -> Coin:
    kwargs.setdefault("name", "Proto Finance")
    kwargs.setdefault("symbol", "PRF")
    kwargs.setdefault("coingecko_coin_url", DETAIL_URL)
    coin = Coin(status=status, **kwargs)
    session.add(coin)
    record_creation(session, coin, "test")
    session.commit()
    return coin


def _add_page(session: Session, coin: Coin, url="https://proto.io", status=PageStatus.FETCHED, text=ARTICLE) -> Page:
    page = Page(coin_id=coin.id, url=url, link_type="website", status=status, content_text=text)
    session.add(page)
    session.commit()
    return page


def _count(session: Session, model, coin: Coin) -> int:
    return session.execute(select(func.count()).select_from(model).where(model.coin_id == coin.id)).scalar_one()


def _events(session: Session, coin: Coin) -> list[tuple[str, str]]:
    rows = session.execute(
        select(StatusEvent).where(StatusEvent.coin_id == coin.id).order_by(StatusEvent.id)
    ).scalars().all()
    return [(e.from_status, e.to_status) for e in rows]


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class TestTransitions:
    def test_allowed_transition_records_event(self, session):
        coin = _add_coin(session)
        assert transition(session, coin, CoinStatus.PROCESSING, "links resolved")
        session.commit()
        assert coin.status == CoinStatus.PROCESSING
        assert _events(session, coin) == [("new", "pending"), ("pending", "processing")]

    def test_extra_values_written_with_status(self, session):
        coin = _add_coin(session, CoinStatus.PROCESSING)
        since = utcnow()
        transition(session, coin, CoinStatus.RETRY_PENDING, "bad json", retry_count=1, retry_since=since)
        session.commit()
        row = session.execute(select(Coin.retry_count, Coin.retry_since).where(Coin.id == coin.id)).one()
        assert row.retry_count == 1
        assert row.retry_since == since

    @pytest.mark.parametrize("from_status,to_status", [
        (CoinStatus.PENDING, CoinStatus.ANALYZED),
        (CoinStatus.PENDING, CoinStatus.DEEP_ANALYSIS_PENDING),
        (CoinStatus.ANALYZED, CoinStatus.PROCESSING),
        (CoinStatus.FAILED, CoinStatus.ANALYZED),
    ])
    def test_illegal_transition_raises(self, session, from_status, to_status):
        coin = _add_coin(session, from_status)
        with pytest.raises(InvalidTransition):
            transition(session, coin, to_status)
        assert _events(session, coin) == [("new", "pending")]

    def test_stale_status_is_skipped(self, session):
        coin = _add_coin(session)
        session.execute(
            update(Coin).where(Coin.id == coin.id).values(status=CoinStatus.PROCESSING)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        assert coin.status == CoinStatus.PENDING
        assert transition(session, coin, CoinStatus.PROCESSING) is False
        assert len(_events(session, coin)) == 1

    def test_reset_edges(self):
        for status in (CoinStatus.ANALYZED, CoinStatus.FAILED, CoinStatus.INSUFFICIENT_DATA,
                       CoinStatus.PROCESSING, CoinStatus.RETRY_PENDING):
            assert is_allowed(status, CoinStatus.PENDING)


# ---------------------------------------------------------------------------
# Ingestion and pages
# ---------------------------------------------------------------------------


class TestIngestion:
    def test_ingest_skips_known_coins(self, session):
        _add_coin(session, name="Existing", symbol="EX", coingecko_coin_url="https://www.coingecko.com/en/coins/existing")
        listings = [
            Listing("Existing", "EX", "https://www.coingecko.com/en/coins/existing-2"),
            Listing("Other", "OTH", "https://www.coingecko.com/en/coins/existing"),
            Listing("New One", "NEW1", "https://www.coingecko.com/en/coins/new-one"),
            Listing("New One", "NEW1", "https://www.coingecko.com/en/coins/new-one-dup"),
        ]
        assert ingest_listings(session, listings) == 1
        coin = session.execute(select(Coin).where(Coin.symbol == "NEW1")).scalar_one()
        assert coin.status == CoinStatus.PENDING
        assert coin.source == CoinSource.AUTO
        assert _events(session, coin) == [("new", "pending")]

    def test_upsert_page_is_idempotent(self, session):
        coin = _add_coin(session, CoinStatus.PROCESSING)
        first = FetchResult(url="https://proto.io", status_code=503, error="HTTP 503", attempts=3)
        upsert_page(session, coin, "https://proto.io", "website", first,
                    Extraction("", False, "none"), PageStatus.FAILED)
        session.commit()
        ok = FetchResult(url="https://proto.io", status_code=200, body="<html/>", content_type="text/html")
        upsert_page(session, coin, "https://proto.io", "website", ok,
                    Extraction(ARTICLE, False, "readability"), PageStatus.FETCHED)
        session.commit()
        pages = session.execute(select(Page).where(Page.coin_id == coin.id)).scalars().all()
        assert len(pages) == 1
        assert pages[0].status == PageStatus.FETCHED
        assert pages[0].http_status == 200
        assert pages[0].content_hash is not None
        assert pages[0].content_excerpt == ARTICLE[:1000]

    @pytest.mark.asyncio
    async def test_submit_manual(self, session, config, http_client):
        async with http_client:
            coin = await submit_manual(session, " https://coingecko.com/en/coins/proto-finance/ ",
                                       config=config, client=http_client)
            assert coin is not None
            assert (coin.name, coin.symbol) == ("Proto Finance", "PRF")
            assert coin.source == CoinSource.MANUAL
            assert coin.coingecko_coin_url == DETAIL_URL
            again = await submit_manual(session, DETAIL_URL, config=config, client=http_client)
        assert again is None

    @pytest.mark.asyncio
    async def test_submit_manual_rejects_non_detail_url(self, session, config, http_client):
        async with http_client:
            with pytest.raises(ValueError):
                await submit_manual(session, "https://proto.io", config=config, client=http_client)

    @pytest.mark.asyncio
    async def test_submit_manual_waits_after_detail_fetch(self, session, config, http_client):
        polite = config.model_copy(update={"detail_delay_seconds": 1.5})
        with patch("coinradar.pipeline.asyncio.sleep", new=AsyncMock()) as sleep:
            async with http_client:
                await submit_manual(session, DETAIL_URL, config=polite, client=http_client)
        sleep.assert_awaited_once_with(1.5)

    @pytest.mark.asyncio
    async def test_dead_detail_pages_do_not_block_link_queue(self, session, config, http_client):
        long_ago = utcnow() - timedelta(days=2)
        dead = [
            _add_coin(session, name=f"Dead {i}", symbol=f"DED{i}",
                      coingecko_coin_url=f"https://www.coingecko.com/en/coins/dead-{i}",
                      first_seen=long_ago, updated_at=long_ago)
            for i in range(config.link_batch_size)
        ]
        good = _add_coin(session, first_seen=long_ago + timedelta(hours=1), updated_at=long_ago + timedelta(hours=1))
        async with http_client:
            assert await resolve_links_stage(session, config, http_client) == 0
            assert await resolve_links_stage(session, config, http_client) == 1
        assert good.status == CoinStatus.PROCESSING
        assert good.official_links["website"] == "https://proto.io"
        assert all(coin.status == CoinStatus.PENDING for coin in dead)
        assert all(coin.updated_at > long_ago for coin in dead)


# ---------------------------------------------------------------------------
# Retries and resets
# ---------------------------------------------------------------------------


class TestRetries:
    def test_exhausted_retries_fail(self, session, config):
        coin = _add_coin(session, CoinStatus.RETRY_PENDING, retry_count=4, retry_since=utcnow())
        assert handle_retries(session, config) == 1
        assert coin.status == CoinStatus.FAILED

    def test_expired_window_fails(self, session, config):
        coin = _add_coin(session, CoinStatus.RETRY_PENDING, retry_count=1,
                         retry_since=utcnow() - timedelta(hours=25))
        handle_retries(session, config)
        assert coin.status == CoinStatus.FAILED

    def test_fetched_pages_retry_extraction(self, session, config):
        coin = _add_coin(session, CoinStatus.RETRY_PENDING, retry_count=1, retry_since=utcnow())
        _add_page(session, coin)
        handle_retries(session, config)
        assert coin.status == CoinStatus.PROCESSING
        assert _count(session, Page, coin) == 1

    def test_no_pages_full_retry(self, session, config):
        coin = _add_coin(session, CoinStatus.RETRY_PENDING, retry_count=1, retry_since=utcnow())
        _add_page(session, coin, status=PageStatus.BLOCKED, text="")
        handle_retries(session, config)
        assert coin.status == CoinStatus.PENDING
        assert _count(session, Page, coin) == 0


class TestResets:
    def test_reset_stuck(self, session, config):
        old = utcnow() - timedelta(hours=2)
        stuck = _add_coin(session, CoinStatus.PROCESSING, updated_at=old, retry_count=2, retry_since=old)
        _add_page(session, stuck)
        fresh = _add_coin(session, CoinStatus.PROCESSING, name="Fresh", symbol="FRS",
                          coingecko_coin_url="https://www.coingecko.com/en/coins/fresh")
        done = _add_coin(session, CoinStatus.ANALYZED, name="Done", symbol="DN", updated_at=old,
                         coingecko_coin_url="https://www.coingecko.com/en/coins/done")
        assert reset_stuck(session, config) == 1
        assert stuck.status == CoinStatus.PENDING
        assert stuck.retry_count == 0
        assert stuck.retry_since is None
        assert _count(session, Page, stuck) == 0
        assert fresh.status == CoinStatus.PROCESSING
        assert done.status == CoinStatus.ANALYZED

    def test_reset_coin_clears_everything(self, session):
        coin = _add_coin(session, CoinStatus.ANALYZED)
        _add_page(session, coin)
        session.add_all([
            Fact(coin_id=coin.id, extracted_json='{"claims": []}'),
            Score(coin_id=coin.id, overall=40, confidence=0.5),
            DeepAnalysis(coin_id=coin.id),
        ])
        session.commit()
        reset_coin(session, coin.id)
        assert coin.status == CoinStatus.PENDING
        for model in (Page, Fact, Score, DeepAnalysis):
            assert _count(session, model, coin) == 0
        assert _events(session, coin)[-1] == ("analyzed", "pending")

    def test_reset_unknown_coin(self, session):
        with pytest.raises(LookupError):
            reset_coin(session, "does-not-exist")

    @pytest.mark.asyncio
    async def test_reset_request_skips_stages(self, session, config):
        coin = _add_coin(session, CoinStatus.FAILED)
        with patch("coinradar.pipeline.discover", new=AsyncMock()) as discover:
            report = await run_pipeline(session, RunRequest(reset_coin_id=coin.id), config=config)
        assert report.reset == 1
        assert coin.status == CoinStatus.PENDING
        discover.assert_not_called()


# ---------------------------------------------------------------------------
# LLM stages
# ---------------------------------------------------------------------------


class TestFactsStage:
    @pytest.mark.asyncio
    async def test_no_usable_pages_skips_llm(self, session, config):
        coin = _add_coin(session, CoinStatus.PROCESSING)
        _add_page(session, coin, status=PageStatus.JS_EMPTY, text="")
        llm = _mock_llm(FACTS_REPLY)
        assert await extract_facts_stage(session, RunSettings(), config, llm) == 0
        assert coin.status == CoinStatus.INSUFFICIENT_DATA
        llm.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stores_facts(self, session, config):
        coin = _add_coin(session, CoinStatus.PROCESSING)
        _add_page(session, coin)
        assert await extract_facts_stage(session, RunSettings(), config, _mock_llm(FACTS_REPLY)) == 1
        fact = session.execute(select(Fact).where(Fact.coin_id == coin.id)).scalar_one()
        assert len(json.loads(fact.extracted_json)["claims"]) == 2
        assert json.loads(fact.sources_json) == {"pages": ["https://proto.io"], "cited": ["https://proto.io"]}
        assert fact.llm_model == "gpt-4o-mini"
        assert coin.status == CoinStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_unparsable_reply_schedules_retry(self, session, config):
        coin = _add_coin(session, CoinStatus.PROCESSING)
        _add_page(session, coin)
        await extract_facts_stage(session, RunSettings(), config, _mock_llm("Sorry, no JSON today."))
        assert coin.status == CoinStatus.RETRY_PENDING
        assert coin.retry_count == 1
        assert coin.retry_since is not None

    @pytest.mark.asyncio
    async def test_loosely_typed_reply_is_stored(self, session, config):
        coin = _add_coin(session, CoinStatus.PROCESSING)
        _add_page(session, coin)
        reply = json.dumps({
            "claims": [
                {"type": "audit", "proof_urls": ["https://proto.io"]},
                {"id": 7, "pillar": "team", "proof_urls": ["https://proto.io"]},
            ],
            "contradictions": [{"claim_ids": [7], "reason": None}],
            "red_flags": {
                "suspected_copycat": {"brand": None, "reason": None},
                "misleading_claims": [{"claim_id": 7, "reason": "overstated"}],
            },
        })
        assert await extract_facts_stage(session, RunSettings(), config, _mock_llm(reply)) == 1
        stored = json.loads(session.execute(select(Fact).where(Fact.coin_id == coin.id)).scalar_one().extracted_json)
        assert [c["id"] for c in stored["claims"]] == ["7"]
        assert stored["red_flags"]["misleading_claims"] == [{"claim_id": "7", "reason": "overstated"}]
        assert coin.status == CoinStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_stop_batch(self, session, config):
        first = _add_coin(session, CoinStatus.PROCESSING)
        second = _add_coin(session, CoinStatus.PROCESSING, name="Second Coin", symbol="SEC",
                           coingecko_coin_url="https://www.coingecko.com/en/coins/second-coin")
        for coin in (first, second):
            _add_page(session, coin)
        llm = _mock_llm(RuntimeError("connection reset"), FACTS_REPLY)
        assert await extract_facts_stage(session, RunSettings(), config, llm) == 1
        assert llm.complete.await_count == 2
        assert sorted(_count(session, Fact, coin) for coin in (first, second)) == [0, 1]
        assert {first.status, second.status} == {CoinStatus.PROCESSING}

    @pytest.mark.asyncio
    async def test_api_error_fails_coin(self, session, config):
        coin = _add_coin(session, CoinStatus.PROCESSING)
        _add_page(session, coin)
        await extract_facts_stage(session, RunSettings(), config, _mock_llm(LLMCallError("401 unauthorized")))
        assert coin.status == CoinStatus.FAILED

    @pytest.mark.asyncio
    async def test_missing_key_raises(self, session, config):
        coin = _add_coin(session, CoinStatus.PROCESSING)
        _add_page(session, coin)
        with pytest.raises(LLMConfigError):
            await extract_facts_stage(session, RunSettings(), config)


class TestScoreAndDeepStages:
    def _scored_ready(self, session) -> Coin:
        coin = _add_coin(session, CoinStatus.PROCESSING)
        _add_page(session, coin)
        session.add(Fact(coin_id=coin.id, extracted_json=FACTS_REPLY))
        session.commit()
        return coin

    def test_score_stage(self, session, config):
        coin = self._scored_ready(session)
        run_settings = load_run_settings(session)
        assert score_stage(session, run_settings, config) == 1
        score = session.execute(select(Score).where(Score.coin_id == coin.id)).scalar_one()
        assert 0 <= score.overall <= 100
        assert score.strategy_version == "web_only_v1"
        assert set(json.loads(score.pillars_json)) == set(run_settings.weights)
        assert coin.status == CoinStatus.DEEP_ANALYSIS_PENDING

    @pytest.mark.asyncio
    async def test_deep_analysis_stored(self, session, config):
        coin = self._scored_ready(session)
        score_stage(session, load_run_settings(session), config)
        assert await deep_analysis_stage(session, RunSettings(), config, _mock_llm(DEEP_REPLY)) == 1
        assert coin.status == CoinStatus.ANALYZED
        assert _count(session, DeepAnalysis, coin) == 1

    @pytest.mark.asyncio
    async def test_deep_analysis_failure_still_completes(self, session, config):
        coin = self._scored_ready(session)
        score_stage(session, load_run_settings(session), config)
        llm = _mock_llm(LLMCallError("timeout"))
        assert await deep_analysis_stage(session, RunSettings(), config, llm) == 0
        assert coin.status == CoinStatus.ANALYZED
        assert _count(session, DeepAnalysis, coin) == 0

    @pytest.mark.asyncio
    async def test_deep_analysis_without_key_still_completes(self, session, config):
        coin = self._scored_ready(session)
        score_stage(session, load_run_settings(session), config)
        await deep_analysis_stage(session, RunSettings(), config)
        assert coin.status == CoinStatus.ANALYZED


# ---------------------------------------------------------------------------
# Full run
# ---------------------------------------------------------------------------


class TestFullRun:
    @pytest.mark.asyncio
    async def test_discovery_to_analyzed(self, session, config, http_client):
        llm = _mock_llm(FACTS_REPLY, DEEP_REPLY)
        async with http_client:
            report = await run_pipeline(session, config=config, http_client=http_client, llm_client=llm)
        assert report.as_dict() == {
            "discovered": 1, "links_resolved": 1, "retries_handled": 0, "pages_fetched": 1,
            "facts_extracted": 1, "scored": 1, "deep_analyzed": 1, "reset": 0,
        }
        coin = session.execute(select(Coin)).scalar_one()
        assert coin.status == CoinStatus.ANALYZED
        assert coin.official_links == {
            "website": "https://proto.io", "docs": "https://docs.proto.io", "twitter": "https://twitter.com/protofi",
        }
        pages = {p.url: p.status for p in session.execute(select(Page)).scalars()}
        assert pages == {"https://proto.io": PageStatus.FETCHED, "https://docs.proto.io": PageStatus.FAILED}
        assert _events(session, coin) == [
            ("new", "pending"), ("pending", "processing"),
            ("processing", "deep_analysis_pending"), ("deep_analysis_pending", "analyzed"),
        ]

    @pytest.mark.asyncio
    async def test_repeated_run_converges(self, session, config, http_client):
        async with http_client:
            await run_pipeline(session, config=config, http_client=http_client,
                               llm_client=_mock_llm(FACTS_REPLY, DEEP_REPLY))
            idle = _mock_llm()
            report = await run_pipeline(session, config=config, http_client=http_client, llm_client=idle)
        assert report.discovered == 0
        assert report.scored == 0
        idle.complete.assert_not_awaited()
        assert session.execute(select(func.count()).select_from(Coin)).scalar_one() == 1

    @pytest.mark.asyncio
    async def test_unreachable_site_is_insufficient_data(self, session, config):
        coin = _add_coin(session)
        detail_only = {DETAIL_URL: SITE[DETAIL_URL]}

        def handler(request):
            url = str(request.url).rstrip("/")
            return httpx.Response(200, html=detail_only[url]) if url in detail_only else httpx.Response(503)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with patch("coinradar.pipeline.discover", new=AsyncMock(return_value=[])):
                report = await run_pipeline(session, config=config, http_client=client, llm_client=_mock_llm())
        assert report.pages_fetched == 0
        assert coin.status == CoinStatus.INSUFFICIENT_DATA
