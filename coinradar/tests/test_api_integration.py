"""Integration tests for the FastAPI endpoints.

Uses TestClient against an in-memory database; the pipeline itself is
exercised in test_pipeline.py, so runs here are either resets or patched.
"""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from coinradar.db import seed_default_settings
from coinradar.models import Base, Coin, CoinStatus, Fact, Page, PageStatus, Score, StatusEvent
from coinradar.pipeline import RunReport


@pytest.fixture()
def test_db():
    """In-memory SQLite shared across connections via StaticPool."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with TestSession() as session:
        seed_default_settings(session)
    return engine, TestSession


@pytest.fixture()
def client(test_db):
    """FastAPI TestClient using the in-memory database."""
    engine, TestSession = test_db
    from coinradar.app import app, db_session

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    with patch("coinradar.app.init_db"), TestClient(app, raise_server_exceptions=True) as c:
        yield c, TestSession
    app.dependency_overrides.clear()


@pytest.fixture()
def seeded_client(client):
    """Client with one analyzed and one failed coin."""
    c, TestSession = client
    session = TestSession()
    good = Coin(name="Proto Finance", symbol="PRF", status=CoinStatus.ANALYZED,
                coingecko_coin_url="https://www.coingecko.com/en/coins/proto-finance",
                official_links_json=json.dumps({"website": "https://proto.io"}))
    bad = Coin(name="Rug Token", symbol="RUG", status=CoinStatus.FAILED,
               coingecko_coin_url="https://www.coingecko.com/en/coins/rug-token")
    session.add_all([good, bad])
    session.flush()
    session.add_all([
        Page(coin_id=good.id, url="https://proto.io", link_type="website", status=PageStatus.FETCHED,
             content_text="Proto text", content_excerpt="Proto text"),
        Fact(coin_id=good.id, extracted_json='{"claims": []}'),
        Score(coin_id=good.id, overall=72.5, confidence=0.8, pillars_json='{"team_transparency": 14}',
              red_flags_json="[]", green_flags_json='["Team: 70/100"]', summary="72.5/100"),
        StatusEvent(coin_id=good.id, from_status="deep_analysis_pending", to_status="analyzed"),
    ])
    session.commit()
    ids = good.id, bad.id
    session.close()
    return c, TestSession, ids


class TestPipelineEndpoint:
    def test_reset_coin(self, seeded_client):
        c, TestSession, (_, bad_id) = seeded_client
        resp = c.post("/pipeline-run", json={"reset_coin_id": bad_id})
        assert resp.status_code == 200
        assert resp.json() == {"success": True}
        with TestSession() as session:
            assert session.get(Coin, bad_id).status == CoinStatus.PENDING

    def test_reset_unknown_coin_is_500(self, client):
        c, _ = client
        resp = c.post("/pipeline-run", json={"reset_coin_id": "nope"})
        assert resp.status_code == 500
        assert "not found" in resp.json()["error"]

    def test_reset_all_stuck(self, client):
        c, _ = client
        resp = c.post("/pipeline-run", json={"reset_all_stuck": True})
        assert resp.json() == {"success": True}

    def test_invalid_manual_url_is_500(self, client):
        c, _ = client
        resp = c.post("/pipeline-run", json={"manual_url": "https://proto.io"})
        assert resp.status_code == 500
        assert "detail URL" in resp.json()["error"]

    def test_empty_body_runs_pipeline(self, client):
        c, _ = client
        with patch("coinradar.app.run_pipeline", new=AsyncMock(return_value=RunReport())) as run:
            resp = c.post("/pipeline-run")
        assert resp.json() == {"success": True}
        request = run.call_args.args[1]
        assert request.manual_url is None
        assert request.reset_all_stuck is False


class TestCoinEndpoints:
    def test_list_coins(self, seeded_client):
        c, _, _ = seeded_client
        data = c.get("/api/coins").json()
        assert len(data) == 2
        by_symbol = {item["symbol"]: item for item in data}
        assert by_symbol["PRF"]["overall"] == 72.5
        assert by_symbol["PRF"]["official_links"] == {"website": "https://proto.io"}
        assert by_symbol["RUG"]["overall"] is None

    def test_filter_and_search(self, seeded_client):
        c, _, _ = seeded_client
        assert [i["symbol"] for i in c.get("/api/coins?status=failed").json()] == ["RUG"]
        assert len(c.get("/api/coins?status=failed,analyzed").json()) == 2
        assert [i["symbol"] for i in c.get("/api/coins?search=proto").json()] == ["PRF"]

    def test_coin_detail(self, seeded_client):
        c, _, (good_id, _) = seeded_client
        data = c.get(f"/api/coins/{good_id}").json()
        assert data["pages"][0]["status"] == "fetched"
        assert data["facts"] == {"claims": []}
        assert data["scores"][0]["green_flags"] == ["Team: 70/100"]
        assert data["deep_analysis"] is None
        assert data["status_events"][0]["to_status"] == "analyzed"

    def test_coin_not_found(self, client):
        c, _ = client
        assert c.get("/api/coins/missing").status_code == 404

    def test_delete_coin(self, seeded_client):
        c, TestSession, (good_id, _) = seeded_client
        assert c.delete(f"/api/coins/{good_id}").json() == {"ok": True}
        assert c.get(f"/api/coins/{good_id}").status_code == 404
        with TestSession() as session:
            assert session.execute(select(Page).where(Page.coin_id == good_id)).first() is None


class TestSettingsEndpoints:
    def test_defaults(self, client):
        c, _ = client
        data = c.get("/api/settings").json()
        assert data["weights_total"] == 100
        assert data["warnings"] == []
        assert data["hybrid_mode"] is False
        assert data["has_llm_api_key"] is False
        assert "coingecko.com" in data["allow_domains"]

    def test_update_with_warning(self, client):
        c, _ = client
        resp = c.put("/api/settings", json={
            "weights": {"team_transparency": 50, "community": 20},
            "hybrid_mode": True,
            "llm_api_key": "sk-user",
        })
        data = resp.json()
        assert resp.status_code == 200
        assert data["weights_total"] == 70
        assert any("not 100" in w for w in data["warnings"])
        assert data["hybrid_mode"] is True
        assert data["has_llm_api_key"] is True
        assert "sk-user" not in resp.text

    def test_clear_api_key(self, client):
        c, _ = client
        c.put("/api/settings", json={"llm_api_key": "sk-user"})
        assert c.put("/api/settings", json={"llm_api_key": ""}).json()["has_llm_api_key"] is False

    def test_negative_weight_rejected(self, client):
        c, _ = client
        assert c.put("/api/settings", json={"weights": {"community": -1}}).status_code == 422


class TestStatsEndpoint:
    def test_stats(self, seeded_client):
        c, _, _ = seeded_client
        data = c.get("/api/stats").json()
        assert data["total"] == 2
        assert data["by_status"] == {"analyzed": 1, "failed": 1}
        assert data["scored"] == 1
        assert data["average_score"] == 72.5
