from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from coinradar import services
from coinradar.config import get_settings
from coinradar.db import get_session, init_db
from coinradar.models import Coin
from coinradar.pipeline import run_pipeline
from coinradar.schemas import CoinDetail, CoinOut, RunRequest, SettingsOut, SettingsUpdate, StatsOut

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="New-Coin Radar",
    version="0.1.0",
    description=(
        "Analysis pipeline for newly listed crypto projects. "
        "Discover, fetch, extract evidence, and score coins. "
        "All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Pipeline", "description": "Trigger a pipeline run or reset coins."},
        {"name": "Coins", "description": "Browse coins, their evidence, scores and history."},
        {"name": "Settings", "description": "Pillar weights, discovery mode and LLM key."},
        {"name": "Stats", "description": "Aggregate counts by status."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _get_coin_or_404(session: Session, coin_id: str) -> Coin:
    coin = session.execute(select(Coin).where(Coin.id == coin_id)).scalars().first()
    if not coin:
        raise HTTPException(404, "Coin not found")
    return coin


# ---------------------------------------------------------------------------
# Routes: Pipeline
# ---------------------------------------------------------------------------


@app.post("/pipeline-run", tags=["Pipeline"], summary="Run the analysis pipeline once")
async def pipeline_run(body: RunRequest | None = None, session: Session = Depends(db_session)):
    """Empty body runs discovery and every stage on one batch.

    ``manual_url`` replaces discovery with a single submitted coin;
    ``reset_coin_id`` / ``reset_all_stuck`` perform the reset and return.
    """
    try:
        await run_pipeline(session, body or RunRequest(), config=get_settings())
    except Exception as exc:
        log.exception("Pipeline run failed")
        return JSONResponse({"error": str(exc)}, status_code=500)
    return {"success": True}


# ---------------------------------------------------------------------------
# Routes: Coins
# ---------------------------------------------------------------------------


@app.get("/api/coins", response_model=list[CoinOut], tags=["Coins"], summary="List coins")
async def list_coins(
    status: str | None = Query(None, description="Comma-separated statuses, e.g. analyzed,failed"),
    search: str | None = Query(None, description="Substring match on name or symbol"),
    session: Session = Depends(db_session),
):
    return services.list_coins(session, status=status, search=search)


@app.get("/api/coins/{coin_id}", response_model=CoinDetail, tags=["Coins"], summary="Coin detail")
async def get_coin(coin_id: str, session: Session = Depends(db_session)):
    return services.coin_detail(_get_coin_or_404(session, coin_id))


@app.delete("/api/coins/{coin_id}", tags=["Coins"], summary="Delete a coin and all its data")
async def delete_coin(coin_id: str, session: Session = Depends(db_session)):
    coin = _get_coin_or_404(session, coin_id)
    services.delete_coin(session, coin)
    session.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Settings & Stats
# ---------------------------------------------------------------------------


@app.get("/api/settings", response_model=SettingsOut, tags=["Settings"], summary="Current settings")
async def get_settings_route(session: Session = Depends(db_session)):
    return services.settings_out(services.get_app_settings(session))


@app.put("/api/settings", response_model=SettingsOut, tags=["Settings"], summary="Update settings")
async def update_settings_route(body: SettingsUpdate, session: Session = Depends(db_session)):
    row = services.update_settings(session, body)
    session.commit()
    return services.settings_out(row)


@app.get("/api/stats", response_model=StatsOut, tags=["Stats"], summary="Counts by status")
async def stats(session: Session = Depends(db_session)):
    return services.compute_stats(session)


def main():
    import uvicorn

    config = get_settings()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for noisy in ("httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    uvicorn.run("coinradar.app:app", host="127.0.0.1", port=8001)


if __name__ == "__main__":
    main()
