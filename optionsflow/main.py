"""
OptionsFlow – positioning grades for options flow
Main FastAPI Application

  - Async endpoints over the shared FlowPipeline
  - FastAPI lifespan starts the market-state poller and closes the httpx client
  - Dependency-injection ready (get_pipeline)
"""
from contextlib import asynccontextmanager
from datetime import date
import logging

from fastapi import BackgroundTasks, Depends, FastAPI
from pydantic import BaseModel

from optionsflow.pipeline import FlowPipeline
from optionsflow.polygon_client import PolygonClient

logger = logging.getLogger("optionsflow")

polygon_client = PolygonClient()
pipeline = FlowPipeline(polygon_client)


# ── Lifespan (startup / shutdown) ───────────────────────────

@asynccontextmanager
async def lifespan(application: FastAPI):
    # startup – enable the 5-minute price refresh
    pipeline.poller.start()
    logger.info("OptionsFlow started")
    yield
    # shutdown – stop refresh + close the shared httpx client
    await pipeline.poller.stop()
    await polygon_client.close()


app = FastAPI(
    title="OptionsFlow",
    description="Options flow normalization, fill classification and positioning grades",
    version="1.0.0",
    lifespan=lifespan,
)


# ── Dependency helpers ──────────────────────────────────────

def get_pipeline() -> FlowPipeline:
    return pipeline


# ── Request / response models ───────────────────────────────

class IngestResponse(BaseModel):
    received: int
    trades: int


class StatusResponse(BaseModel):
    trades: int
    watched_tickers: list[str]
    refreshing: bool
    degraded: bool


# ── Endpoints ───────────────────────────────────────────────

@app.post("/api/trades")
async def replace_trades(
    prints: list[dict],
    background: BackgroundTasks,
    flow: FlowPipeline = Depends(get_pipeline),
) -> IngestResponse:
    """Replace the full set of interesting trades."""
    count = await flow.ingest(prints, refresh=False)
    background.add_task(flow.refresh_market_state)
    return IngestResponse(received=len(prints), trades=count)


@app.post("/api/trades/incremental")
async def add_trades(
    prints: list[dict],
    background: BackgroundTasks,
    flow: FlowPipeline = Depends(get_pipeline),
) -> IngestResponse:
    """Append newly arrived prints."""
    count = await flow.ingest_incremental(prints, refresh=False)
    background.add_task(flow.refresh_market_state)
    return IngestResponse(received=len(prints), trades=count)


@app.get("/api/trades")
async def list_trades(flow: FlowPipeline = Depends(get_pipeline)):
    """Classified trades with their positioning grade (or pending status)."""
    today = date.today()
    rows = []
    for trade, result in flow.graded_trades(now=None):
        rows.append({**trade.to_dict(today), "positioning": result.to_dict()})
    return {"trades": rows, "count": len(rows), "degraded": flow.provider_outage}


@app.get("/api/market-state/{ticker}")
async def market_state(ticker: str, flow: FlowPipeline = Depends(get_pipeline)):
    state = flow.current_market_state(ticker)
    return {
        "ticker": state["ticker"],
        "price": state["price"].to_dict(),
        "volatility": state["volatility"].to_dict(),
        "option_marks": {k: v.to_dict() for k, v in state["option_marks"].items()},
    }


@app.get("/api/status")
async def status(flow: FlowPipeline = Depends(get_pipeline)) -> StatusResponse:
    return StatusResponse(
        trades=len(flow.working_set),
        watched_tickers=sorted(flow.poller.watched),
        refreshing=flow.poller.refreshing,
        degraded=flow.provider_outage,
    )
