"""
GammaDesk: API Routes

All HTTP endpoints. Thin layer: validates the ticker and delegates to the
AnalyticsDesk. Unknown underlyings answer with Unknown/NoTrade payloads,
never 404, so dashboards can poll before the first snapshot lands.
"""

from __future__ import annotations

import time as _time
from typing import Optional

from fastapi import APIRouter, Query

from gammadesk import __version__
from gammadesk.config import get_settings
from gammadesk.desk import get_desk
from gammadesk.models import (
    BiasVerdict,
    ChainSnapshotIn,
    ExpectedMove,
    FlowAggregates,
    GammaExposureProfile,
    HealthCheck,
    IngestResult,
    MarketContext,
    PriceContextIn,
    UnusualScore,
    VolumeHeatmapRow,
    utcnow,
)
from gammadesk.utils.validators import validate_limit, validate_ticker

APP_START_TIME: float = _time.monotonic()

# ──────────────────────────────────────────────
# Health
# ──────────────────────────────────────────────

health_router = APIRouter()


@health_router.get("/health", response_model=HealthCheck)
async def health_check():
    """Liveness plus the number of underlyings currently tracked."""
    return HealthCheck(
        status="ok",
        version=__version__,
        underlyings=len(get_desk().tickers),
    )


@health_router.get("/health/detail")
async def health_detail():
    """Per-underlying state summary."""
    settings = get_settings()
    return {
        "status": "ok",
        "version": __version__,
        "environment": settings.app_env,
        "uptime_seconds": round(_time.monotonic() - APP_START_TIME, 1),
        "underlyings": get_desk().summary(),
    }


# ──────────────────────────────────────────────
# Ingestion Routes
# ──────────────────────────────────────────────

ingest_router = APIRouter()


@ingest_router.post("/chains/{ticker}", response_model=IngestResult)
def post_chain(ticker: str, payload: ChainSnapshotIn):
    """Replace the latest options chain snapshot for an underlying."""
    return get_desk().update_chain(validate_ticker(ticker), payload)


@ingest_router.post("/trades/{ticker}", response_model=IngestResult)
def post_trades(ticker: str, trades: list[dict]):
    """Ingest a batch of trade prints. Invalid prints are counted, not raised."""
    return get_desk().ingest_trades(validate_ticker(ticker), trades)


@ingest_router.post("/price/{ticker}", response_model=MarketContext)
def post_price(ticker: str, payload: PriceContextIn):
    """Set spot and session VWAP (or the bars to derive it from)."""
    return get_desk().update_price_context(
        validate_ticker(ticker),
        price=payload.price,
        vwap=payload.vwap,
        bars=payload.bars,
        as_of=payload.as_of,
    )


# ──────────────────────────────────────────────
# Analytics Routes
# ──────────────────────────────────────────────

analytics_router = APIRouter()


@analytics_router.get("/unusual/{ticker}", response_model=list[UnusualScore])
def get_unusual(
    ticker: str,
    min_volume: int = Query(0, ge=0, description="Skip contracts below this volume"),
    limit: Optional[int] = Query(None, ge=1, description="Max results (default 50, max 500)"),
):
    """Contracts ranked by unusual-activity score."""
    return get_desk().score_contracts(
        validate_ticker(ticker),
        min_volume=min_volume,
        limit=validate_limit(limit),
    )


@analytics_router.get("/exposure/{ticker}", response_model=GammaExposureProfile)
def get_exposure(
    ticker: str,
    spot: Optional[float] = Query(None, gt=0, description="Override spot price"),
):
    """Dealer gamma exposure profile with regime, walls and flip level."""
    return get_desk().get_exposure_profile(validate_ticker(ticker), spot=spot)


@analytics_router.get("/expected-move/{ticker}", response_model=ExpectedMove)
def get_expected_move(ticker: str):
    """Expected move to the nearest expiry plus max pain."""
    return get_desk().get_expected_move(validate_ticker(ticker))


@analytics_router.get("/heatmap/{ticker}", response_model=list[VolumeHeatmapRow])
def get_heatmap(ticker: str):
    return get_desk().get_heatmap(validate_ticker(ticker))


@analytics_router.get("/flow/{ticker}", response_model=FlowAggregates)
def get_flow(ticker: str):
    """Rolling-window flow aggregates, evicted against wall-clock now."""
    return get_desk().get_flow(validate_ticker(ticker), now=utcnow())


@analytics_router.get("/bias/{ticker}", response_model=BiasVerdict)
def get_bias(ticker: str):
    """Composite Bullish / Bearish / NoTrade verdict."""
    return get_desk().get_bias(validate_ticker(ticker), now=utcnow())
