"""
GammaDesk: FastAPI Application Entry Point

Mounts ingestion, analytics, streaming and metrics endpoints over the
AnalyticsDesk. Run with:

    uvicorn gammadesk.main:app --app-dir backend
"""

import logging
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from gammadesk import __version__
from gammadesk.config import Settings, get_settings
from gammadesk.routes import analytics_router, health_router, ingest_router

log = structlog.get_logger("gammadesk.startup")


def configure_logging(settings: Settings) -> None:
    """structlog pipeline: contextvars, level filter, ISO timestamps.

    JSON lines in production, colored console output otherwise.
    """
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.is_production
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle hooks."""
    settings = get_settings()
    from gammadesk.desk import get_desk

    desk = get_desk()
    log.info(
        "startup",
        env=settings.app_env,
        version=__version__,
        flow_window_seconds=settings.flow_window_seconds,
        gamma_band_pct=settings.gamma_band_pct,
    )

    yield

    log.info("shutdown", underlyings=len(desk.tickers))


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()
    configure_logging(settings)

    app = FastAPI(
        title="GammaDesk",
        description="""# GammaDesk API

Options-microstructure analytics for a single desk.

## Features
- **Unusual Activity**: per-contract 0-100 unusualness score
- **Dealer Gamma**: GEX profile, regime, walls, expected move, max pain
- **Flow**: rolling aggressor-side aggregates, imbalance and bursts
- **Bias**: composite Bullish / Bearish / NoTrade verdict with reasons
""",
        version=__version__,
        debug=settings.app_debug,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_tags=[
            {"name": "Health", "description": "Service health and readiness checks"},
            {"name": "Ingestion", "description": "Chain, trade and price snapshots"},
            {"name": "Analytics", "description": "Scores, exposure, flow and bias"},
            {"name": "WebSocket", "description": "Live trade ingestion and burst push"},
            {"name": "Metrics", "description": "Prometheus-compatible metrics exposition"},
        ],
    )

    # ── Global Error Handlers ──
    from gammadesk.error_handlers import register_error_handlers
    register_error_handlers(app)

    # ── CORS (configurable from settings) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Request Logging ──
    from gammadesk.middleware.request_logger import RequestLoggerMiddleware
    app.add_middleware(RequestLoggerMiddleware, settings=settings)

    # ── Metrics Collection (outermost → captures full lifecycle) ──
    from gammadesk.metrics import MetricsMiddleware
    app.add_middleware(MetricsMiddleware)

    # ── Routes (unversioned) ──
    app.include_router(health_router, tags=["Health"])

    # ── Routes (v1 API) ──
    API_V1 = "/v1/api"
    app.include_router(ingest_router, prefix=API_V1, tags=["Ingestion"])
    app.include_router(analytics_router, prefix=API_V1, tags=["Analytics"])

    # ── WebSocket (unversioned) ──
    from gammadesk.websocket import ws_router
    app.include_router(ws_router, tags=["WebSocket"])

    # ── Metrics (unversioned) ──
    from gammadesk.metrics import metrics_router
    app.include_router(metrics_router, tags=["Metrics"])

    # ── API Version Header ──
    @app.middleware("http")
    async def add_api_version_header(request, call_next):
        response = await call_next(request)
        response.headers["X-API-Version"] = "v1"
        return response

    return app


app = create_app()
