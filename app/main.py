"""
FastAPI Application - Market Data Feed API

Thin HTTP surface over the ingestion pipeline. All resilience (rate limiting,
provider fallback, cache tiers) lives in the pipeline; this module only wires
the components together and maps results to HTTP.

Endpoints:
    - GET  /health                          Provider credential check
    - GET  /providers                       Registered providers + circuit state
    - PUT  /logging/level                   Change the log level at runtime
    - GET  /market/{category}               Current prices (cache tiers)
    - POST /market/{category}/refresh       Bypass the fresh tier
    - GET  /market/{category}/status        Cache tier status
    - GET  /market/{category}/history       Past prices (?date= ISO or Jalali)
    - GET  /ohlc/{item_code}/today          Today's intraday OHLC
    - GET  /ohlc/{item_code}/history        OHLC for a past day (?date=)
    - GET  /scheduler                       Scheduler status
    - POST /scheduler/trigger               Run a refresh cycle now

Usage:
    uvicorn app.main:app --reload --host 0.0.0.0 --port 8000

Docs:
    - Swagger: http://localhost:8000/docs
    - ReDoc: http://localhost:8000/redoc
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import VALID_CATEGORIES, settings, validate_configuration
from core.errors import NoDataAvailable
from core.logging import logger, set_log_level
from core.provider_registry import ProviderRegistry, get_registry
from core.schemas import ApiResponse, OHLCRecord, RefreshResult
from core.utils.time import parse_date
from providers.http_provider import HttpMarketDataProvider
from services.cache_manager import TieredCacheManager
from services.ohlc_engine import OHLCEngine
from services.orchestrator import ProviderOrchestrator
from services.retention import RetentionService
from services.scheduler import DynamicScheduler, OHLCRollupJob
from services.snapshots import SnapshotService
from storage.repository import InMemoryRepository, Repository


# ============================================
# Composition Root
# ============================================

class Pipeline:
    """Every long-lived component of the ingestion pipeline."""

    def __init__(
        self,
        registry: ProviderRegistry,
        repository: Repository,
        scheduler_enabled: Optional[bool] = None,
    ) -> None:
        self.registry = registry
        self.repository = repository
        self.orchestrator = ProviderOrchestrator(registry)
        self.snapshots = SnapshotService(repository)
        self.ohlc = OHLCEngine(repository)
        self.cache = TieredCacheManager(self.orchestrator, repository, self.snapshots, self.ohlc)
        self.retention = RetentionService(repository)
        self.scheduler = DynamicScheduler(
            self.cache,
            enabled=scheduler_enabled,
            rollup_job=OHLCRollupJob(self.ohlc, self.retention),
        )

    async def start(self) -> None:
        await self.registry.initialize_all()
        self.registry.validate_coverage()
        await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.registry.shutdown_all()


def build_pipeline() -> Pipeline:
    """Register the configured upstream provider and assemble the pipeline."""
    registry = get_registry()
    if not registry.has_provider(settings.provider_name):
        registry.register_provider(
            HttpMarketDataProvider(
                name=settings.provider_name,
                base_url=settings.provider_base_url,
                api_key=settings.provider_api_key,
            ),
            priority=1,
        )
    return Pipeline(registry, InMemoryRepository())


# ============================================
# Lifespan Management
# ============================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown."""
    logger.info("=== Application Starting ===")
    try:
        validate_configuration()
        if getattr(app.state, "pipeline", None) is None:
            app.state.pipeline = build_pipeline()
        await app.state.pipeline.start()
        logger.info("=== Started Successfully ===")
    except Exception as e:
        logger.error(f"Startup failed: {e}")
        raise

    yield

    logger.info("=== Shutting Down ===")
    try:
        await app.state.pipeline.stop()
        logger.info("=== Shutdown Complete ===")
    except Exception as e:
        logger.error(f"Shutdown error: {e}")


# ============================================
# FastAPI Application
# ============================================

app = FastAPI(
    title="Market Data Feed API",
    description=(
        "Resilient market data for currencies, crypto, gold and coins.\n\n"
        "Responses carry `metadata.source` (`cache`, `api`, `fallback`, `snapshot`, `ohlc`) "
        "and, when live data is unavailable, a `metadata.warning` explaining why."
    ),
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"]
)


@app.exception_handler(NoDataAvailable)
async def no_data_handler(request: Request, exc: NoDataAvailable):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline


def _require_category(category: str) -> None:
    if category not in VALID_CATEGORIES:
        raise HTTPException(
            status_code=404,
            detail=f"Unknown category '{category}'. Must be one of: {', '.join(VALID_CATEGORIES)}",
        )


# ============================================
# System Endpoints
# ============================================

@app.get("/", tags=["System"])
async def root(request: Request):
    """API information and configured categories."""
    return {
        "name": "Market Data Feed API",
        "version": "1.0.0",
        "status": "operational",
        "docs": "/docs",
        "categories": settings.categories_list,
        "providers": [r.name for r in _pipeline(request).registry.list_providers()],
    }


@app.get("/health", tags=["System"])
async def health_check(request: Request):
    """Health check - validates every provider's credentials."""
    pipeline = _pipeline(request)
    health = await pipeline.registry.health_check_all()
    return {
        "status": "healthy" if health and all(health.values()) else "degraded",
        "providers": health,
        "scheduler_running": pipeline.scheduler.is_running,
    }


@app.get("/providers", tags=["System"])
async def list_providers(request: Request):
    """Registered providers, routing metadata and circuit breaker state."""
    pipeline = _pipeline(request)
    breakers = pipeline.orchestrator.get_circuit_breaker_status()
    return {
        "providers": [
            {
                **registration.model_dump(),
                "circuit": breakers[registration.name].model_dump() if registration.name in breakers else None,
            }
            for registration in pipeline.registry.list_providers()
        ],
        "coverage": pipeline.registry.validate_coverage(),
        "config": pipeline.orchestrator.get_config().model_dump(),
    }


@app.put("/logging/level", tags=["System"])
async def change_log_level(level: str = Query(..., description="DEBUG, INFO, WARNING, ERROR or CRITICAL")):
    """Change the log level of the running process."""
    level = level.upper()
    if level not in LOG_LEVELS:
        raise HTTPException(status_code=400, detail=f"Invalid log level '{level}'. Must be one of: {', '.join(LOG_LEVELS)}")
    set_log_level(level)
    logger.info(f"Log level changed to {level}")
    return {"log_level": level}


# ============================================
# Market Data Endpoints
# ============================================

@app.get("/market/{category}", response_model=ApiResponse, tags=["Market Data"])
async def get_market(category: str, request: Request):
    """
    Current prices for a category.

    Example:
        GET /market/gold
    """
    _require_category(category)
    return await _pipeline(request).cache.read(category)


@app.post("/market/{category}/refresh", response_model=RefreshResult, tags=["Market Data"])
async def refresh_market(category: str, request: Request):
    _require_category(category)
    return await _pipeline(request).cache.force_refresh(category)


@app.get("/market/{category}/status", tags=["Market Data"])
async def market_status(category: str, request: Request):
    _require_category(category)
    return await _pipeline(request).cache.get_cache_status(category)


@app.get("/market/{category}/history", response_model=ApiResponse, tags=["Market Data"])
async def get_market_history(
    category: str,
    request: Request,
    date: Optional[str] = Query(default=None, description="ISO (2024-03-20) or Jalali (1403/01/01); default yesterday"),
):
    """
    Prices of a category for a past day.

    Examples:
        GET /market/currencies/history?date=2024-03-20
        GET /market/currencies/history?date=1403/01/01
        GET /market/currencies/history
    """
    _require_category(category)
    cache = _pipeline(request).cache
    if date is None:
        return await cache.read_yesterday(category)
    try:
        return await cache.read_historical(category, date)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# ============================================
# OHLC Endpoints
# ============================================

@app.get("/ohlc/{item_code}/today", response_model=OHLCRecord, tags=["OHLC"])
async def get_today_ohlc(item_code: str, request: Request):
    record = await _pipeline(request).ohlc.get_today(item_code)
    if record is None:
        raise HTTPException(status_code=404, detail=f"No OHLC data for {item_code.upper()} today")
    return record


@app.get("/ohlc/{item_code}/history", response_model=OHLCRecord, tags=["OHLC"])
async def get_historical_ohlc(
    item_code: str,
    request: Request,
    date: str = Query(..., description="ISO (2024-03-20) or Jalali (1403/01/01)"),
):
    """
    OHLC for one item and one past day.

    Example:
        GET /ohlc/USD_SELL/history?date=2024-03-20
    """
    try:
        day = parse_date(date)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    record = await _pipeline(request).ohlc.get_historical(item_code, day)
    if record is None:
        raise HTTPException(status_code=404, detail=f"No OHLC data for {item_code.upper()} on {day.isoformat()}")
    return record


# ============================================
# Scheduler Endpoints
# ============================================

@app.get("/scheduler", tags=["Scheduler"])
async def scheduler_status(request: Request):
    return _pipeline(request).scheduler.get_status()


@app.post("/scheduler/trigger", tags=["Scheduler"])
async def trigger_scheduler(request: Request):
    """Run a refresh cycle now. Dropped if one is already running."""
    return await _pipeline(request).scheduler.trigger_manual_fetch()
