"""
FastAPI Sanctions Corpus API Server

Serves the search and detail contracts over the file-based sanctions
corpus produced by the ingestion pipeline. Every request re-reads the
corpus files; the only cross-request state is the detail record cache
owned by the search engine.

Usage:
    uvicorn api.server:app --reload --port 8000
"""

import os
import logging
import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from functools import partial
from typing import Optional

import psutil
from fastapi import FastAPI, Depends, Query
from fastapi.responses import RedirectResponse

from api.models import (
    SearchResponse,
    HealthResponse,
    ErrorResponse,
)
from api.middleware import (
    setup_cors,
    setup_exception_handlers,
    RequestLoggingMiddleware,
)
from config_manager import get_config, ConfigManager, ConfigurationError
from errors import NotFoundError, SanctionsCorpusError
from search_engine import Filters, SearchEngine, SortSpec

# Setup logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Environment variables with defaults
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))
DATA_DIR = os.getenv("DATA_DIR", "")  # Empty: storage.data_directory from config
CONFIG_PATH = os.getenv("CONFIG_PATH") or None  # None: search the default locations

# Global state
_engine: Optional[SearchEngine] = None
_config: Optional[ConfigManager] = None
_startup_time: Optional[datetime] = None
_executor = ThreadPoolExecutor(max_workers=4)  # Corpus reads are blocking file I/O


def get_config_instance() -> ConfigManager:
    """Dependency to get the config instance."""
    global _config
    if _config is None:
        _config = get_config(CONFIG_PATH)
    return _config


def get_engine() -> SearchEngine:
    """Dependency to get the search engine instance."""
    global _engine
    if _engine is None:
        _engine = SearchEngine(config=get_config_instance(), data_dir=DATA_DIR or None)
    return _engine


async def _run_blocking(func, *args, **kwargs):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_executor, partial(func, *args, **kwargs))


# Create FastAPI application
app = FastAPI(
    title="Sanctions Corpus API",
    description="Search and detail lookup over the consolidated UN, EU and US sanctions lists",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# Setup middleware
setup_cors(app)
app.add_middleware(RequestLoggingMiddleware)
setup_exception_handlers(app)


@app.on_event("startup")
async def startup():
    """Load configuration and create the search engine."""
    global _startup_time

    logger.info("🚀 Starting Sanctions Corpus API...")
    try:
        engine = get_engine()
        logger.info(f"✓ Configuration loaded, serving corpus from {engine.data_dir}")
    except ConfigurationError as e:
        logger.error(f"✗ Configuration error: {e}")
        raise

    _startup_time = datetime.now(timezone.utc)


@app.on_event("shutdown")
async def shutdown():
    """Cleanup on shutdown."""
    logger.info("Shutting down Sanctions Corpus API...")
    _executor.shutdown(wait=False)


@app.get(
    "/api/sanctions",
    response_model=SearchResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid filter value"},
        404: {"model": ErrorResponse, "description": "No corpus available"},
        405: {"model": ErrorResponse, "description": "Method not allowed"},
        500: {"model": ErrorResponse, "description": "Internal error"},
    },
    summary="Search sanctions records",
    description="Free-text search with type, country, program, source and date-range filters",
)
async def search_sanctions(
    query: str = Query(default="", description="Free-text query"),
    page: Optional[str] = Query(default=None, description="1-indexed page number"),
    limit: Optional[str] = Query(default=None, description="Page size"),
    type: Optional[str] = Query(default=None, description="Entity type filter"),
    country: Optional[str] = Query(default=None, description="Country filter"),
    program: Optional[str] = Query(default=None, description="Program filter"),
    source: Optional[str] = Query(default=None, description="Source filter (UN, EU, US)"),
    date_from: Optional[str] = Query(default=None, alias="dateFrom", description="Inclusive lower date bound"),
    date_to: Optional[str] = Query(default=None, alias="dateTo", description="Inclusive upper date bound"),
    sort: Optional[str] = Query(default=None, description="name, type, source, country or lastUpdated"),
    order: Optional[str] = Query(default=None, description="asc or desc"),
    engine: SearchEngine = Depends(get_engine),
):
    """Return one page of matching records in list-view projection."""
    filters = Filters(
        type=type,
        country=country,
        program=program,
        source=source,
        date_from=date_from,
        date_to=date_to,
    )
    sort_spec = SortSpec(
        field=sort or engine.settings.default_sort,
        order=order or engine.settings.default_order,
    )
    pagination = engine.resolve_pagination(page, limit)

    return await _run_blocking(engine.search, query, filters, sort_spec, pagination)


@app.get(
    "/api/sanctions/{record_id}",
    responses={
        400: {"model": ErrorResponse, "description": "Missing record id"},
        404: {"model": ErrorResponse, "description": "Record not found"},
        500: {"model": ErrorResponse, "description": "Internal error"},
    },
    summary="Get one sanctions record",
    description="Full record with normalized dates, unified identifiers and _summary",
)
async def get_sanction(
    record_id: str,
    refresh: bool = Query(default=False, description="Bypass the record cache"),
    engine: SearchEngine = Depends(get_engine),
):
    """Return the full record for ``record_id``."""
    return await _run_blocking(engine.get_record, record_id, refresh=refresh)


@app.get(
    "/api/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Service health and corpus status",
)
async def health_check(engine: SearchEngine = Depends(get_engine)):
    """Return health status including record counts. Always returns HTTP 200."""
    timestamp = datetime.now(timezone.utc).isoformat()

    memory_usage_mb = None
    try:
        memory_usage_mb = round(psutil.Process().memory_info().rss / (1024 * 1024), 2)
    except psutil.Error as e:
        logger.debug(f"Memory usage unavailable: {e}")

    uptime_seconds = None
    if _startup_time:
        uptime_seconds = int((datetime.now(timezone.utc) - _startup_time).total_seconds())

    try:
        stats = await _run_blocking(engine.stats)
        return HealthResponse(
            status="healthy",
            records=stats["total"],
            by_source=stats["bySource"],
            version=stats["version"],
            last_updated=stats["lastUpdated"],
            timestamp=timestamp,
            uptime_seconds=uptime_seconds,
            memory_usage_mb=memory_usage_mb,
        )
    except NotFoundError as e:
        return HealthResponse(
            status="degraded",
            timestamp=timestamp,
            uptime_seconds=uptime_seconds,
            memory_usage_mb=memory_usage_mb,
            error_message=str(e),
        )
    except (SanctionsCorpusError, OSError) as e:
        # Always return HTTP 200, but report error in JSON
        return HealthResponse(
            status="error",
            timestamp=timestamp,
            uptime_seconds=uptime_seconds,
            memory_usage_mb=memory_usage_mb,
            error_message=str(e),
        )


# Root redirect to docs
@app.get("/", include_in_schema=False)
async def root():
    """Redirect root to API documentation."""
    return RedirectResponse(url="/api/docs")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)
