"""
FastAPI Ownership Screening API Server

Provides REST API endpoints for supplier screening and ownership discovery.
Wraps the risk screening engine and discovery pipeline.

Usage:
    uvicorn api.server:app --reload --port 8000
"""

import os
import time
import logging
import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Depends, Query, Security
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from api.models import (
    ScreeningRequest,
    ScreeningResponse,
    BatchScreeningRequest,
    BatchScreeningResponse,
    MatchDetail,
    DiscoveryRequest,
    DiscoveryResponse,
    EdgeDetail,
    TraversalNode,
    GraphResponse,
    HealthResponse,
    ErrorResponse,
)
from api.middleware import (
    setup_cors,
    setup_exception_handlers,
    RequestLoggingMiddleware,
)
from audit_logger import configure_logging
from config_manager import get_config, ConfigManager, ConfigurationError
from database import DatabaseCacheStore
from monitoring import get_metrics
from ownership import CompanyRecord
from ownership_graph import DIRECTION_BOTH
from pipeline import DiscoveryPipeline, build_cache_store
from restricted_list import RestrictedListUnavailableError, RestrictedPartyList, load_entries_file
from screener import RiskScreeningEngine
from xml_utils import sanitize_for_logging

# Setup logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Environment variables with defaults
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))
CONFIG_PATH = os.getenv("CONFIG_PATH", "config.yaml")
RESTRICTED_LIST_PATH = os.getenv("RESTRICTED_LIST_PATH", "")
API_KEY = os.getenv("API_KEY", "")  # Required for authenticated endpoints

# Global state
_engine: Optional[RiskScreeningEngine] = None
_pipeline: Optional[DiscoveryPipeline] = None
_restricted_list: Optional[RestrictedPartyList] = None
_config: Optional[ConfigManager] = None
_startup_time: Optional[datetime] = None
_discovery_lock = asyncio.Lock()  # One discovery run at a time
_executor = ThreadPoolExecutor(max_workers=4)  # For blocking screening and discovery work

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(api_key: Optional[str] = Security(api_key_header)) -> str:
    """Verify API key for protected endpoints.

    If API_KEY environment variable is not set, authentication is disabled.
    """
    if not API_KEY:
        # API key not configured - allow all requests (development mode)
        return "dev-mode"

    if not api_key:
        raise HTTPException(
            status_code=401, detail="Missing API key. Provide X-API-Key header."
        )

    if api_key != API_KEY:
        raise HTTPException(status_code=403, detail="Invalid API key")

    return api_key


def get_engine() -> RiskScreeningEngine:
    """Dependency to get the screening engine."""
    if _engine is None:
        raise HTTPException(
            status_code=503, detail="Screening engine not initialized. Service is starting up."
        )
    return _engine


def get_pipeline() -> DiscoveryPipeline:
    """Dependency to get the discovery pipeline."""
    if _pipeline is None:
        raise HTTPException(
            status_code=503, detail="Discovery pipeline not initialized. Service is starting up."
        )
    return _pipeline


def get_restricted_list() -> RestrictedPartyList:
    if _restricted_list is None:
        raise RestrictedListUnavailableError("Restricted-party list holder not initialized")
    return _restricted_list


def get_config_instance() -> ConfigManager:
    """Dependency to get the config instance."""
    global _config
    if _config is None:
        _config = get_config(CONFIG_PATH)
    return _config


def load_restricted_list(restricted_list: RestrictedPartyList, path: str) -> int:
    """Load the list file into the holder; an empty path leaves the list unloaded."""
    if not path:
        logger.warning("RESTRICTED_LIST_PATH not set; screening will return 503 until a list is loaded")
        return 0
    return restricted_list.load(load_entries_file(path))


# Create FastAPI application
app = FastAPI(
    title="Ownership Screening API",
    description="Screen suppliers against a restricted-party list, directly and through ownership links",
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
    """Build the pipeline and engine, and load the restricted-party list."""
    global _engine, _pipeline, _restricted_list, _config, _startup_time

    logger.info("Starting Ownership Screening API...")
    start_time = time.time()

    try:
        _config = get_config(CONFIG_PATH)
        logger.info(f"Configuration loaded from {CONFIG_PATH}")
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        raise
    configure_logging(_config)

    _pipeline = DiscoveryPipeline(_config, cache_store=build_cache_store(_config))
    _restricted_list = RestrictedPartyList()
    _engine = RiskScreeningEngine(_restricted_list, _pipeline.graph_store, _config,
                                  on_demand=_pipeline.discover_on_demand)

    # A missing list is not fatal at startup; scans fail closed with 503
    loop = asyncio.get_event_loop()
    try:
        count = await loop.run_in_executor(
            _executor, load_restricted_list, _restricted_list, RESTRICTED_LIST_PATH
        )
        logger.info(f"Loaded {count} restricted-party entries")
    except RestrictedListUnavailableError as e:
        logger.critical(f"Restricted-party list unavailable at startup: {e}")

    _startup_time = datetime.now(timezone.utc)
    logger.info("API ready in %.2f seconds", time.time() - start_time)


@app.on_event("shutdown")
async def shutdown():
    """Cleanup on shutdown."""
    logger.info("Shutting down Ownership Screening API...")
    if _pipeline is not None:
        _pipeline.cancel()
    if _engine is not None:
        _engine.close()


@app.post(
    "/api/v1/screen",
    response_model=ScreeningResponse,
    responses={
        200: {"model": ScreeningResponse, "description": "Screening completed"},
        401: {"model": ErrorResponse, "description": "Missing API key"},
        403: {"model": ErrorResponse, "description": "Invalid API key"},
        422: {"model": ErrorResponse, "description": "Validation error"},
        503: {"model": ErrorResponse, "description": "Restricted-party list unavailable"},
    },
    summary="Screen a supplier",
    description="Screen a supplier directly and through its ownership graph",
)
async def screen_supplier(
    request: ScreeningRequest,
    engine: RiskScreeningEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    """Screen one supplier.

    RestrictedListUnavailableError propagates to the 503 handler; a scan
    without a list is never reported as clear.
    """
    start_time = time.time()

    loop = asyncio.get_event_loop()
    result = await loop.run_in_executor(
        _executor, engine.screen, request.supplier_name, request.country_hint
    )

    payload = result.to_dict()
    payload["matches"] = [MatchDetail(**m) for m in payload["matches"]]
    return ScreeningResponse(
        **payload,
        processing_time_ms=int((time.time() - start_time) * 1000),
    )


@app.post(
    "/api/v1/screen/batch",
    response_model=BatchScreeningResponse,
    responses={
        200: {"model": BatchScreeningResponse, "description": "Batch screening completed"},
        401: {"model": ErrorResponse, "description": "Missing API key"},
        403: {"model": ErrorResponse, "description": "Invalid API key"},
        422: {"model": ErrorResponse, "description": "Validation error"},
        503: {"model": ErrorResponse, "description": "Restricted-party list unavailable"},
    },
    summary="Screen a supplier file",
    description="Screen every supplier in order and summarise the portfolio risk",
)
async def screen_batch(
    request: BatchScreeningRequest,
    engine: RiskScreeningEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    start_time = time.time()
    records = [CompanyRecord(name=s.supplier_name, country=s.country_hint) for s in request.suppliers]

    loop = asyncio.get_event_loop()
    report = await loop.run_in_executor(_executor, engine.screen_batch, records)

    return BatchScreeningResponse(
        **report.to_dict(),
        processing_time_ms=int((time.time() - start_time) * 1000),
    )


@app.post(
    "/api/v1/discovery/run",
    response_model=DiscoveryResponse,
    responses={
        200: {"model": DiscoveryResponse, "description": "Discovery finished"},
        401: {"model": ErrorResponse, "description": "Missing API key"},
        403: {"model": ErrorResponse, "description": "Invalid API key"},
        409: {"model": ErrorResponse, "description": "A discovery run is already in progress"},
        502: {"model": ErrorResponse, "description": "Every connector call failed"},
    },
    summary="Run ownership discovery",
    description="Discover ownership relationships for a batch of companies and install the new graph",
)
async def run_discovery(
    request: DiscoveryRequest,
    pipeline: DiscoveryPipeline = Depends(get_pipeline),
    api_key: str = Depends(verify_api_key),
):
    if _discovery_lock.locked():
        raise HTTPException(status_code=409, detail="A discovery run is already in progress")

    records = [
        CompanyRecord(name=c.name, aliases=frozenset(c.aliases), country=c.country, address=c.address)
        for c in request.companies
    ]
    async with _discovery_lock:
        loop = asyncio.get_event_loop()
        result = await loop.run_in_executor(_executor, pipeline.run, records)

    return DiscoveryResponse(**result.to_dict())


@app.post(
    "/api/v1/discovery/cancel",
    summary="Cancel the running discovery",
    description="Stop issuing new connector calls; in-flight calls finish or time out",
)
async def cancel_discovery(
    pipeline: DiscoveryPipeline = Depends(get_pipeline),
    api_key: str = Depends(verify_api_key),
):
    return {"cancelled": pipeline.cancel()}


@app.get(
    "/api/v1/graph/{name}",
    response_model=GraphResponse,
    summary="Ownership neighbourhood",
    description="Direct parents and subsidiaries of a company, plus everything reachable within depth hops",
)
async def get_graph(
    name: str,
    depth: int = Query(default=2, ge=1, le=5),
    pipeline: DiscoveryPipeline = Depends(get_pipeline),
    config: ConfigManager = Depends(get_config_instance),
    api_key: str = Depends(verify_api_key),
):
    loop = asyncio.get_event_loop()
    snapshot = await loop.run_in_executor(_executor, pipeline.graph_store.snapshot)

    found = snapshot.has_node(name)
    logger.debug("Graph lookup for %s (found=%s)", sanitize_for_logging(name), found)
    hits = snapshot.traverse(name, max_depth=depth, direction=DIRECTION_BOTH,
                             decay=config.screening.decay_factor) if found else []

    return GraphResponse(
        name=snapshot.display_name(name) if found else name,
        found=found,
        parents=[EdgeDetail(**e.to_dict()) for e in snapshot.parents_of(name)],
        subsidiaries=[EdgeDetail(**e.to_dict()) for e in snapshot.subsidiaries_of(name)],
        reachable=[TraversalNode(**h.to_dict()) for h in hits],
        stale=snapshot.stale,
    )


@app.post(
    "/api/v1/list/reload",
    summary="Reload the restricted-party list",
    description="Re-read the list file named by RESTRICTED_LIST_PATH",
    responses={503: {"model": ErrorResponse, "description": "List file missing or unreadable"}},
)
async def reload_list(
    restricted_list: RestrictedPartyList = Depends(get_restricted_list),
    api_key: str = Depends(verify_api_key),
):
    """The previous list stays in place when the file cannot be read."""
    if not RESTRICTED_LIST_PATH:
        raise RestrictedListUnavailableError("RESTRICTED_LIST_PATH is not set")
    loop = asyncio.get_event_loop()
    entries = await loop.run_in_executor(_executor, load_entries_file, RESTRICTED_LIST_PATH)
    count = restricted_list.load(entries)
    return {"entries_loaded": count}


@app.get(
    "/api/v1/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check list and graph status",
)
async def health_check(
    config: ConfigManager = Depends(get_config_instance),
):
    """Always HTTP 200; status is "degraded" while the list is not loaded."""
    uptime_seconds = None
    if _startup_time:
        uptime_seconds = int((datetime.now(timezone.utc) - _startup_time).total_seconds())

    list_loaded = _restricted_list is not None and _restricted_list.is_loaded
    loaded_at = _restricted_list.loaded_at if _restricted_list is not None else None
    graph = _pipeline.graph_store.current().stats() if _pipeline is not None else {}
    database_ok = None
    if _pipeline is not None and isinstance(_pipeline.cache_store, DatabaseCacheStore):
        loop = asyncio.get_event_loop()
        database_ok = await loop.run_in_executor(_executor, _pipeline.cache_store.provider.health_check)

    return HealthResponse(
        status="healthy" if list_loaded else "degraded",
        list_loaded=list_loaded,
        entries_loaded=len(_restricted_list) if _restricted_list is not None else 0,
        list_loaded_at=loaded_at.isoformat() if loaded_at else None,
        graph=graph,
        cache_backend=config.cache.backend,
        database_ok=database_ok,
        algorithm_version=config.algorithm.version,
        uptime_seconds=uptime_seconds,
    )


@app.get(
    "/api/v1/metrics",
    summary="Operation statistics",
    description="In-process timing statistics for discovery runs and scans",
)
async def operation_metrics(api_key: str = Depends(verify_api_key)):
    return get_metrics()


@app.get("/metrics", include_in_schema=False)
async def prometheus_metrics():
    """Prometheus exposition format."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Root redirect to docs
@app.get("/", include_in_schema=False)
async def root():
    """Redirect root to API documentation."""
    from fastapi.responses import RedirectResponse

    return RedirectResponse(url="/api/docs")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)
