"""
EtsyFlow - Main Application

FastAPI application serving one in-memory batch per process:
- API versioning (/api/v1/)
- Structured logging with structlog
- Prometheus metrics
- Global exception handling
- Preview storage abstraction (memory + local disk)
"""

import time
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from etsyflow.api.dependencies import build_orchestrator
from etsyflow.api.v1 import api_v1_router
from etsyflow.core.config import settings
from etsyflow.core.exceptions import register_exception_handlers
from etsyflow.core.logging import get_logger, setup_logging
from etsyflow.core.metrics import http_request_duration_seconds, http_requests_total, set_app_info
from etsyflow.pipeline.export import ExportPackager


# =============================================================================
# Initialize Logging
# =============================================================================
setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=settings.LOG_FORMAT_JSON
)
logger = get_logger(__name__)


# =============================================================================
# Lifespan Handler
# =============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the session orchestrator on startup; drain background work on shutdown."""
    logger.info(
        "application_starting",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    http_client = httpx.AsyncClient(timeout=settings.REMOTE_TIMEOUT_SECONDS)
    app.state.http_client = http_client
    app.state.orchestrator = build_orchestrator(settings, http_client=http_client)
    app.state.export_packager = ExportPackager(http_client=http_client)

    set_app_info(
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    if settings.ENHANCEMENT_REQUIRE_API_KEY and not settings.ENHANCEMENT_API_KEY:
        logger.warning("enhancement_api_key_missing", hint="POST /api/v1/batch/credentials")

    logger.info("application_ready")

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await app.state.orchestrator.aclose()
    app.state.orchestrator.reset()
    await http_client.aclose()
    logger.info("application_shutdown_complete")


# =============================================================================
# Create FastAPI Application
# =============================================================================
app = FastAPI(
    title=settings.APP_NAME,
    description="""
    Batch product-photo enhancement for Etsy listings:

    - **Normalization**: 10MB upload limit, HEIC/HEIF conversion, memory-safe downsampling
    - **Analysis**: listing title, tags, category and description per photo
    - **Enhancement**: 2K/4K regeneration that keeps the product untouched
    - **Export**: one ZIP of optimized PNGs

    ## Asset States

    queued -> analyzing -> ready -> processing -> completed (or error)
    """,
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)


# =============================================================================
# Middleware
# =============================================================================

# CORS
cors_origins = settings.CORS_ORIGINS.split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request timing middleware
@app.middleware("http")
async def add_request_timing(request: Request, call_next):
    """Track request timing for metrics."""
    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    http_request_duration_seconds.labels(
        method=request.method,
        endpoint=request.url.path
    ).observe(duration)

    http_requests_total.labels(
        method=request.method,
        endpoint=request.url.path,
        status=response.status_code
    ).inc()

    response.headers["X-Process-Time"] = str(duration)

    return response


# =============================================================================
# Register Exception Handlers
# =============================================================================
register_exception_handlers(app)


# =============================================================================
# Include API Routers
# =============================================================================
app.include_router(api_v1_router)


# =============================================================================
# Root Endpoints
# =============================================================================

@app.get("/", tags=["root"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "docs": "/api/docs",
        "api_v1": "/api/v1",
        "metrics": "/api/v1/metrics"
    }


@app.get("/health", tags=["health"])
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION
    }


# =============================================================================
# Development Server
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "etsyflow.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
