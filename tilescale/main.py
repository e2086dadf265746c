"""
Tilescale Super-Resolution Service - Main Application

FastAPI application with:
- API versioning (/api/v1/)
- Structured logging with structlog
- Prometheus metrics
- Global exception handling
- Remote or local enhancement, chosen once at startup
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from tilescale.core.config import settings
from tilescale.core.logging import setup_logging, get_logger
from tilescale.core.exceptions import register_exception_handlers
from tilescale.core.metrics import set_app_info, http_requests_total, http_request_duration_seconds
from tilescale.api.v1 import api_v1_router
from tilescale.pipeline.enhancer import create_enhancement_client


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
    """Application lifespan handler - startup and shutdown."""
    startup_start = time.time()
    
    logger.info(
        "application_starting",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )
    
    # One enhancement client per process; its mode never changes afterwards
    app.state.enhancement_client = create_enhancement_client()
    
    set_app_info(
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )
    
    startup_time = time.time() - startup_start
    logger.info(
        "application_ready",
        startup_time_seconds=startup_time,
        enhancement_mode=app.state.enhancement_client.mode.value
    )
    
    yield
    
    # Shutdown
    logger.info("application_shutting_down")
    await app.state.enhancement_client.aclose()
    logger.info("application_shutdown_complete")


# =============================================================================
# Create FastAPI Application
# =============================================================================
app = FastAPI(
    title=settings.APP_NAME,
    description="""
    Tile-based image super-resolution.
    
    - **Tiling**: the input is split into overlapping tiles
    - **Enhancement**: tiles are enhanced concurrently by a remote model,
      or resized locally when no endpoint is configured
    - **Merging**: tiles are feather-blended into a seam-free canvas
    - **Final pass**: optional whole-image consistency pass
    - **Observability**: Structured logging, Prometheus metrics
    
    ## API Versioning
    
    All endpoints are versioned under `/api/v1/`
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
    
    # Record metrics
    http_request_duration_seconds.labels(
        method=request.method,
        endpoint=request.url.path
    ).observe(duration)
    
    http_requests_total.labels(
        method=request.method,
        endpoint=request.url.path,
        status=response.status_code
    ).inc()
    
    # Add timing header
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
        "upscale": "/api/v1/upscale",
        "metrics": "/api/v1/metrics"
    }


@app.get("/health", tags=["health"])
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION
    }


@app.get("/ready", tags=["health"])
async def ready(request: Request):
    """Readiness check - the enhancement client is up and its mode is known."""
    client = getattr(request.app.state, "enhancement_client", None)
    checks = {
        "enhancement_client": client is not None
    }
    
    all_ready = all(checks.values())
    
    return {
        "ready": all_ready,
        "checks": checks,
        "enhancement": client.describe() if client is not None else None
    }


# =============================================================================
# Development Server
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "tilescale.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
