"""
FreshMate Ripeness Detection - Main Application

FastAPI application with:
- API versioning (/api/v1/)
- Structured logging with structlog
- Prometheus metrics
- Global exception handling
- Storage abstraction (local + S3-compatible)
"""

import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from freshmate.core.config import settings
from freshmate.core.logging import setup_logging, get_logger, request_id_var
from freshmate.core.exceptions import register_exception_handlers
from freshmate.core.metrics import set_app_info, http_requests_total, http_request_duration_seconds
from freshmate.core.storage import StorageFactory
from freshmate.api.v1 import api_v1_router
from freshmate.api.dependencies import create_inference_client
from freshmate.engines.detection.services import drain_pending_rollbacks


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
    logger.info(
        "application_starting",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    app.state.inference_client = create_inference_client()
    logger.info(
        "inference_client_ready",
        url=settings.INFERENCE_SERVICE_URL,
        timeout_seconds=settings.INFERENCE_TIMEOUT_SECONDS,
        verify_tls=settings.INFERENCE_VERIFY_TLS
    )

    StorageFactory.get_storage()

    set_app_info(
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    logger.info("application_ready")

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await drain_pending_rollbacks(timeout=settings.STORAGE_TIMEOUT_SECONDS)
    await app.state.inference_client.aclose()
    logger.info("application_shutdown_complete")


# =============================================================================
# Create FastAPI Application
# =============================================================================
app = FastAPI(
    title=settings.APP_NAME,
    description="""
    Fruit ripeness detection backed by a remote ML inference service.

    ## Detection Flow

    1. **Health check** - the inference service must report healthy
    2. **Store** - the uploaded image is stored before inference
    3. **Predict** - the image is sent to the model
    4. **Calibrate** - raw confidence is mapped into the band of its ripeness
       (rotten 0.01-0.19, unripe 0.20-0.69, ripe 0.70-1.00)

    A failure after the image is stored deletes it again.

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
    """Track request timing for metrics and tag the request with an id."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    token = request_id_var.set(request_id)
    start_time = time.time()
    try:
        response = await call_next(request)
    finally:
        request_id_var.reset(token)
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

    response.headers["X-Process-Time"] = str(duration)
    response.headers["X-Request-ID"] = request_id

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


@app.get("/ready", tags=["health"])
async def ready(request: Request):
    """Readiness check - verifies dependencies are available."""
    checks = {
        "inference_service": await request.app.state.inference_client.health_check(),
        "storage": False,
    }

    try:
        checks["storage"] = await StorageFactory.get_storage().is_available()
    except Exception as e:
        logger.warning("storage_readiness_failed", error=str(e))

    all_ready = all(checks.values())

    return JSONResponse(
        status_code=200 if all_ready else 503,
        content={
            "ready": all_ready,
            "checks": checks,
        }
    )


# =============================================================================
# Development Server
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "freshmate.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
