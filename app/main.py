"""
Main FastAPI application for the Golf Matchup Settlement API.
"""
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy import text

from app.core.config import settings
from app.core.database import init_db
from app.core.logging import configure_logging, get_logger
from app.core.middleware import CorrelationIdMiddleware
from app.core.rate_limit import limiter
from app.core.scheduler import AutomationScheduler
from app.core import metrics
from app.services.core.circuit_breaker import get_all_breaker_states
from app.services.settlement.orchestrator import create_pipeline
from app.api.routes import matchup_results, pipeline, settlement
from app.api.routes.admin import settlement as admin_settlement

# Load environment variables from .env file
from dotenv import load_dotenv
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

# Configure structured logging with JSON formatter
configure_logging(
    level=settings.LOG_LEVEL,
    json_output=settings.is_production()
)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan events."""
    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    init_db()

    scheduler = AutomationScheduler()
    await scheduler.start()
    app.state.scheduler = scheduler
    logger.info("Automation scheduler started")

    app.state.pipeline = create_pipeline(scheduler=scheduler)
    if settings.PIPELINE_AUTOSTART:
        app.state.pipeline.start()

    logger.info("Application started")

    yield

    # Shutdown
    if app.state.pipeline is not None:
        await app.state.pipeline.wait_for_rounds_in_flight()
        await app.state.pipeline.dispose()
    await scheduler.stop()
    logger.info("Automation scheduler stopped")
    logger.info("Shutting down application")


# Create FastAPI app with rate limiting
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Round completion detection and settlement of golf matchup parlays",
    lifespan=lifespan
)
app.state.limiter = limiter
app.state.pipeline = None
app.state.scheduler = None
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add correlation ID middleware (must be added before CORS for proper header handling)
app.add_middleware(CorrelationIdMiddleware)

# Initialize Prometheus metrics BEFORE including routes
instrumentator = Instrumentator()
instrumentator.instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)
logger.info("Prometheus metrics initialized at /metrics")

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API v1
app.include_router(pipeline.router, prefix="/api/v1")
app.include_router(settlement.router, prefix="/api/v1")
app.include_router(matchup_results.router, prefix="/api/v1")
# Admin routes - not versioned
app.include_router(admin_settlement.router, prefix="/api/admin")


@app.get("/")
@limiter.limit("60/minute")
async def root(request: Request):
    """Root endpoint with API information."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
        "endpoints": {
            "api_version": "v1",
            "automation": "/api/v1/automation/pipeline",
            "round_completion": "/api/v1/round-completion",
            "ingest_results": "/api/v1/ingest-results",
            "settle_rounds": "/api/v1/settle-rounds",
            "settle_status": "/api/v1/settle-status",
            "matchup_results": "/api/v1/matchup-results",
            "admin": {
                "reverse_settlement": "/api/admin/reverse-settlement"
            },
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics"
        }
    }


@app.get("/health")
@limiter.limit("120/minute")  # Higher limit for health checks
async def health_check(request: Request):
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION
    }


@app.get("/api/health")
@limiter.limit("60/minute")
async def api_health(request: Request):
    """Detailed API health check with component-level status."""
    health_status = {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "components": {}
    }

    all_healthy = True

    # 1. Database Health Check
    try:
        from app.core.database import SessionLocal

        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()

        health_status["components"]["database"] = {"status": "connected"}
        metrics.update_db_pool_metrics()

    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        health_status["components"]["database"] = {
            "status": "unhealthy",
            "error": str(e)
        }
        all_healthy = False

    # 2. Scheduler Health Check
    scheduler = request.app.state.scheduler
    if scheduler is not None and scheduler.running:
        health_status["components"]["scheduler"] = {
            "status": "running",
            "jobs_count": scheduler.job_count()
        }
    else:
        health_status["components"]["scheduler"] = {"status": "stopped"}
        all_healthy = False

    # 3. Settlement pipeline
    pipeline_handle = request.app.state.pipeline
    if pipeline_handle is not None:
        status = pipeline_handle.status()
        health_status["components"]["pipeline"] = {
            "status": "initialized",
            "lifecycle": status["lifecycle"],
            "is_running": status["is_running"],
            "last_run_time": status["last_run_time"],
            "next_run_time": status["next_run_time"]
        }
    else:
        health_status["components"]["pipeline"] = {"status": "not_initialized"}

    # 4. Live scoring feed circuit breaker - does not affect overall health
    health_status["components"]["circuit_breakers"] = get_all_breaker_states()

    if not all_healthy:
        health_status["status"] = "degraded"

    status_code = 200 if health_status["status"] == "healthy" else 503

    return JSONResponse(
        status_code=status_code,
        content=health_status
    )


# Exception handlers
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler."""
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "detail": str(exc)}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG
    )
