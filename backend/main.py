from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from config import settings
from api import admin_router, public_router
from api.envelope import register_exception_handlers
from models.database import AsyncSessionLocal, init_database
from services.queue import queue_service
from utils.logger import setup_logging, get_logger
from utils.utcnow import utc_iso

# Setup logging
setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON, log_file=settings.LOG_FILE)
logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting marketpipe API...")

    await init_database()
    logger.info("Database initialized")

    if queue_service.is_configured():
        try:
            await queue_service.setup_topology()
            logger.info("Broker topology declared", exchange=queue_service.exchange_name)
        except Exception as e:
            # Admin reads keep working; publishes report not-accepted until the broker is back.
            logger.error("Broker topology setup failed", error=str(e))
    else:
        logger.warning("RABBITMQ_URL not set; pipeline publishing disabled")

    try:
        yield
    finally:
        logger.info("Shutting down...")
        await queue_service.close()
        logger.info("Shutdown complete")


app = FastAPI(
    title="marketpipe",
    description="Queue-driven AI prediction-market pipeline: admin and public API",
    version="1.0.0",
    lifespan=lifespan,
)

register_exception_handlers(app)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining"],
)

# API routes
app.include_router(admin_router, prefix="/api/v1")
app.include_router(public_router, prefix="/api/v1")


# Health checks
@app.get("/health")
async def health_check():
    """Basic health check - for load balancers"""
    return {"status": "ok"}


@app.get("/health/live")
async def liveness_check():
    """Liveness probe - is the service running?"""
    return {"status": "alive", "timestamp": utc_iso()}


@app.get("/health/ready")
async def readiness_check():
    """Readiness probe - can the service reach its store?"""
    checks = {"database": False, "broker_configured": queue_service.is_configured()}
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.warning("Readiness database check failed", error=str(e))

    return {
        "status": "ready" if checks["database"] else "not_ready",
        "checks": checks,
        "timestamp": utc_iso(),
    }


if __name__ == "__main__":
    import os
    import uvicorn

    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port, timeout_keep_alive=30)
