# daily_calls/main.py
"""
HTTP surface: manual trigger, queue status and provider webhooks.

The API process only enqueues; jobs run in the worker process
(`python -m daily_calls.jobs.worker`).
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from daily_calls.auth.verify import NotAuthenticated, not_authenticated_handler
from daily_calls.config import settings
from daily_calls.db.pool import db_pool
from daily_calls.infrastructure.observability.logging import get_logger, log_request, setup_logging
from daily_calls.providers.factory import (
    close_call_provider,
    get_call_provider,
    validate_call_provider_config,
)
from daily_calls.routes import health, queue, webhooks
from daily_calls.services.redis_client import fast_redis

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""

    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    startup_tasks = []

    try:
        logger.info("Initializing database pool")
        await db_pool.initialize()
        startup_tasks.append("database_pool")

        logger.info("Initializing Redis connection")
        await fast_redis.initialize()
        startup_tasks.append("redis")

        provider_config = validate_call_provider_config()
        if not provider_config["valid"]:
            logger.warning("Call provider configuration incomplete", **provider_config)
        get_call_provider()
        startup_tasks.append("call_provider")

        logger.info("All services initialized successfully", services=startup_tasks)

    except Exception as e:
        logger.error("Failed to initialize services", error=str(e), completed_tasks=startup_tasks)

        if "redis" in startup_tasks:
            try:
                await fast_redis.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up Redis", error=str(cleanup_error))

        if "database_pool" in startup_tasks:
            try:
                await db_pool.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up database pool", error=str(cleanup_error))

        raise

    yield

    logger.info("Application shutting down")

    shutdown_errors = []

    try:
        await close_call_provider()
    except Exception as e:
        logger.error("Error closing call provider", error=str(e))
        shutdown_errors.append(f"CallProvider: {e}")

    try:
        logger.info("Closing Redis connection")
        await fast_redis.close()
    except Exception as e:
        logger.error("Error closing Redis", error=str(e))
        shutdown_errors.append(f"Redis: {e}")

    try:
        logger.info("Closing database pool")
        await db_pool.close()
    except Exception as e:
        logger.error("Error closing database pool", error=str(e))
        shutdown_errors.append(f"Database: {e}")

    if shutdown_errors:
        logger.warning("Some services had shutdown errors", errors=shutdown_errors)
    else:
        logger.info("All services closed successfully")


app = FastAPI(
    title="Daily Calls",
    description="Scheduling and dispatch of daily outbound voice calls",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_exception_handler(NotAuthenticated, not_authenticated_handler)

# Include routers
app.include_router(health.router)
app.include_router(queue.router)
app.include_router(webhooks.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    log_request(
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round((time.time() - start_time) * 1000, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
