"""
Application entrypoint with database pool and directory engine lifecycle.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from identity_cache.config import settings
from identity_cache.db.pool import db_pool
from identity_cache.infrastructure.observability.logging import (
    get_logger,
    log_request,
    setup_logging,
)
from identity_cache.routes import directory, health, maintenance
from identity_cache.services.engine import build_engine

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: pool, then schema and engine startup sequence. Shutdown in reverse."""
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    startup_tasks = []
    engine = None

    try:
        logger.info("Initializing database pool")
        await db_pool.initialize()
        startup_tasks.append("database_pool")

        logger.info("Starting directory engine")
        engine = build_engine(db_pool)
        report = await engine.start()
        startup_tasks.append("directory_engine")
        app.state.engine = engine

        logger.info(
            "All services initialized successfully",
            services=startup_tasks,
            schema_version=report["schema_version"],
        )

    except Exception as e:
        logger.error("Failed to initialize services", error=str(e), completed_tasks=startup_tasks)

        if engine is not None:
            try:
                await engine.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up directory engine", error=str(cleanup_error))

        if "database_pool" in startup_tasks:
            try:
                await db_pool.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up database pool", error=str(cleanup_error))

        raise

    yield

    logger.info("Application shutting down")
    shutdown_errors = []
    app.state.engine = None

    try:
        logger.info("Closing directory engine")
        await engine.close()
    except Exception as e:
        logger.error("Error closing directory engine", error=str(e))
        shutdown_errors.append(f"Engine: {e}")

    # Close database pool last (may have active connections)
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
    title="Identity Cache",
    description="Local directory cache reconciled against a remote messaging authority",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(directory.router)
app.include_router(maintenance.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    log_request(request.method, request.url.path, response.status_code, round(process_time, 2))
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
