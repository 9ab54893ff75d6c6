"""
FastAPI backend for the lead workflow automation engine.

Wires the execution engine through the dependency injection container and
exposes the thin workflow API.
"""

import logging
from datetime import datetime
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, ORJSONResponse

from core.container import container
from core.config import Settings
from core.logging import configure_logging, get_logger
from routers import workflow
from services import scheduler

# Initialize settings and logging
settings = Settings()
configure_logging(settings)
logger = get_logger(__name__)

# Suppress noisy loggers
logging.getLogger("uvicorn").setLevel(logging.WARNING)
logging.getLogger("watchfiles").setLevel(logging.WARNING)

REPUTATION_JOB_ID = "reputation-check"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    logger.info("Starting workflow engine")

    await container.database().startup()
    await container.cache().startup()

    # Resume timers call back into the executor
    container.timer().bind(container.workflow_executor().on_timer)

    scheduler.start_scheduler()
    scheduler.register_interval_job(
        REPUTATION_JOB_ID,
        settings.reputation_check_interval,
        container.reputation().check_reputation,
    )
    restored = await container.workflow_service().restore_schedules()

    # Re-arm timers and adopt interrupted executions before serving
    recovery_sweeper = container.recovery_sweeper()
    stats = await recovery_sweeper.scan_on_startup()
    await recovery_sweeper.start()

    logger.info("Services started successfully", schedules=restored, **stats)
    yield

    # Shutdown
    await recovery_sweeper.stop()
    scheduler.shutdown_scheduler()
    await container.workflow_service().drain()
    await container.webhook_caller().aclose()
    await container.cache().shutdown()
    await container.database().shutdown()
    logger.info("Services shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Workflow Engine",
    version="1.0.0",
    description="Trigger-driven workflow automation for leads and messaging",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception", path=request.url.path,
                 error=f"{type(exc).__name__}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": f"{type(exc).__name__}: {exc}",
            "detail": "Internal server error"
        }
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(workflow.router)


@app.get("/health")
async def health_check():
    """Detailed health check."""
    sweeper = container.recovery_sweeper()
    return {
        "status": "OK",
        "service": "workflow-engine",
        "version": "1.0.0",
        "environment": "development" if settings.debug else "production",
        "redis_enabled": settings.redis_enabled,
        "scheduler_running": scheduler.get_scheduler().running,
        "recovery_sweeper": sweeper.running,
        "timestamp": datetime.now().isoformat()
    }


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting workflow engine", host=settings.host, port=settings.port,
                debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="warning",
    )
