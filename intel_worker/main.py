"""Main entry point for the intel worker service."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import redis.asyncio as redis
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from intel_worker.batch import BatchOrchestrator
from intel_worker.config import Settings, get_settings
from intel_worker.lib.json_logger import setup_json_logging, setup_text_logging
from intel_worker.queue import HttpIntelligenceService, QueueManager, RecurringScheduler
from intel_worker.routes import batch, health, jobs, queues, schedules

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT_SECONDS = 30.0


def configure_logging(settings: Settings) -> None:
    if settings.log_format == "json":
        setup_json_logging(level=settings.log_level, redact_pii=True)
    else:
        setup_text_logging(level=settings.log_level)


def create_app(
    manager: Optional[QueueManager] = None,
    orchestrator: Optional[BatchOrchestrator] = None,
    settings: Optional[Settings] = None,
    start_workers: Optional[bool] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        manager: Queue manager to serve (one on settings.redis_url by default)
        orchestrator: Batch orchestrator (HTTP backed by default)
        settings: Settings override (defaults to environment settings)
        start_workers: Start worker pools and the scheduler in the lifespan (defaults to settings)
    """
    settings = settings or get_settings()
    configure_logging(settings)
    if start_workers is None:
        start_workers = settings.start_workers

    service = HttpIntelligenceService(
        settings.intel_service_url,
        service_token=settings.service_token,
        timeout=settings.http_timeout_seconds,
    )
    owned_client = None
    if manager is None:
        owned_client = redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        manager = QueueManager(
            owned_client,
            poll_interval=settings.worker_poll_interval_seconds,
            max_poll_interval=settings.worker_max_poll_interval_seconds,
            prefix=settings.redis_key_prefix,
        )
        manager.register_service(service)
    if orchestrator is None:
        orchestrator = BatchOrchestrator.for_researcher(service, timeout_seconds=settings.batch_timeout_seconds)
    scheduler = RecurringScheduler(manager, interval=settings.schedule_poll_interval_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run the worker pools and the recurring scheduler alongside the HTTP server."""
        if start_workers:
            manager.start()
            scheduler.start()
            logger.info("Background worker pools started")
        yield
        # Shutdown: stop claiming, let active jobs finish
        await scheduler.stop()
        await manager.shutdown(timeout=SHUTDOWN_TIMEOUT_SECONDS)
        await service.close()
        if owned_client is not None:
            await owned_client.aclose()
        logger.info("Background worker pools stopped")

    app = FastAPI(
        title="Intel Worker",
        description="Job queues and batch research for the sales intelligence dashboard",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.queue_manager = manager
    app.state.batch_orchestrator = orchestrator
    app.state.scheduler = scheduler

    # CORS middleware - origins from environment variable
    cors_origins = [origin.strip() for origin in settings.cors_origins.split(",") if origin.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(health.router, prefix="/health", tags=["Health"])
    app.include_router(jobs.router, prefix="/jobs", tags=["Jobs"])
    app.include_router(queues.router, prefix="/queues", tags=["Queues"])
    app.include_router(batch.router, prefix="/batch", tags=["Batch"])
    app.include_router(schedules.router, prefix="/schedules", tags=["Schedules"])

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": "Intel Worker",
            "version": "0.1.0",
            "status": "running",
            "queues": manager.queue_names,
        }

    return app


if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "intel_worker.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug,
    )
