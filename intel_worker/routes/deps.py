"""Shared route dependencies."""

from fastapi import HTTPException, Request

from intel_worker.batch.orchestrator import BatchOrchestrator
from intel_worker.config import Settings
from intel_worker.queue.errors import QueueError
from intel_worker.queue.manager import QueueManager


def get_manager(request: Request) -> QueueManager:
    """Queue manager created by the app factory (for dependency injection)."""
    return request.app.state.queue_manager


def get_orchestrator(request: Request) -> BatchOrchestrator:
    return request.app.state.batch_orchestrator


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def http_error(exc: QueueError, status_code: int = None) -> HTTPException:
    """Translate a core exception into an HTTP error."""
    return HTTPException(status_code=status_code or exc.status_code, detail=exc.to_detail())


def bad_request(error: str, message: str) -> HTTPException:
    return HTTPException(status_code=400, detail={"error": error, "message": message})
