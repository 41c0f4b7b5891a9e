"""Per-queue endpoints: inspection, queue actions, and bulk removal."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import Optional
import logging

from intel_worker.queue import JobQueue, JobState, QueueError, QueueManager
from intel_worker.config import Settings
from intel_worker.routes.deps import bad_request, get_app_settings, get_manager, http_error

router = APIRouter()
logger = logging.getLogger(__name__)

DEFAULT_CLEAN_GRACE_MS = 24 * 60 * 60 * 1000
DEFAULT_CLEAN_LIMIT = 100


class CleanOptions(BaseModel):
    grace_ms: int = DEFAULT_CLEAN_GRACE_MS
    limit: int = DEFAULT_CLEAN_LIMIT
    type: str = "completed"


class QueueActionRequest(BaseModel):
    """Queue management action."""
    action: str  # pause | resume | clean | drain
    options: CleanOptions = Field(default_factory=CleanOptions)


def _resolve(manager: QueueManager, queue_name: str) -> JobQueue:
    try:
        return manager.get_queue(queue_name)
    except QueueError as e:
        raise http_error(e)


def _parse_state(status: str) -> JobState:
    try:
        return JobState(status)
    except ValueError:
        raise bad_request(
            "invalid_status",
            f"Invalid status. Must be one of: {', '.join(state.value for state in JobState)}",
        )


@router.get("/{queue_name}")
async def get_queue_details(
    queue_name: str,
    include_jobs: bool = False,
    status: Optional[str] = None,
    limit: Optional[int] = None,
    manager: QueueManager = Depends(get_manager),
    settings: Settings = Depends(get_app_settings),
):
    """Stats, configuration and rate-limit usage of one queue."""
    queue = _resolve(manager, queue_name)
    counts = await queue.stats()
    response = {
        "queue": queue.name.value,
        "paused": await queue.is_paused(),
        "counts": counts,
        "total_jobs": sum(counts.values()),
        "config": queue.config.to_dict(),
        "rate_limit": queue.rate_limit_stats(),
        "timestamp": manager.clock().isoformat(),
    }

    if include_jobs or status:
        state = _parse_state(status) if status else None
        jobs = await queue.list_jobs(state=state, limit=limit or settings.job_list_limit)
        response["jobs"] = [job.model_dump(mode="json") for job in jobs]
    return response


@router.post("/{queue_name}")
async def manage_queue(
    queue_name: str,
    request: QueueActionRequest,
    manager: QueueManager = Depends(get_manager),
):
    """Pause, resume, clean or drain one queue."""
    queue = _resolve(manager, queue_name)
    name = queue.name.value

    if request.action == "pause":
        await queue.pause()
        return {"success": True, "action": "pause", "message": f"Queue {name} paused"}

    if request.action == "resume":
        await queue.resume()
        manager.wake(queue.name)
        return {"success": True, "action": "resume", "message": f"Queue {name} resumed"}

    if request.action == "clean":
        options = request.options
        try:
            removed = await queue.clean(options.grace_ms / 1000, options.type, options.limit)
        except QueueError as e:
            raise http_error(e)
        return {
            "success": True,
            "action": "clean",
            "message": f"Cleaned {len(removed)} {options.type} jobs from {name} queue",
            "removed": removed,
        }

    if request.action == "drain":
        count = await queue.drain()
        return {"success": True, "action": "drain", "message": f"Drained {count} jobs from {name} queue"}

    raise bad_request(
        "invalid_action",
        f"Invalid action: {request.action}. Must be one of: pause, resume, clean, drain",
    )


@router.delete("/{queue_name}")
async def bulk_remove(
    queue_name: str,
    job_ids: Optional[str] = None,
    status: Optional[str] = None,
    manager: QueueManager = Depends(get_manager),
):
    """Remove a comma-separated list of jobs, or every job in one state."""
    queue = _resolve(manager, queue_name)
    name = queue.name.value

    if job_ids:
        ids = [job_id.strip() for job_id in job_ids.split(",") if job_id.strip()]
        removed = await queue.remove_many(ids)
        return {
            "success": True,
            "removed": removed,
            "message": f"Removed {removed} of {len(ids)} jobs from {name} queue",
        }

    if status:
        try:
            removed = await queue.remove_by_state(status)
        except QueueError as e:
            raise http_error(e)
        return {
            "success": True,
            "removed": removed,
            "message": f"Removed {removed} {status} jobs from {name} queue",
        }

    raise bad_request("missing_selector", "Must specify either job_ids or status for bulk removal")
