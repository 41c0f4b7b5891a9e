"""Job endpoints: submit, inspect, and manage individual jobs."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import Optional
import logging

from intel_worker.queue import Job, QueueError, QueueManager, QueueName, UnknownQueue
from intel_worker.routes.deps import bad_request, get_manager, http_error

router = APIRouter()
logger = logging.getLogger(__name__)


class CreateJobRequest(BaseModel):
    """Request to add a job to one of the queues."""
    queue: str
    payload: dict
    priority: Optional[str] = None  # low | normal | high
    delay_ms: int = 0


def _ms_between(start, end) -> Optional[int]:
    if start is None or end is None:
        return None
    return int((end - start).total_seconds() * 1000)


def job_details(name: QueueName, job: Job, now) -> dict:
    """Job snapshot plus derived timing fields."""
    data = job.model_dump(mode="json")
    data.update({
        "queue": name.value,
        "attempts_left": job.attempts_left,
        "duration_ms": _ms_between(job.started_at, job.finished_at),
        "time_in_queue_ms": _ms_between(job.created_at, job.started_at or now),
    })
    return data


@router.post("", status_code=201)
async def create_job(request: CreateJobRequest, manager: QueueManager = Depends(get_manager)):
    """
    Add a job to a queue.

    Unknown queue names, payloads that fail the queue's schema, and unknown
    priorities are rejected with 400 before anything is stored.
    """
    try:
        job = await manager.add_job(
            request.queue,
            request.payload,
            priority=request.priority,
            delay_seconds=request.delay_ms / 1000,
        )
    except UnknownQueue as e:
        raise http_error(e, status_code=400)
    except QueueError as e:
        raise http_error(e)

    return {
        "success": True,
        "job_id": job.id,
        "queue": job.queue.value,
        "priority": job.priority.value,
        "state": job.state.value,
        "created_at": job.created_at.isoformat(),
    }


@router.get("")
async def get_job_stats(queue: Optional[str] = None, manager: QueueManager = Depends(get_manager)):
    """Job counts per state, for one queue or all of them."""
    now = manager.clock()
    if queue:
        try:
            job_queue = manager.get_queue(queue)
        except QueueError as e:
            raise http_error(e)
        counts = await job_queue.stats()
        return {
            "queue": job_queue.name.value,
            "counts": counts,
            "total_jobs": sum(counts.values()),
            "paused": await job_queue.is_paused(),
            "timestamp": now.isoformat(),
        }

    stats = await manager.get_stats()
    return {
        "queues": stats,
        "total_jobs": manager.total_jobs(stats),
        "timestamp": now.isoformat(),
    }


@router.delete("")
async def manage_all_queues(action: str, manager: QueueManager = Depends(get_manager)):
    """Queue-wide actions across every queue: clean, pause, resume."""
    if action == "clean":
        removed = await manager.clean_all()
        return {
            "success": True,
            "action": action,
            "removed": {name: len(ids) for name, ids in removed.items()},
        }
    if action == "pause":
        await manager.pause_all()
        return {"success": True, "action": action, "message": "All queues paused"}
    if action == "resume":
        await manager.resume_all()
        return {"success": True, "action": action, "message": "All queues resumed"}

    raise bad_request("invalid_action", f"Invalid action: {action}. Must be one of: clean, pause, resume")


@router.get("/{job_id}")
async def get_job(job_id: str, manager: QueueManager = Depends(get_manager)):
    """Get the current state of a job."""
    try:
        name, job = await manager.find_job(job_id)
    except QueueError as e:
        raise http_error(e)
    return job_details(name, job, manager.clock())


@router.delete("/{job_id}")
async def manage_job(job_id: str, action: str = "remove", manager: QueueManager = Depends(get_manager)):
    """Remove a job, or move a failed job back to waiting."""
    if action not in ("remove", "retry"):
        raise bad_request("invalid_action", f"Invalid action: {action}. Must be one of: remove, retry")

    try:
        if action == "retry":
            job = await manager.retry_job(job_id)
            logger.info(f"Job {job_id} retried via API", extra={"job_id": job_id})
            return {"success": True, "action": action, "job_id": job_id, "state": job.state.value}

        job = await manager.remove_job(job_id)
    except QueueError as e:
        raise http_error(e)

    logger.info(f"Job {job_id} removed via API", extra={"job_id": job_id})
    return {"success": True, "action": action, "job_id": job_id, "queue": job.queue.value}
