"""Recurring job schedules (weekly reports)."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
import logging

from intel_worker.queue import QueueError, QueueManager
from intel_worker.routes.deps import get_manager, http_error

router = APIRouter()
logger = logging.getLogger(__name__)


class Company(BaseModel):
    id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)


class WeeklyReportsRequest(BaseModel):
    """Companies that get a weekly report every Monday 09:00 UTC."""
    companies: list[Company]


@router.get("")
async def list_schedules(manager: QueueManager = Depends(get_manager)):
    schedules = await manager.list_schedules()
    return {
        "schedules": [schedule.model_dump(mode="json") for schedule in schedules],
        "total": len(schedules),
    }


@router.post("/weekly-reports", status_code=201)
async def schedule_weekly_reports(request: WeeklyReportsRequest, manager: QueueManager = Depends(get_manager)):
    """Create (or replace) one weekly report schedule per company."""
    try:
        schedules = await manager.schedule_weekly_reports(
            company.model_dump() for company in request.companies
        )
    except QueueError as e:
        raise http_error(e)

    return {
        "success": True,
        "scheduled": [schedule.key for schedule in schedules],
        "next_run_at": {schedule.key: schedule.next_run_at.isoformat() for schedule in schedules},
    }


@router.delete("/{key}")
async def remove_schedule(key: str, manager: QueueManager = Depends(get_manager)):
    try:
        await manager.remove_schedule(key)
    except QueueError as e:
        raise http_error(e)
    return {"success": True, "key": key}
