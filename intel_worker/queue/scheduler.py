"""Recurring jobs on a weekly schedule.

Schedules live in Redis next to the queues, keyed by a stable name (for
weekly reports ``weekly-<company_id>``), so scheduling the same company twice
keeps a single schedule. Each occurrence is enqueued with an id derived from
the schedule key and the run time, so two processes firing the same
occurrence still produce one job.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, Field

from .policies import QueueName

logger = logging.getLogger(__name__)

MONDAY = 0


class RecurringSchedule(BaseModel):
    """Enqueue ``payload`` into ``queue`` every week at weekday/hour/minute (UTC)."""
    key: str
    queue: QueueName
    payload: dict
    weekday: int = Field(default=MONDAY, ge=0, le=6)
    hour: int = Field(default=9, ge=0, le=23)
    minute: int = Field(default=0, ge=0, le=59)
    next_run_at: Optional[datetime] = None

    def next_run(self, after: datetime) -> datetime:
        """First occurrence strictly after ``after``."""
        candidate = after.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        candidate += timedelta(days=(self.weekday - candidate.weekday()) % 7)
        if candidate <= after:
            candidate += timedelta(days=7)
        return candidate

    def occurrence_id(self, run_at: datetime) -> str:
        return f"{self.key}_{run_at.strftime('%Y%m%d%H%M')}"


class RecurringScheduler:
    """Background task that periodically enqueues due schedules."""

    def __init__(self, manager, interval: float = 60.0):
        self.manager = manager
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self._stop: Optional[asyncio.Event] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="recurring-scheduler")
        logger.info(f"Recurring scheduler started (every {self.interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop.set()
        await self._task
        self._task = None
        logger.info("Recurring scheduler stopped")

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                jobs = await self.manager.run_due_schedules()
                if jobs:
                    logger.info(f"Enqueued {len(jobs)} scheduled jobs: {[job.id for job in jobs]}")
            except Exception as e:
                logger.exception(f"Recurring schedule pass failed: {e}")

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
