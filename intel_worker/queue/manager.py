"""Registry of all job queues and their worker pools."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Optional

import redis.asyncio as redis

from .errors import InvalidPayload, NotFound, UnknownQueue
from .handlers import IntelligenceService, build_handlers
from .job_queue import KEY_PREFIX, Job, JobQueue, utcnow
from .policies import CleanRule, QUEUE_CONFIGS, QueueConfig, QueueName
from .scheduler import MONDAY, RecurringSchedule
from .schemas import validate_payload
from .worker import JobHandler, WorkerPool

logger = logging.getLogger(__name__)


class QueueManager:
    """Owns one JobQueue per queue name and the pools that drive them.

    Constructed explicitly around a Redis client and handed to whatever
    boundary needs it; the lifecycle is ``start()`` then ``shutdown()``.
    """

    def __init__(
        self,
        client: redis.Redis,
        configs: Optional[Mapping[QueueName, QueueConfig]] = None,
        clock: Callable[[], datetime] = utcnow,
        poll_interval: float = 0.5,
        max_poll_interval: float = 5.0,
        prefix: str = KEY_PREFIX,
    ):
        self.redis = client
        self.clock = clock
        self._configs = dict(configs or QUEUE_CONFIGS)
        self._queues: dict[QueueName, JobQueue] = {
            name: JobQueue(name, client, config, clock=clock, prefix=prefix)
            for name, config in self._configs.items()
        }
        self._schedules_key = f"{prefix}:schedules"
        self._handlers: dict[QueueName, JobHandler] = {}
        self._pools: dict[QueueName, WorkerPool] = {}
        self.poll_interval = poll_interval
        self.max_poll_interval = max_poll_interval

    # ==================== Lookup ====================

    @property
    def queue_names(self) -> list[str]:
        return [name.value for name in self._queues]

    @property
    def configs(self) -> dict[QueueName, QueueConfig]:
        return dict(self._configs)

    @property
    def pools(self) -> dict[QueueName, WorkerPool]:
        return dict(self._pools)

    def get_queue(self, name: Any) -> JobQueue:
        """Resolve a queue by name; raises UnknownQueue."""
        try:
            queue_name = QueueName(name)
        except ValueError:
            queue_name = None
        if queue_name is None or queue_name not in self._queues:
            raise UnknownQueue(
                f"Invalid queue name: {name}. Must be one of: {', '.join(self.queue_names)}",
                {"queue": str(name)},
            )
        return self._queues[queue_name]

    async def find_job(self, job_id: str) -> tuple[QueueName, Job]:
        """Search every queue for a job id."""
        for name, queue in self._queues.items():
            try:
                return name, await queue.inspect(job_id)
            except NotFound:
                logger.debug(f"Job {job_id} not found in {name.value} queue")
        raise NotFound(f"Job {job_id} not found", {"job_id": job_id})

    async def ping(self) -> bool:
        return await self.redis.ping()

    # ==================== Jobs ====================

    async def add_job(
        self,
        queue_name: Any,
        payload: dict,
        priority: Optional[Any] = None,
        delay_seconds: float = 0,
        job_id: Optional[str] = None,
    ) -> Job:
        """Route a new job to its queue."""
        queue = self.get_queue(queue_name)
        job = await queue.enqueue(payload, priority=priority, delay_seconds=delay_seconds, job_id=job_id)
        self.wake(queue.name)
        return job

    async def remove_job(self, job_id: str) -> Job:
        name, _ = await self.find_job(job_id)
        return await self._queues[name].remove(job_id)

    async def retry_job(self, job_id: str) -> Job:
        name, _ = await self.find_job(job_id)
        job = await self._queues[name].retry(job_id)
        self.wake(name)
        return job

    # ==================== Queue-wide operations ====================

    async def get_stats(self) -> dict[str, dict[str, int]]:
        return {name.value: await queue.stats() for name, queue in self._queues.items()}

    @staticmethod
    def total_jobs(stats: Mapping[str, Mapping[str, int]]) -> int:
        return sum(sum(counts.values()) for counts in stats.values())

    async def pause_all(self) -> None:
        await asyncio.gather(*(queue.pause() for queue in self._queues.values()))

    async def resume_all(self) -> None:
        await asyncio.gather(*(queue.resume() for queue in self._queues.values()))
        for name in self._queues:
            self.wake(name)

    async def clean_all(
        self,
        rules: Optional[Mapping[Any, Iterable[CleanRule]]] = None,
    ) -> dict[str, list[str]]:
        """
        Run clean passes on every queue.

        Args:
            rules: Clean rules per queue name; defaults to each queue's own rules

        Returns:
            Removed job ids per queue
        """
        removed: dict[str, list[str]] = {}
        for name, queue in self._queues.items():
            queue_rules = queue.config.clean_rules
            if rules is not None:
                queue_rules = rules.get(name, rules.get(name.value, ()))
            removed[name.value] = []
            for rule in queue_rules:
                removed[name.value].extend(await queue.clean(rule.grace_seconds, rule.state, rule.limit))
        logger.info(
            f"Queue cleanup completed, removed {sum(len(ids) for ids in removed.values())} jobs"
        )
        return removed

    # ==================== Recurring jobs ====================

    async def schedule_recurring(
        self,
        key: str,
        queue_name: Any,
        payload: dict,
        weekday: int = MONDAY,
        hour: int = 9,
        minute: int = 0,
    ) -> RecurringSchedule:
        """
        Create or replace the weekly schedule stored under ``key``.

        The payload is validated now, so a bad schedule never reaches a queue.
        """
        queue = self.get_queue(queue_name)
        valid, message = validate_payload(queue.name, payload)
        if not valid:
            raise InvalidPayload(f"Invalid {queue.name.value} payload: {message}")

        schedule = RecurringSchedule(
            key=key, queue=queue.name, payload=dict(payload),
            weekday=weekday, hour=hour, minute=minute,
        )
        schedule.next_run_at = schedule.next_run(self.clock())
        await self.redis.hset(self._schedules_key, key, schedule.model_dump_json())
        logger.info(f"Scheduled {key} on {queue.name.value}, next run {schedule.next_run_at.isoformat()}")
        return schedule

    async def schedule_weekly_reports(self, companies: Iterable[Mapping[str, str]]) -> list[RecurringSchedule]:
        """Weekly report every Monday 09:00 UTC for each ``{"id", "user_id"}``."""
        return [
            await self.schedule_recurring(
                f"weekly-{company['id']}",
                QueueName.REPORTS,
                {"company_id": company["id"], "report_type": "weekly", "user_id": company["user_id"]},
            )
            for company in companies
        ]

    async def list_schedules(self) -> list[RecurringSchedule]:
        stored = await self.redis.hgetall(self._schedules_key)
        schedules = [RecurringSchedule.model_validate_json(data) for data in stored.values()]
        return sorted(schedules, key=lambda schedule: schedule.key)

    async def remove_schedule(self, key: str) -> None:
        if not await self.redis.hdel(self._schedules_key, key):
            raise NotFound(f"Schedule {key} not found", {"key": key})
        logger.info(f"Removed schedule {key}")

    async def run_due_schedules(self) -> list[Job]:
        """Enqueue every schedule whose next run has come, then move it a week on."""
        now = self.clock()
        jobs = []
        for schedule in await self.list_schedules():
            if schedule.next_run_at > now:
                continue
            job = await self.add_job(
                schedule.queue,
                schedule.payload,
                job_id=schedule.occurrence_id(schedule.next_run_at),
            )
            jobs.append(job)
            schedule.next_run_at = schedule.next_run(now)
            await self.redis.hset(self._schedules_key, schedule.key, schedule.model_dump_json())
        return jobs

    # ==================== Workers ====================

    def register_handler(self, queue_name: Any, handler: JobHandler) -> None:
        """Register the handler a queue's worker pool will run."""
        queue = self.get_queue(queue_name)
        self._handlers[queue.name] = handler
        logger.info(f"Registered handler for queue: {queue.name.value}")

    def register_service(self, service: IntelligenceService) -> None:
        for name, handler in build_handlers(service).items():
            if name in self._queues:
                self.register_handler(name, handler)

    def start(self) -> None:
        """Start one worker pool per queue that has a handler."""
        for name, handler in self._handlers.items():
            if name in self._pools:
                continue
            pool = WorkerPool(
                self._queues[name],
                handler,
                concurrency=self._configs[name].concurrency,
                poll_interval=self.poll_interval,
                max_poll_interval=self.max_poll_interval,
            )
            pool.start()
            self._pools[name] = pool
        logger.info(f"Started worker pools for queues: {[name.value for name in self._pools]}")

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop all pools; active jobs finish first."""
        pools = list(self._pools.values())
        for pool in pools:
            pool.stop()
        await asyncio.gather(*(pool.shutdown(timeout=timeout) for pool in pools))
        self._pools.clear()
        logger.info("All worker pools stopped")

    def wake(self, name: QueueName) -> None:
        """Let the queue's pool (if running) poll right away."""
        pool = self._pools.get(name)
        if pool is not None:
            pool.wake()
