"""Redis-based job queue for one lane.

Features:
- Priority queue using Redis sorted sets (high > normal > low, FIFO within a priority)
- Atomic claim with ZPOPMIN, so a job is handed to exactly one worker
- Retry with fixed or exponential backoff via a delayed sorted set
- Sliding-window admission rate limit per queue
- Pause / resume without preempting active jobs
- Bounded retention of terminal jobs plus explicit clean
"""

import asyncio
import logging
import os
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Optional

import redis.asyncio as redis
from pydantic import BaseModel, PrivateAttr

from .errors import (
    ERROR_HANDLER_FAILURE,
    ERROR_RATE_LIMITED,
    ERROR_RETRIES_EXHAUSTED,
    InvalidJobState,
    InvalidPayload,
    InvalidPriority,
    NotFound,
    ValidationError,
)
from .policies import BackoffStrategy, QueueConfig, QueueName, RetryPolicy, get_queue_config
from .schemas import validate_payload

logger = logging.getLogger(__name__)

# Key prefix shared by every queue of one deployment
KEY_PREFIX = "intel"

# Waiting score: the priority band dominates, the enqueue sequence breaks ties
PRIORITY_BAND = 10 ** 12


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    """Job states."""
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = (JobState.COMPLETED, JobState.FAILED)


class JobPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

    @property
    def weight(self) -> int:
        return PRIORITY_WEIGHTS[self]


PRIORITY_WEIGHTS = {
    JobPriority.LOW: 1,
    JobPriority.NORMAL: 5,
    JobPriority.HIGH: 10,
}


class Job(BaseModel):
    """A job in a queue."""
    id: str
    queue: QueueName
    payload: dict
    priority: JobPriority = JobPriority.NORMAL
    state: JobState = JobState.WAITING
    sequence: int = 0
    attempts: int = 0
    max_attempts: int = 3
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    backoff_base_seconds: float = 2.0
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    ready_at: Optional[datetime] = None
    result: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    error_history: list[str] = []
    progress: int = 0

    _progress_sink: Optional[Callable[[int], None]] = PrivateAttr(default=None)

    @property
    def retry_policy(self) -> RetryPolicy:
        """The policy this job was created with."""
        return RetryPolicy(
            max_attempts=self.max_attempts,
            strategy=self.backoff_strategy,
            base_delay_seconds=self.backoff_base_seconds,
        )

    @property
    def attempts_left(self) -> int:
        return max(self.max_attempts - self.attempts, 0)

    def update_progress(self, value: int) -> None:
        """Report handler progress (0-100); written through to the queue."""
        self.progress = max(0, min(100, int(value)))
        if self._progress_sink is not None:
            self._progress_sink(self.progress)


class JobQueue:
    """Ordered, queryable store of jobs for one named queue, kept in Redis.

    Keys under ``<prefix>:<queue>:``

    - ``waiting``: sorted set, score ``-weight * PRIORITY_BAND + sequence``
    - ``delayed``: sorted set, score ``ready_at``
    - ``active``: set of claimed job ids
    - ``completed`` / ``failed``: sorted sets, score ``finished_at``
    - ``job:<id>``: the job as JSON
    - ``progress``: hash of progress reported by active jobs
    - ``seq``: enqueue counter; ``paused``: flag

    An id sits in exactly one state index. Whoever takes an id out of
    ``waiting`` (ZPOPMIN) or ``delayed`` (ZREM) owns that transition.
    """

    def __init__(
        self,
        name: QueueName,
        client: redis.Redis,
        config: Optional[QueueConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        prefix: str = KEY_PREFIX,
    ):
        self.name = QueueName(name)
        self.config = config or get_queue_config(self.name)
        self.redis = client
        self._clock = clock
        self._prefix = f"{prefix}:{self.name.value}"
        self._background: set[asyncio.Task] = set()
        self.rate_limiter = self.config.build_rate_limiter(clock=lambda: self._clock().timestamp())

    # ==================== Keys ====================

    def _key(self, suffix: str) -> str:
        return f"{self._prefix}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    def _state_key(self, state: JobState) -> str:
        return self._key(state.value)

    # ==================== Storage helpers ====================

    async def _load(self, job_id: str) -> Optional[Job]:
        data = await self.redis.get(self._job_key(job_id))
        if not data:
            return None
        return Job.model_validate_json(data)

    async def _load_many(self, job_ids: Iterable[str]) -> list[Job]:
        job_ids = list(job_ids)
        if not job_ids:
            return []
        documents = await self.redis.mget([self._job_key(job_id) for job_id in job_ids])
        return [Job.model_validate_json(data) for data in documents if data]

    async def _get(self, job_id: str) -> Job:
        job = await self._load(job_id)
        if job is None:
            raise NotFound(f"Job {job_id} not found in {self.name.value} queue", {"job_id": job_id})
        return job

    @staticmethod
    def _waiting_score(job: Job) -> float:
        return -job.priority.weight * PRIORITY_BAND + job.sequence

    def _index(self, pipe, job: Job) -> None:
        key = self._state_key(job.state)
        if job.state == JobState.ACTIVE:
            pipe.sadd(key, job.id)
        elif job.state == JobState.WAITING:
            pipe.zadd(key, {job.id: self._waiting_score(job)})
        elif job.state == JobState.DELAYED:
            pipe.zadd(key, {job.id: job.ready_at.timestamp()})
        else:
            pipe.zadd(key, {job.id: job.finished_at.timestamp()})

    def _unindex(self, pipe, job_ids: list[str], state: JobState) -> None:
        if state == JobState.ACTIVE:
            pipe.srem(self._state_key(state), *job_ids)
        else:
            pipe.zrem(self._state_key(state), *job_ids)

    async def _save(self, job: Job, leaving: Optional[JobState] = None) -> None:
        """Write the job and file its id under its current state, in one transaction."""
        async with self.redis.pipeline(transaction=True) as pipe:
            if leaving is not None and leaving != job.state:
                self._unindex(pipe, [job.id], leaving)
            if leaving == JobState.ACTIVE:
                pipe.hdel(self._key("progress"), job.id)
            pipe.set(self._job_key(job.id), job.model_dump_json())
            self._index(pipe, job)
            await pipe.execute()

    async def _evict(self, job_ids: list[str], state: JobState) -> None:
        if not job_ids:
            return
        async with self.redis.pipeline(transaction=True) as pipe:
            self._unindex(pipe, job_ids, state)
            pipe.hdel(self._key("progress"), *job_ids)
            pipe.delete(*(self._job_key(job_id) for job_id in job_ids))
            await pipe.execute()

    async def _new_job_id(self, now: datetime) -> str:
        stamp = now.strftime('%Y%m%d%H%M%S')
        while True:
            job_id = f"{self.name.value}_{stamp}_{os.urandom(4).hex()}"
            if not await self.redis.exists(self._job_key(job_id)):
                return job_id

    async def _promote_due(self) -> None:
        """Move delayed jobs whose delay has elapsed back to waiting."""
        delayed_key = self._state_key(JobState.DELAYED)
        due = await self.redis.zrangebyscore(delayed_key, "-inf", self._clock().timestamp())
        for job_id in due:
            if not await self.redis.zrem(delayed_key, job_id):
                continue  # promoted by another caller
            job = await self._load(job_id)
            if job is None:
                continue
            job.state = JobState.WAITING
            job.ready_at = None
            await self._save(job)
            logger.debug(f"Job {job_id} delay elapsed, back to waiting")

    def _resolve_priority(self, priority: Any, payload: dict) -> JobPriority:
        value = priority if priority is not None else payload.get("priority")
        if value is None:
            value = self.config.default_priority
        if isinstance(value, JobPriority):
            return value
        try:
            return JobPriority(str(value).lower())
        except ValueError:
            raise InvalidPriority(
                f"Invalid priority: {value}. Must be one of: low, normal, high",
                {"priority": value},
            )

    async def _enforce_retention(self, state: JobState) -> None:
        """Keep at most keep_completed / keep_failed terminal jobs."""
        keep = self.config.keep_completed if state == JobState.COMPLETED else self.config.keep_failed
        key = self._state_key(state)
        overflow = await self.redis.zcard(key) - keep
        if overflow <= 0:
            return
        await self._evict(await self.redis.zrange(key, 0, overflow - 1), state)
        logger.debug(f"Evicted {overflow} {state.value} jobs from {self.name.value} (retention {keep})")

    def _progress_reporter(self, job_id: str) -> Callable[[int], None]:
        """Progress callback usable from the event loop and from worker threads."""
        loop = asyncio.get_running_loop()

        def report(value: int) -> None:
            write = self.update_progress(job_id, value)
            try:
                current = asyncio.get_running_loop()
            except RuntimeError:
                current = None
            if current is loop:
                task = loop.create_task(write)
                self._background.add(task)
                task.add_done_callback(self._background.discard)
            else:
                asyncio.run_coroutine_threadsafe(write, loop).result()

        return report

    # ==================== Enqueue / Dequeue ====================

    async def enqueue(
        self,
        payload: dict,
        priority: Optional[Any] = None,
        delay_seconds: float = 0,
        job_id: Optional[str] = None,
    ) -> Job:
        """
        Add a job to the queue.

        Args:
            payload: Job data, validated against the queue's schema
            priority: low | normal | high (defaults to payload or queue default)
            delay_seconds: Delay before the job becomes eligible
            job_id: Stable id; if a job with this id exists it is returned instead

        Returns:
            The created (or already existing) Job

        Raises:
            InvalidPayload: If the payload fails schema validation
            InvalidPriority: If the priority is not recognised
        """
        valid, message = validate_payload(self.name, payload)
        if not valid:
            raise InvalidPayload(f"Invalid {self.name.value} payload: {message}")
        job_priority = self._resolve_priority(priority, payload)
        if delay_seconds < 0:
            raise ValidationError("delay must not be negative")

        now = self._clock()
        policy = self.config.retry
        job = Job(
            id=job_id or await self._new_job_id(now),
            queue=self.name,
            payload=dict(payload),
            priority=job_priority,
            sequence=await self.redis.incr(self._key("seq")),
            created_at=now,
            max_attempts=policy.max_attempts,
            backoff_strategy=policy.strategy,
            backoff_base_seconds=policy.base_delay_seconds,
        )
        if delay_seconds > 0:
            job.state = JobState.DELAYED
            job.ready_at = now + timedelta(seconds=delay_seconds)

        if job_id is not None:
            # SET NX claims the id; the loser gets the existing job back
            claimed = await self.redis.set(self._job_key(job.id), job.model_dump_json(), nx=True)
            if not claimed:
                logger.info(
                    f"Job {job.id} already exists in {self.name.value}, not enqueued again",
                    extra={"job_id": job.id, "queue": self.name.value},
                )
                return await self._get(job.id)

        await self._save(job)
        logger.info(
            f"Enqueued job {job.id} to {self.name.value} (priority: {job.priority.value})",
            extra={"job_id": job.id, "queue": self.name.value, "priority": job.priority.value},
        )
        return job

    async def dequeue_next(self) -> Optional[Job]:
        """
        Claim the next eligible job.

        Returns the highest-priority, earliest-enqueued waiting job (delayed
        jobs count once their delay has elapsed) and marks it active. Returns
        None if the queue is paused, empty or rate-limited.
        """
        if await self.is_paused():
            return None

        await self._promote_due()
        waiting_key = self._state_key(JobState.WAITING)
        popped = await self.redis.zpopmin(waiting_key)
        if not popped:
            return None
        job_id, score = popped[0]

        if self.rate_limiter is not None and not self.rate_limiter.try_acquire():
            # Put it back at the same score; it stays waiting
            await self.redis.zadd(waiting_key, {job_id: score})
            logger.debug(
                f"Queue {self.name.value} rate limited, {job_id} stays waiting",
                extra={"queue": self.name.value, "error_code": ERROR_RATE_LIMITED},
            )
            return None

        job = await self._load(job_id)
        if job is None:
            logger.warning(f"Job {job_id} not found in storage")
            return None

        job.state = JobState.ACTIVE
        job.attempts += 1
        job.started_at = self._clock()
        job.progress = 0
        await self._save(job)

        logger.info(
            f"Dequeued job {job.id} from {self.name.value} (attempt {job.attempts}/{job.max_attempts})",
            extra={"job_id": job.id, "queue": self.name.value, "attempts": job.attempts},
        )
        job._progress_sink = self._progress_reporter(job.id)
        return job

    # ==================== Transitions ====================

    async def _get_active(self, job_id: str) -> Job:
        job = await self._get(job_id)
        if job.state != JobState.ACTIVE:
            raise InvalidJobState(
                f"Job {job_id} is {job.state.value}, expected active",
                {"job_id": job_id, "state": job.state.value},
            )
        return job

    async def complete(self, job_id: str, result: Any = None) -> Job:
        """Mark an active job as completed successfully."""
        job = await self._get_active(job_id)
        job.state = JobState.COMPLETED
        job.finished_at = self._clock()
        job.result = result
        job.error = None
        job.error_code = None
        job.progress = 100
        await self._save(job, leaving=JobState.ACTIVE)
        await self._enforce_retention(JobState.COMPLETED)

        logger.info(
            f"Job {job_id} completed successfully",
            extra={"job_id": job_id, "queue": self.name.value, "state": "completed"},
        )
        return job

    async def fail(self, job_id: str, error: str, retry: bool = True) -> Job:
        """
        Record a failed attempt of an active job.

        If retry is enabled and the job's policy allows another attempt, the
        job becomes delayed with backoff. Otherwise it is failed permanently.
        """
        job = await self._get_active(job_id)
        now = self._clock()
        job.error_history.append(f"[{now.isoformat()}] {error}")

        delay = job.retry_policy.next_delay(job.attempts) if retry else None
        if delay is not None:
            job.state = JobState.DELAYED
            job.ready_at = now + timedelta(seconds=delay)
            await self._save(job, leaving=JobState.ACTIVE)
            logger.warning(
                f"Job {job_id} failed, retry {job.attempts}/{job.max_attempts} in {delay:.1f}s: {error}",
                extra={"job_id": job_id, "queue": self.name.value, "attempts": job.attempts},
            )
            return job

        job.state = JobState.FAILED
        job.finished_at = now
        job.error = error
        job.error_code = ERROR_RETRIES_EXHAUSTED if retry else ERROR_HANDLER_FAILURE
        await self._save(job, leaving=JobState.ACTIVE)
        await self._enforce_retention(JobState.FAILED)

        logger.error(
            f"Job {job_id} failed permanently after {job.attempts} attempts: {error}",
            extra={
                "job_id": job_id,
                "queue": self.name.value,
                "attempts": job.attempts,
                "error_code": job.error_code,
            },
        )
        return job

    async def update_progress(self, job_id: str, value: int) -> None:
        if not await self.redis.sismember(self._state_key(JobState.ACTIVE), job_id):
            return  # late report after the job left active
        await self.redis.hset(self._key("progress"), job_id, max(0, min(100, int(value))))

    async def retry(self, job_id: str) -> Job:
        """Re-enqueue a failed job with its attempts reset."""
        job = await self._get(job_id)
        if job.state != JobState.FAILED:
            raise InvalidJobState(
                f"Only failed jobs can be retried, job {job_id} is {job.state.value}",
                {"job_id": job_id, "state": job.state.value},
            )
        job.state = JobState.WAITING
        job.sequence = await self.redis.incr(self._key("seq"))
        job.attempts = 0
        job.error = None
        job.error_code = None
        job.result = None
        job.started_at = None
        job.finished_at = None
        job.progress = 0
        await self._save(job, leaving=JobState.FAILED)
        logger.info(f"Job {job_id} retried", extra={"job_id": job_id, "queue": self.name.value})
        return job

    async def remove(self, job_id: str) -> Job:
        """Remove a job that is not currently being processed."""
        job = await self._get(job_id)
        if job.state == JobState.ACTIVE:
            raise InvalidJobState(
                f"Job {job_id} is active and cannot be removed",
                {"job_id": job_id, "state": job.state.value},
            )
        await self._evict([job_id], job.state)
        logger.info(f"Removed job {job_id}", extra={"job_id": job_id, "queue": self.name.value})
        return job

    # ==================== Inspection ====================

    async def _with_progress(self, jobs: list[Job]) -> list[Job]:
        active = [job for job in jobs if job.state == JobState.ACTIVE]
        if active:
            values = await self.redis.hmget(self._key("progress"), [job.id for job in active])
            for job, value in zip(active, values):
                if value is not None:
                    job.progress = int(value)
        return jobs

    async def inspect(self, job_id: str) -> Job:
        await self._promote_due()
        job = await self._get(job_id)
        return (await self._with_progress([job]))[0]

    async def exists(self, job_id: str) -> bool:
        return bool(await self.redis.exists(self._job_key(job_id)))

    async def stats(self) -> dict[str, int]:
        """Job counts by state."""
        await self._promote_due()
        async with self.redis.pipeline(transaction=False) as pipe:
            for state in JobState:
                if state == JobState.ACTIVE:
                    pipe.scard(self._state_key(state))
                else:
                    pipe.zcard(self._state_key(state))
            counts = await pipe.execute()
        return {state.value: count for state, count in zip(JobState, counts)}

    async def list_jobs(self, state: Optional[JobState] = None, limit: int = 50) -> list[Job]:
        """
        List jobs.

        Waiting jobs come in dequeue order, delayed ones by readiness, all
        others most recent first.
        """
        await self._promote_due()
        states = [JobState(state)] if state is not None else list(JobState)
        jobs: list[Job] = []
        for current in states:
            remaining = limit - len(jobs)
            if remaining <= 0:
                break
            key = self._state_key(current)
            if current == JobState.ACTIVE:
                selected = await self._load_many(await self.redis.smembers(key))
                selected.sort(key=lambda job: job.started_at, reverse=True)
                selected = selected[:remaining]
            elif current in (JobState.WAITING, JobState.DELAYED):
                selected = await self._load_many(await self.redis.zrange(key, 0, remaining - 1))
            else:
                selected = await self._load_many(await self.redis.zrevrange(key, 0, remaining - 1))
            jobs.extend(selected)
        return await self._with_progress(jobs)

    def rate_limit_stats(self) -> Optional[dict]:
        return self.rate_limiter.stats() if self.rate_limiter is not None else None

    # ==================== Queue control ====================

    async def is_paused(self) -> bool:
        return bool(await self.redis.exists(self._key("paused")))

    async def pause(self) -> None:
        """Stop handing out jobs; active jobs run to completion."""
        await self.redis.set(self._key("paused"), "1")
        logger.info(f"Queue {self.name.value} paused", extra={"queue": self.name.value})

    async def resume(self) -> None:
        await self.redis.delete(self._key("paused"))
        logger.info(f"Queue {self.name.value} resumed", extra={"queue": self.name.value})

    async def clean(self, grace_seconds: float, state: Any = JobState.COMPLETED, limit: int = 100) -> list[str]:
        """
        Evict terminal jobs that finished more than ``grace_seconds`` ago.

        Args:
            grace_seconds: Minimum age (by finished_at) of evicted jobs
            state: completed or failed
            limit: Maximum number of jobs removed by this call

        Returns:
            Ids of the removed jobs, oldest first
        """
        try:
            state = JobState(state)
        except ValueError:
            raise ValidationError(f"Invalid clean type: {state}. Must be one of: completed, failed")
        if state not in TERMINAL_STATES:
            raise ValidationError(f"Invalid clean type: {state.value}. Must be one of: completed, failed")
        if limit <= 0:
            return []

        cutoff = (self._clock() - timedelta(seconds=grace_seconds)).timestamp()
        removed = await self.redis.zrangebyscore(self._state_key(state), "-inf", cutoff, start=0, num=limit)
        await self._evict(removed, state)

        if removed:
            logger.info(
                f"Cleaned {len(removed)} {state.value} jobs from {self.name.value}",
                extra={"queue": self.name.value, "state": state.value},
            )
        return removed

    async def drain(self) -> int:
        """Remove every waiting and delayed job."""
        count = 0
        for state in (JobState.WAITING, JobState.DELAYED):
            doomed = await self.redis.zrange(self._state_key(state), 0, -1)
            await self._evict(doomed, state)
            count += len(doomed)
        logger.info(f"Drained {count} jobs from {self.name.value}", extra={"queue": self.name.value})
        return count

    async def remove_many(self, job_ids: Iterable[str]) -> int:
        """Remove the given jobs, skipping unknown and active ones."""
        removed = 0
        for job in await self._load_many(job_ids):
            if job.state == JobState.ACTIVE:
                continue
            await self._evict([job.id], job.state)
            removed += 1
        return removed

    async def remove_by_state(self, state: Any) -> int:
        """Remove every job in one (non-active) state."""
        try:
            state = JobState(state)
        except ValueError:
            raise ValidationError(f"Invalid status for bulk removal: {state}")
        if state == JobState.ACTIVE:
            raise ValidationError("Active jobs cannot be removed")

        await self._promote_due()
        doomed = await self.redis.zrange(self._state_key(state), 0, -1)
        await self._evict(doomed, state)
        logger.info(
            f"Removed {len(doomed)} {state.value} jobs from {self.name.value}",
            extra={"queue": self.name.value, "state": state.value},
        )
        return len(doomed)
