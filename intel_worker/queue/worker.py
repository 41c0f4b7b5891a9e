"""Worker pool driving one job queue with bounded concurrency."""

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Union

from .job_queue import Job, JobQueue, JobState
from intel_worker.lib.json_logger import job_logger

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Union[Any, Awaitable[Any]]]


def describe_error(exc: BaseException) -> str:
    """Human readable error description stored on the job."""
    message = str(exc).strip()
    return message or type(exc).__name__


class WorkerPool:
    """Runs up to ``concurrency`` handler invocations for one queue.

    Dequeue attempts never block: the pool polls, backing off while the
    queue has nothing to hand out, and wakes up early whenever a slot frees.
    Coroutine handlers run as tasks on the loop; plain functions run in a
    worker thread so CPU-bound handlers execute in parallel.
    """

    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler,
        concurrency: Optional[int] = None,
        poll_interval: float = 0.5,
        max_poll_interval: float = 5.0,
    ):
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency or queue.config.concurrency
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.poll_interval = poll_interval
        self.max_poll_interval = max(max_poll_interval, poll_interval)

        self._active: set[asyncio.Task] = set()
        self._running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._idle: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self.processed = 0
        self.failed = 0

    @property
    def name(self) -> str:
        return self.queue.name.value

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def is_running(self) -> bool:
        return self._running

    # ==================== Lifecycle ====================

    def start(self) -> None:
        """Start the dispatch loop on the running event loop."""
        if self._running:
            return
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._running = True
        self._loop_task = asyncio.create_task(self._run(), name=f"worker-pool-{self.name}")
        logger.info(
            f"Starting worker pool for {self.name} (concurrency {self.concurrency})",
            extra={"queue": self.name},
        )

    def stop(self) -> None:
        """Stop claiming new jobs; active jobs keep running."""
        if not self._running:
            return
        self._running = False
        if self._wakeup is not None:
            self._wakeup.set()
        logger.info(f"Stop requested for worker pool {self.name}", extra={"queue": self.name})

    def wake(self) -> None:
        """Poll the queue now instead of waiting out the interval."""
        if self._loop is None or self._wakeup is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._wakeup.set)

    async def wait_idle(self) -> None:
        """Wait until no job is active."""
        if self._idle is not None:
            await self._idle.wait()

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """
        Graceful stop: no new dequeues, then wait for active jobs to finish.

        Args:
            timeout: Give up waiting (and cancel stragglers) after this many seconds
        """
        self.stop()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None

        if not self._active:
            logger.info(f"Worker pool {self.name} stopped", extra={"queue": self.name})
            return

        try:
            await asyncio.wait_for(self.wait_idle(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Worker pool {self.name} shutdown timed out with {self.active_count} active jobs",
                extra={"queue": self.name},
            )
            for task in list(self._active):
                task.cancel()
            await asyncio.gather(*self._active, return_exceptions=True)
        logger.info(f"Worker pool {self.name} stopped", extra={"queue": self.name})

    # ==================== Dispatch ====================

    async def _fill_slots(self) -> int:
        """Claim jobs until the pool is full or the queue hands out nothing."""
        claimed = 0
        while self._running and len(self._active) < self.concurrency:
            job = await self.queue.dequeue_next()
            if job is None:
                break
            task = asyncio.create_task(self._process(job), name=f"job-{job.id}")
            self._active.add(task)
            self._idle.clear()
            claimed += 1
        return claimed

    async def _run(self) -> None:
        interval = self.poll_interval
        while self._running:
            try:
                claimed = await self._fill_slots()
            except Exception as e:
                logger.exception(f"Worker pool {self.name} dispatch error: {e}", extra={"queue": self.name})
                claimed = 0

            if claimed:
                interval = self.poll_interval
            elif len(self._active) < self.concurrency:
                # Nothing handed out although a slot is free
                interval = min(interval * 2, self.max_poll_interval)

            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def _invoke(self, job: Job) -> Any:
        if inspect.iscoroutinefunction(self.handler):
            return await self.handler(job)
        result = await asyncio.to_thread(self.handler, job)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _process(self, job: Job) -> None:
        log = job_logger(job.id, self.name)
        started = time.perf_counter()
        try:
            try:
                result = await self._invoke(job)
            except asyncio.CancelledError:
                await self.queue.fail(job.id, "Worker shut down before the job finished")
                raise
            except Exception as e:
                error = describe_error(e)
                log.exception(f"Job {job.id} handler error: {error}", extra={"attempts": job.attempts})
                outcome = await self.queue.fail(job.id, error)
                self.failed += 1
                if outcome.state == JobState.FAILED:
                    log.error(
                        f"Job {job.id} gave up after {outcome.attempts} attempts",
                        extra={"error_code": outcome.error_code},
                    )
                return

            await self.queue.complete(job.id, result)
            self.processed += 1
            log.info(
                f"Job {job.id} finished",
                extra={"duration_ms": int((time.perf_counter() - started) * 1000)},
            )
        except Exception as e:
            # The job vanished or changed state under us (e.g. removed while active)
            logger.exception(f"Worker pool {self.name} could not record outcome of {job.id}: {e}")
        finally:
            self._active.discard(asyncio.current_task())
            if not self._active:
                self._idle.set()
            self._wakeup.set()
