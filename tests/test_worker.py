"""Tests for WorkerPool: execution, retries, concurrency bound and shutdown."""

import asyncio
import threading

import pytest

from intel_worker.queue import JobQueue, JobState, QueueName, WorkerPool


def make_pool(queue, handler, concurrency=None):
    return WorkerPool(queue, handler, concurrency=concurrency, poll_interval=0.01, max_poll_interval=0.05)


def in_state(queue, job_id, state):
    async def check():
        return (await queue.inspect(job_id)).state == state

    return check


@pytest.fixture
def signals(redis_client, clock):
    return JobQueue(QueueName.SIGNALS, redis_client, clock=clock)


@pytest.mark.asyncio
async def test_successful_job_completes(signals, signal_payload, eventually):
    async def handler(job):
        return {"handled": job.payload["signal_id"]}

    pool = make_pool(signals, handler)
    job = await signals.enqueue(signal_payload())
    pool.start()
    try:
        await eventually(in_state(signals, job.id, JobState.COMPLETED))
    finally:
        await pool.shutdown(timeout=1)

    done = await signals.inspect(job.id)
    assert done.result == {"handled": job.payload["signal_id"]}
    assert pool.processed == 1


@pytest.mark.asyncio
async def test_handler_errors_never_stop_the_pool(redis_client, clock, make_config, signal_payload, eventually):
    queue = JobQueue(QueueName.SIGNALS, redis_client, make_config(max_attempts=1), clock=clock)
    bad = await queue.enqueue(signal_payload(fail=True))
    good = await queue.enqueue(signal_payload())

    async def handler(job):
        if job.payload.get("fail"):
            raise RuntimeError("enrichment provider exploded")
        return {"ok": True}

    pool = make_pool(queue, handler)
    pool.start()
    try:
        await eventually(in_state(queue, good.id, JobState.COMPLETED))
        await eventually(in_state(queue, bad.id, JobState.FAILED))
    finally:
        await pool.shutdown(timeout=1)

    failed = await queue.inspect(bad.id)
    assert failed.error == "enrichment provider exploded"
    assert failed.error_code == "retries_exhausted"
    assert pool.failed == 1
    assert pool.processed == 1


@pytest.mark.asyncio
async def test_fixed_backoff_retry_then_give_up(redis_client, clock, make_config, signal_payload, eventually):
    queue = JobQueue(QueueName.SIGNALS, redis_client, make_config(max_attempts=2, base_delay=5.0), clock=clock)
    job = await queue.enqueue(signal_payload())
    calls = []

    async def handler(job):
        calls.append(job.attempts)
        raise RuntimeError("still down")

    pool = make_pool(queue, handler)
    pool.start()
    try:
        await eventually(in_state(queue, job.id, JobState.DELAYED))
        delayed = await queue.inspect(job.id)
        assert delayed.attempts == 1
        assert (delayed.ready_at - clock()).total_seconds() == 5.0

        clock.advance(5)
        pool.wake()
        await eventually(in_state(queue, job.id, JobState.FAILED))
    finally:
        await pool.shutdown(timeout=1)

    failed = await queue.inspect(job.id)
    assert failed.attempts == 2
    assert len(failed.error_history) == 2
    assert calls == [1, 2]


@pytest.mark.asyncio
async def test_concurrency_bound(signals, signal_payload, eventually):
    ids = [(await signals.enqueue(signal_payload())).id for _ in range(6)]
    running = 0
    peak = 0

    async def handler(job):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.03)
        running -= 1

    async def all_completed():
        return (await signals.stats())["completed"] == len(ids)

    pool = make_pool(signals, handler, concurrency=2)
    pool.start()
    try:
        await eventually(all_completed)
    finally:
        await pool.shutdown(timeout=1)

    assert peak == 2


@pytest.mark.asyncio
async def test_shutdown_waits_for_active_jobs(signals, signal_payload, eventually):
    job = await signals.enqueue(signal_payload())

    async def handler(job):
        await asyncio.sleep(0.1)
        return "done"

    pool = make_pool(signals, handler)
    pool.start()
    await eventually(lambda: pool.active_count == 1)
    await pool.shutdown(timeout=2)

    assert (await signals.inspect(job.id)).state == JobState.COMPLETED
    assert not pool.is_running

    later = await signals.enqueue(signal_payload())
    await asyncio.sleep(0.05)
    assert (await signals.inspect(later.id)).state == JobState.WAITING


@pytest.mark.asyncio
async def test_shutdown_timeout_cancels_stragglers(redis_client, clock, make_config, signal_payload, eventually):
    queue = JobQueue(QueueName.SIGNALS, redis_client, make_config(max_attempts=1), clock=clock)
    job = await queue.enqueue(signal_payload())

    async def handler(job):
        await asyncio.sleep(10)

    pool = make_pool(queue, handler)
    pool.start()
    await eventually(lambda: pool.active_count == 1)
    await pool.shutdown(timeout=0.05)

    assert pool.active_count == 0
    assert (await queue.inspect(job.id)).state == JobState.FAILED


@pytest.mark.asyncio
async def test_sync_handler_runs_in_worker_thread(signals, signal_payload, eventually):
    job = await signals.enqueue(signal_payload())
    main_thread = threading.current_thread().name

    def handler(job):
        job.update_progress(50)
        return {"thread": threading.current_thread().name}

    pool = make_pool(signals, handler)
    pool.start()
    try:
        await eventually(in_state(signals, job.id, JobState.COMPLETED))
    finally:
        await pool.shutdown(timeout=1)

    assert (await signals.inspect(job.id)).result["thread"] != main_thread


@pytest.mark.asyncio
async def test_progress_visible_while_active(signals, signal_payload, eventually):
    job = await signals.enqueue(signal_payload())
    release = asyncio.Event()

    async def handler(job):
        job.update_progress(60)
        await release.wait()

    async def progress_reported():
        return (await signals.inspect(job.id)).progress == 60

    pool = make_pool(signals, handler)
    pool.start()
    try:
        await eventually(progress_reported)
        assert (await signals.inspect(job.id)).state == JobState.ACTIVE
        release.set()
        await eventually(in_state(signals, job.id, JobState.COMPLETED))
    finally:
        await pool.shutdown(timeout=1)


@pytest.mark.asyncio
async def test_paused_queue_is_not_polled_into_work(signals, signal_payload):
    await signals.pause()
    job = await signals.enqueue(signal_payload())
    handled = []

    async def handler(job):
        handled.append(job.id)

    pool = make_pool(signals, handler)
    pool.start()
    await asyncio.sleep(0.1)
    await pool.shutdown(timeout=1)

    assert handled == []
    assert (await signals.inspect(job.id)).state == JobState.WAITING


def test_concurrency_must_be_positive(signals):
    with pytest.raises(ValueError):
        WorkerPool(signals, lambda job: None, concurrency=-1)
