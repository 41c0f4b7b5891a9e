"""Shared fixtures: a manual clock, an in-process Redis and queue config builders."""

import asyncio
import inspect
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import fakeredis.aioredis
import pytest

from intel_worker.queue.policies import QUEUE_CONFIGS, QueueName, RetryPolicy, BackoffStrategy


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = None):
        self.current = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server):
    """Async Redis client on a fresh in-process server per test."""
    return fakeredis.aioredis.FakeRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def make_config():
    """Signals config (no rate limit) with overrides."""

    def build(queue=QueueName.SIGNALS, max_attempts=None, strategy=BackoffStrategy.FIXED, base_delay=1.0, **overrides):
        config = QUEUE_CONFIGS[queue]
        if max_attempts is not None:
            overrides["retry"] = RetryPolicy(max_attempts=max_attempts, strategy=strategy, base_delay_seconds=base_delay)
        return replace(config, **overrides)

    return build


@pytest.fixture
def signal_payload():
    counter = {"n": 0}

    def build(**extra):
        counter["n"] += 1
        payload = {"signal_id": f"sig-{counter['n']}", "signal_type": "funding", "company_id": "co-1"}
        payload.update(extra)
        return payload

    return build


@pytest.fixture
def eventually():
    """Await until a predicate (sync or async) holds, polling the event loop."""

    async def check(predicate):
        result = predicate()
        if inspect.isawaitable(result):
            result = await result
        return result

    async def wait(predicate, timeout: float = 3.0, interval: float = 0.01):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not await check(predicate):
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)

    return wait
