"""Tests for batch research: validation, ordering, bounded fan-out and deadlines."""

import asyncio
import time

import pytest

from intel_worker.batch import (
    BatchItemResult,
    BatchOrchestrator,
    BatchRequest,
    ItemStatus,
    PriorityOrder,
    PriorityScorer,
    summarize,
)
from intel_worker.queue import (
    BatchTooLarge,
    EmptyBatch,
    HandlerFailure,
    InvalidConcurrency,
    InvalidPriorityOrder,
)


def profile(score=50, areas=None, quality="medium"):
    return {"overall_score": score, "area_scores": areas or {}, "data_quality": quality}


class Recorder:
    """Item operation that tracks calls and in-flight count."""

    def __init__(self, delay=0.01, fail=(), hang=()):
        self.delay = delay
        self.fail = set(fail)
        self.hang = set(hang)
        self.calls = []
        self.running = 0
        self.peak = 0

    async def __call__(self, item_id):
        self.calls.append(item_id)
        self.running += 1
        self.peak = max(self.peak, self.running)
        try:
            if item_id in self.hang:
                await asyncio.sleep(30)
            await asyncio.sleep(self.delay)
            if item_id in self.fail:
                raise RuntimeError(f"profile {item_id} unavailable")
            return profile(score=80)
        finally:
            self.running -= 1


# ===================================================================== #
#  Validation                                                            #
# ===================================================================== #

class TestValidation:

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        op = Recorder()
        with pytest.raises(EmptyBatch):
            await BatchOrchestrator(op).run(BatchRequest(item_ids=[]))
        assert op.calls == []

    @pytest.mark.asyncio
    async def test_too_many_items_starts_nothing(self):
        op = Recorder()
        request = BatchRequest(item_ids=[f"p-{i}" for i in range(21)])
        with pytest.raises(BatchTooLarge):
            await BatchOrchestrator(op).run(request)
        assert op.calls == []

    def test_twenty_items_allowed(self):
        BatchOrchestrator.validate(BatchRequest(item_ids=[f"p-{i}" for i in range(20)]))

    def test_unknown_priority_order(self):
        with pytest.raises(InvalidPriorityOrder):
            BatchOrchestrator.validate(BatchRequest(item_ids=["a"], priority_order="loudest"))

    @pytest.mark.parametrize("concurrency", [0, 4])
    def test_concurrency_bounds(self, concurrency):
        with pytest.raises(InvalidConcurrency):
            BatchOrchestrator.validate(BatchRequest(item_ids=["a"], max_concurrency=concurrency))

    def test_defaults(self):
        request = BatchRequest(item_ids=["a"])
        assert request.priority_order == "random"
        assert request.max_concurrency == 2


# ===================================================================== #
#  Execution                                                             #
# ===================================================================== #

class TestExecution:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_concurrency", [1, 2, 3])
    @pytest.mark.parametrize("size", [1, 2, 5, 20])
    async def test_in_flight_never_exceeds_concurrency(self, size, max_concurrency):
        op = Recorder(delay=0.01)
        request = BatchRequest(item_ids=[f"p-{i}" for i in range(size)], max_concurrency=max_concurrency)
        result = await BatchOrchestrator(op).run(request)

        assert op.peak <= max_concurrency
        assert op.peak == min(size, max_concurrency)
        assert result.succeeded == size
        assert sorted(op.calls) == sorted(request.item_ids)

    @pytest.mark.asyncio
    async def test_one_failure_does_not_affect_siblings(self):
        op = Recorder(fail={"c"})
        result = await BatchOrchestrator(op).run(
            BatchRequest(item_ids=["a", "b", "c", "d", "e"], max_concurrency=2)
        )

        assert (result.total, result.succeeded, result.failed, result.timed_out) == (5, 4, 1, 0)
        failed = next(r for r in result.results if r.item_id == "c")
        assert failed.status == ItemStatus.FAILED
        assert failed.error == "profile c unavailable"
        assert failed.error_code == "handler_failure"
        assert result.summary.errors == ["c: profile c unavailable"]
        assert result.summary.success_rate == 80

    @pytest.mark.asyncio
    async def test_queue_error_code_kept(self):
        async def op(item_id):
            raise HandlerFailure("backend returned 502")

        result = await BatchOrchestrator(op).run(BatchRequest(item_ids=["a"]))
        assert result.results[0].error_code == "handler_failure"
        assert result.failed == 1

    @pytest.mark.asyncio
    async def test_deadline_times_out_in_flight_items(self):
        op = Recorder(hang={"slow"})
        orchestrator = BatchOrchestrator(op, timeout_seconds=0.2)
        result = await orchestrator.run(BatchRequest(item_ids=["a", "slow", "b"], max_concurrency=3))

        by_id = {r.item_id: r for r in result.results}
        assert by_id["slow"].status == ItemStatus.TIMED_OUT
        assert by_id["slow"].error_code == "batch_timeout"
        assert by_id["a"].status == ItemStatus.SUCCEEDED
        assert by_id["b"].status == ItemStatus.SUCCEEDED
        assert result.timed_out == 1

    @pytest.mark.asyncio
    async def test_deadline_covers_items_never_started(self):
        op = Recorder(hang={"x", "y"})
        orchestrator = BatchOrchestrator(op, timeout_seconds=0.1)
        result = await orchestrator.run(BatchRequest(item_ids=["x", "y"], max_concurrency=1))

        assert result.timed_out == 2
        assert len(op.calls) == 1
        assert all(r.error_code == "batch_timeout" for r in result.results)
        assert result.summary.success_rate == 0

    @pytest.mark.asyncio
    async def test_results_in_processing_order(self):
        op = Recorder()
        result = await BatchOrchestrator(op).run(BatchRequest(item_ids=["a", "b", "c"], max_concurrency=1))

        assert [r.position for r in result.results] == [0, 1, 2]
        assert [r.item_id for r in result.results] == op.calls
        assert result.request_id.startswith("batch_")
        assert result.finished_at >= result.started_at


# ===================================================================== #
#  Ordering                                                              #
# ===================================================================== #

class TestOrdering:

    @pytest.mark.asyncio
    async def test_random_order_is_stable(self):
        ids = [f"p-{i}" for i in range(12)]
        first, second = Recorder(), Recorder()
        await BatchOrchestrator(first).run(BatchRequest(item_ids=ids, max_concurrency=1))
        await BatchOrchestrator(second).run(BatchRequest(item_ids=ids, max_concurrency=1))

        assert first.calls == second.calls
        assert sorted(first.calls) == sorted(ids)

    @pytest.mark.asyncio
    async def test_expertise_order_uses_attributes(self):
        attributes = {
            "junior": {"title": "Recruiting Coordinator"},
            "chro": {"title": "Chief People Officer", "headline": "Leadership, talent management, HR tech"},
            "director": {"title": "Director of Learning and Development"},
        }

        async def lookup(item_ids):
            return {item_id: attributes[item_id] for item_id in item_ids}

        op = Recorder()
        orchestrator = BatchOrchestrator(op, attributes_provider=lookup)
        result = await orchestrator.run(BatchRequest(
            item_ids=["junior", "chro", "director"],
            priority_order="expertise_potential",
            max_concurrency=1,
        ))

        assert op.calls == ["chro", "director", "junior"]
        assert result.results[0].priority_score > result.results[1].priority_score

    @pytest.mark.asyncio
    async def test_lookup_failure_keeps_input_order(self):
        async def lookup(item_ids):
            raise ConnectionError("dashboard db unavailable")

        op = Recorder()
        orchestrator = BatchOrchestrator(op, attributes_provider=lookup)
        result = await orchestrator.run(BatchRequest(
            item_ids=["a", "b", "c"],
            priority_order="company_relevance",
            max_concurrency=1,
        ))

        assert op.calls == ["a", "b", "c"]
        assert result.succeeded == 3

    @pytest.mark.asyncio
    async def test_slow_lookup_bounded_by_deadline(self):
        async def lookup(item_ids):
            await asyncio.sleep(2)
            return {}

        op = Recorder()
        orchestrator = BatchOrchestrator(op, attributes_provider=lookup, timeout_seconds=0.2)
        started = time.perf_counter()
        result = await orchestrator.run(BatchRequest(
            item_ids=["a", "b", "c"],
            priority_order="expertise_potential",
            max_concurrency=2,
        ))
        elapsed = time.perf_counter() - started

        assert elapsed < 1.0
        assert result.timed_out == 3
        assert all(r.error_code == "batch_timeout" for r in result.results)
        assert len(op.calls) <= 2

    @pytest.mark.asyncio
    async def test_slow_lookup_falls_back_to_input_order(self):
        async def lookup(item_ids):
            await asyncio.sleep(2)
            return {}

        op = Recorder()
        orchestrator = BatchOrchestrator(op, attributes_provider=lookup, timeout_seconds=0.3)
        ordered = await orchestrator.order_items(
            BatchRequest(item_ids=["a", "b", "c"], priority_order="company_relevance"), timeout=0.05
        )
        assert [item_id for item_id, _ in ordered] == ["a", "b", "c"]

    def test_engagement_prefers_active_large_audiences(self):
        scorer = PriorityScorer()
        quiet = scorer.score(PriorityOrder.ENGAGEMENT_LEVEL, "q", {"followers": 20})
        loud = scorer.score(PriorityOrder.ENGAGEMENT_LEVEL, "l", {
            "followers": 15000, "post_count": 200, "recently_active": True,
        })
        assert loud == 100
        assert quiet < loud

    def test_company_relevance(self):
        scorer = PriorityScorer()
        saas = scorer.score(PriorityOrder.COMPANY_RELEVANCE, "a", {"industry": "SaaS", "company_size": 2500})
        retail = scorer.score(PriorityOrder.COMPANY_RELEVANCE, "b", {"industry": "Retail", "company_size": 20})
        assert saas == 95
        assert retail == 5

    def test_ties_keep_input_order(self):
        ordered = PriorityScorer().order(PriorityOrder.EXPERTISE_POTENTIAL, ["x", "y", "z"], {})
        assert [item_id for item_id, _ in ordered] == ["x", "y", "z"]


# ===================================================================== #
#  Summary                                                               #
# ===================================================================== #

def test_summary_statistics():
    results = [
        BatchItemResult(item_id="a", position=0, status="succeeded", result=profile(
            90, {"leadership": 80, "hr technology": 70}, "high")),
        BatchItemResult(item_id="b", position=1, status="succeeded", result=profile(
            75, {"leadership": 65, "talent management": 40}, "high")),
        BatchItemResult(item_id="c", position=2, status="succeeded", result=profile(
            40, {"people development": 61}, "low")),
        BatchItemResult(item_id="d", position=3, status="failed", error="timeout upstream"),
    ]
    summary = summarize(results)

    assert summary.high_value_count == 2
    assert summary.average_score == 68  # (90 + 75 + 40) / 3
    assert summary.top_areas[0] == "leadership"
    assert set(summary.top_areas) == {"leadership", "hr technology", "people development"}
    assert summary.quality_distribution == {"high": 2, "medium": 0, "low": 1}
    assert summary.success_rate == 75
    assert summary.errors == ["d: timeout upstream"]


def test_summary_caps_errors_at_five():
    results = [
        BatchItemResult(item_id=f"p{i}", position=i, status="failed", error="nope")
        for i in range(7)
    ]
    summary = summarize(results)
    assert len(summary.errors) == 5
    assert summary.average_score == 0
    assert summary.success_rate == 0
