"""Batch research: fan a bounded list of items out with bounded concurrency.

One call of ``BatchOrchestrator.run`` owns its own concurrency group and is
bounded by an overall deadline. Items are processed independently; a failing
or hanging item never affects its siblings.
"""

import asyncio
import os
import time
from collections import Counter, deque
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field

from intel_worker.lib.json_logger import batch_logger
from intel_worker.queue.errors import (
    ERROR_BATCH_TIMEOUT,
    ERROR_HANDLER_FAILURE,
    BatchTooLarge,
    EmptyBatch,
    InvalidConcurrency,
    InvalidPriorityOrder,
    QueueError,
)
from intel_worker.queue.handlers import ItemResearcher
from intel_worker.queue.job_queue import utcnow
from intel_worker.queue.worker import describe_error
from .priority import PriorityOrder, PriorityScorer

ItemOperation = Callable[[str], Awaitable[Any]]
AttributesProvider = Callable[[list[str]], Awaitable[dict[str, dict]]]

MAX_BATCH_ITEMS = 20
MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 3
HIGH_VALUE_THRESHOLD = 70
AREA_THRESHOLD = 60
MAX_SUMMARY_ERRORS = 5


# ==================== Models ====================

class BatchRequest(BaseModel):
    """Input of one batch call. Checked by ``BatchOrchestrator.validate``."""
    item_ids: list[str] = Field(default_factory=list)
    priority_order: str = PriorityOrder.RANDOM.value
    max_concurrency: int = 2


class ItemStatus:
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class BatchItemResult(BaseModel):
    item_id: str
    position: int
    priority_score: float = 0.0
    status: str
    result: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    duration_ms: int = 0


class BatchSummary(BaseModel):
    high_value_count: int = 0
    average_score: int = 0
    top_areas: list[str] = Field(default_factory=list)
    quality_distribution: dict[str, int] = Field(
        default_factory=lambda: {"high": 0, "medium": 0, "low": 0}
    )
    success_rate: int = 0
    errors: list[str] = Field(default_factory=list)


class BatchResult(BaseModel):
    request_id: str
    total: int
    succeeded: int = 0
    failed: int = 0
    timed_out: int = 0
    results: list[BatchItemResult] = Field(default_factory=list)
    summary: BatchSummary = Field(default_factory=BatchSummary)
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_ms: int = 0


def summarize(results: list[BatchItemResult]) -> BatchSummary:
    """
    Aggregate statistics over one batch's item results.

    Only succeeded items with a dict result contribute scores; ``errors``
    lists the first failures and timeouts in processing order.
    """
    scored = [
        r.result for r in results
        if r.status == ItemStatus.SUCCEEDED and isinstance(r.result, dict)
    ]
    overall = [
        float(r["overall_score"]) for r in scored
        if isinstance(r.get("overall_score"), (int, float))
    ]

    areas: Counter = Counter()
    for r in scored:
        for area, value in (r.get("area_scores") or {}).items():
            if isinstance(value, (int, float)) and value > AREA_THRESHOLD:
                areas[area] += 1

    quality = {"high": 0, "medium": 0, "low": 0}
    for r in scored:
        if r.get("data_quality") in quality:
            quality[r["data_quality"]] += 1

    succeeded = sum(1 for r in results if r.status == ItemStatus.SUCCEEDED)
    errors = [
        f"{r.item_id}: {r.error}" for r in results
        if r.status != ItemStatus.SUCCEEDED
    ]

    return BatchSummary(
        high_value_count=sum(1 for score in overall if score > HIGH_VALUE_THRESHOLD),
        average_score=round(sum(overall) / len(overall)) if overall else 0,
        top_areas=[area for area, _ in areas.most_common(3)],
        quality_distribution=quality,
        success_rate=round(succeeded / len(results) * 100) if results else 0,
        errors=errors[:MAX_SUMMARY_ERRORS],
    )


# ==================== Orchestrator ====================

class BatchOrchestrator:
    """Runs one operation per item with at most ``max_concurrency`` in flight."""

    def __init__(
        self,
        operation: ItemOperation,
        attributes_provider: Optional[AttributesProvider] = None,
        timeout_seconds: float = 540.0,
        scorer: Optional[PriorityScorer] = None,
    ):
        self.operation = operation
        self.attributes_provider = attributes_provider
        self.timeout_seconds = timeout_seconds
        self.scorer = scorer or PriorityScorer()

    @classmethod
    def for_researcher(cls, researcher: ItemResearcher, timeout_seconds: float = 540.0) -> 'BatchOrchestrator':
        return cls(
            researcher.research_item,
            attributes_provider=researcher.lookup_items,
            timeout_seconds=timeout_seconds,
        )

    @staticmethod
    def validate(request: BatchRequest) -> None:
        """Raise a ValidationError subclass for a malformed request."""
        if not request.item_ids:
            raise EmptyBatch("Item IDs array is required and must not be empty")
        if len(request.item_ids) > MAX_BATCH_ITEMS:
            raise BatchTooLarge(
                f"Maximum {MAX_BATCH_ITEMS} items allowed per batch request",
                {"count": len(request.item_ids)},
            )
        valid_orders = [order.value for order in PriorityOrder]
        if request.priority_order not in valid_orders:
            raise InvalidPriorityOrder(
                f"Invalid priority order. Must be one of: {', '.join(valid_orders)}"
            )
        if not MIN_CONCURRENCY <= request.max_concurrency <= MAX_CONCURRENCY:
            raise InvalidConcurrency(
                f"Max concurrency must be between {MIN_CONCURRENCY} and {MAX_CONCURRENCY}"
            )

    async def order_items(
        self, request: BatchRequest, log=None, timeout: Optional[float] = None
    ) -> list[tuple[str, float]]:
        """Processing order with each item's priority score.

        The attribute lookup gets at most ``timeout`` seconds; past that the
        items are ordered without attributes.
        """
        order = PriorityOrder(request.priority_order)
        attributes: dict[str, dict] = {}
        if order != PriorityOrder.RANDOM and self.attributes_provider is not None:
            try:
                attributes = await asyncio.wait_for(
                    self.attributes_provider(list(request.item_ids)), timeout=timeout
                ) or {}
            except asyncio.TimeoutError:
                if log is not None:
                    log.warning(f"Attribute lookup exceeded {timeout:.2f}s, ordering without attributes")
                attributes = {}
            except Exception as e:
                if log is not None:
                    log.warning(f"Attribute lookup failed, ordering without attributes: {e}")
                attributes = {}
        return self.scorer.order(order, request.item_ids, attributes)

    async def _run_item(self, item_id: str) -> Any:
        return await self.operation(item_id)

    def _record(self, task: asyncio.Task, position: int, item_id: str, score: float, started: float, log) -> BatchItemResult:
        duration_ms = int((time.perf_counter() - started) * 1000)
        item = BatchItemResult(
            item_id=item_id,
            position=position,
            priority_score=score,
            status=ItemStatus.SUCCEEDED,
            duration_ms=duration_ms,
        )
        exc = asyncio.CancelledError("Item operation was cancelled") if task.cancelled() else task.exception()
        if exc is None:
            item.result = task.result()
            log.info(f"Completed {item_id}", extra={"item_id": item_id, "duration_ms": duration_ms})
            return item

        item.status = ItemStatus.FAILED
        item.error = describe_error(exc)
        item.error_code = exc.code if isinstance(exc, QueueError) else ERROR_HANDLER_FAILURE
        log.error(
            f"Failed {item_id}: {item.error}",
            extra={"item_id": item_id, "error_code": item.error_code, "duration_ms": duration_ms},
        )
        return item

    @staticmethod
    def _timed_out(position: int, item_id: str, score: float, started: Optional[float] = None) -> BatchItemResult:
        return BatchItemResult(
            item_id=item_id,
            position=position,
            priority_score=score,
            status=ItemStatus.TIMED_OUT,
            error="Batch deadline exceeded",
            error_code=ERROR_BATCH_TIMEOUT,
            duration_ms=int((time.perf_counter() - started) * 1000) if started else 0,
        )

    async def run(self, request: BatchRequest) -> BatchResult:
        """
        Validate, order and process one batch.

        Args:
            request: Items, priority order and concurrency bound

        Returns:
            BatchResult with one entry per item, in processing order
        """
        self.validate(request)

        started_at = utcnow()
        request_id = f"batch_{started_at.strftime('%Y%m%d%H%M%S')}_{os.urandom(4).hex()}"
        log = batch_logger(request_id)
        clock_start = time.perf_counter()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_seconds

        ordered = await self.order_items(request, log, timeout=max(deadline - loop.time(), 0))
        log.info(
            f"Starting batch research for {len(ordered)} items "
            f"(order {request.priority_order}, concurrency {request.max_concurrency})"
        )

        pending = deque(enumerate(ordered))
        in_flight: dict[asyncio.Task, tuple[int, str, float, float]] = {}
        results: dict[int, BatchItemResult] = {}

        while pending or in_flight:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            while pending and len(in_flight) < request.max_concurrency:
                position, (item_id, score) = pending.popleft()
                task = asyncio.create_task(self._run_item(item_id), name=f"{request_id}-{item_id}")
                in_flight[task] = (position, item_id, score, time.perf_counter())

            done, _ = await asyncio.wait(
                in_flight, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
            for task in done:
                position, item_id, score, item_started = in_flight.pop(task)
                results[position] = self._record(task, position, item_id, score, item_started, log)

        if in_flight or pending:
            log.warning(
                f"Batch deadline of {self.timeout_seconds}s reached with "
                f"{len(in_flight)} in flight and {len(pending)} not started",
                extra={"error_code": ERROR_BATCH_TIMEOUT},
            )
            for task in in_flight:
                task.cancel()
            await asyncio.gather(*in_flight, return_exceptions=True)
            for task, (position, item_id, score, item_started) in in_flight.items():
                if task.cancelled():
                    results[position] = self._timed_out(position, item_id, score, item_started)
                else:
                    # Finished between the deadline and the cancel
                    results[position] = self._record(task, position, item_id, score, item_started, log)
            for position, (item_id, score) in pending:
                results[position] = self._timed_out(position, item_id, score)

        ordered_results = [results[position] for position in sorted(results)]
        finished_at = utcnow()
        batch = BatchResult(
            request_id=request_id,
            total=len(ordered_results),
            succeeded=sum(1 for r in ordered_results if r.status == ItemStatus.SUCCEEDED),
            failed=sum(1 for r in ordered_results if r.status == ItemStatus.FAILED),
            timed_out=sum(1 for r in ordered_results if r.status == ItemStatus.TIMED_OUT),
            results=ordered_results,
            summary=summarize(ordered_results),
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=int((time.perf_counter() - clock_start) * 1000),
        )
        log.info(
            f"Batch research completed: {batch.succeeded} successful, "
            f"{batch.failed} failed, {batch.timed_out} timed out",
            extra={"duration_ms": batch.duration_ms},
        )
        return batch
