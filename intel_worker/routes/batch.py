"""Batch research endpoint."""

from fastapi import APIRouter, Depends
import logging

from intel_worker.batch import BatchOrchestrator, BatchRequest
from intel_worker.queue import QueueError
from intel_worker.routes.deps import get_orchestrator, http_error

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("")
async def run_batch(request: BatchRequest, orchestrator: BatchOrchestrator = Depends(get_orchestrator)):
    """
    Research up to 20 items with bounded concurrency.

    The call returns once every item has an outcome or the batch deadline
    has passed; individual item failures never fail the request.
    """
    try:
        batch = await orchestrator.run(request)
    except QueueError as e:
        raise http_error(e)

    return {
        "success": True,
        "message": f"Batch research completed for {batch.succeeded}/{batch.total} items",
        "data": {
            "batch_result": batch.model_dump(mode="json"),
            "summary": {
                "request_id": batch.request_id,
                "processed": batch.succeeded,
                "failed": batch.failed,
                "timed_out": batch.timed_out,
                **batch.summary.model_dump(mode="json"),
            },
        },
    }
