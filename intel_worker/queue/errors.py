"""Exceptions raised by the queue and batch core.

Routes translate these into HTTP responses via ``status_code`` and ``code``.
"""

from typing import Any, Optional


# Outcome codes recorded on jobs / batch items (never raised)
ERROR_RATE_LIMITED = "rate_limited"
ERROR_HANDLER_FAILURE = "handler_failure"
ERROR_RETRIES_EXHAUSTED = "retries_exhausted"
ERROR_BATCH_TIMEOUT = "batch_timeout"


class QueueError(Exception):
    """Base exception for the job processing core."""

    code = "queue_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_detail(self) -> dict:
        """Error body used by the HTTP layer."""
        detail = {"error": self.code, "message": self.message}
        if self.details:
            detail["details"] = self.details
        return detail


class ValidationError(QueueError):
    """Bad input to enqueue or batch; raised before any mutation."""

    code = "validation_error"
    status_code = 400


class InvalidPayload(ValidationError):
    code = "invalid_payload"


class InvalidPriority(ValidationError):
    code = "invalid_priority"


class EmptyBatch(ValidationError):
    code = "empty_batch"


class BatchTooLarge(ValidationError):
    code = "batch_too_large"


class InvalidPriorityOrder(ValidationError):
    code = "invalid_priority_order"


class InvalidConcurrency(ValidationError):
    code = "invalid_concurrency"


class UnknownQueue(QueueError):
    """Queue name outside the fixed set."""

    code = "unknown_queue"
    status_code = 404


# The enqueue path reports an unknown queue as a bad queue name
InvalidQueueName = UnknownQueue


class NotFound(QueueError):
    """Job id absent from the queue(s) searched."""

    code = "not_found"
    status_code = 404


class InvalidJobState(QueueError):
    """Operation not allowed for the job's current state."""

    code = "invalid_job_state"
    status_code = 409


class HandlerFailure(QueueError):
    """The executed operation itself failed; subject to the retry policy."""

    code = ERROR_HANDLER_FAILURE
    status_code = 502
