"""Queue module for background job processing.

Features:
- Priority queues per lane (research, enrichment, reports, signals)
- Retry with fixed or exponential backoff
- Sliding-window admission rate limits
- Redis-backed storage with atomic claims
- Worker pools with bounded concurrency and graceful shutdown
- Weekly recurring jobs (scheduled reports)
"""

from .errors import (
    QueueError,
    ValidationError,
    InvalidPayload,
    InvalidPriority,
    EmptyBatch,
    BatchTooLarge,
    InvalidPriorityOrder,
    InvalidConcurrency,
    UnknownQueue,
    InvalidQueueName,
    NotFound,
    InvalidJobState,
    HandlerFailure,
)
from .policies import (
    QueueName,
    BackoffStrategy,
    RetryPolicy,
    RateLimiter,
    CleanRule,
    QueueConfig,
    QUEUE_CONFIGS,
)
from .job_queue import Job, JobState, JobPriority, JobQueue
from .worker import WorkerPool
from .scheduler import RecurringSchedule, RecurringScheduler
from .manager import QueueManager
from .handlers import (
    IntelligenceService,
    ItemResearcher,
    HttpIntelligenceService,
    build_handlers,
)

__all__ = [
    'QueueError',
    'ValidationError',
    'InvalidPayload',
    'InvalidPriority',
    'EmptyBatch',
    'BatchTooLarge',
    'InvalidPriorityOrder',
    'InvalidConcurrency',
    'UnknownQueue',
    'InvalidQueueName',
    'NotFound',
    'InvalidJobState',
    'HandlerFailure',
    'QueueName',
    'BackoffStrategy',
    'RetryPolicy',
    'RateLimiter',
    'CleanRule',
    'QueueConfig',
    'QUEUE_CONFIGS',
    'Job',
    'JobState',
    'JobPriority',
    'JobQueue',
    'WorkerPool',
    'RecurringSchedule',
    'RecurringScheduler',
    'QueueManager',
    'IntelligenceService',
    'ItemResearcher',
    'HttpIntelligenceService',
    'build_handlers',
]
