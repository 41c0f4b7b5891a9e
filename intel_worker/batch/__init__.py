"""Batch research orchestration."""

from .priority import PriorityOrder, PriorityScorer
from .orchestrator import (
    BatchRequest,
    BatchItemResult,
    BatchSummary,
    BatchResult,
    BatchOrchestrator,
    ItemStatus,
    summarize,
)

__all__ = [
    'PriorityOrder',
    'PriorityScorer',
    'BatchRequest',
    'BatchItemResult',
    'BatchSummary',
    'BatchResult',
    'BatchOrchestrator',
    'ItemStatus',
    'summarize',
]
