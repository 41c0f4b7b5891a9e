"""Library utilities for the intel worker."""

from .pii_redactor import PIIRedactor
from .json_logger import (
    JSONFormatter,
    StructuredLoggerAdapter,
    setup_json_logging,
    setup_text_logging,
    get_structured_logger,
    job_logger,
    batch_logger,
)

__all__ = [
    # PII
    "PIIRedactor",
    # JSON logging
    "JSONFormatter",
    "StructuredLoggerAdapter",
    "setup_json_logging",
    "setup_text_logging",
    "get_structured_logger",
    "job_logger",
    "batch_logger",
]
