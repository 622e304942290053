"""Core module exports."""

from __future__ import annotations

from .enums import FailureCategory, HealthCheckStatus, QueueItemStatus
from .exceptions import (
    ConfigurationError,
    DeadLetterEntryNotFoundError,
    EntryAlreadyResolvedError,
    EntryStatusConflictError,
    InvalidTransitionError,
    JobError,
    OperatorError,
    PermanentJobError,
    QueueItemNotFoundError,
    RetryExhaustedError,
    StoreNotInitializedError,
    TransientJobError,
    WorkQueueError,
)

__all__ = [
    "ConfigurationError",
    "DeadLetterEntryNotFoundError",
    "EntryAlreadyResolvedError",
    "EntryStatusConflictError",
    "FailureCategory",
    "HealthCheckStatus",
    "InvalidTransitionError",
    "JobError",
    "OperatorError",
    "PermanentJobError",
    "QueueItemNotFoundError",
    "QueueItemStatus",
    "RetryExhaustedError",
    "StoreNotInitializedError",
    "TransientJobError",
    "WorkQueueError",
]
