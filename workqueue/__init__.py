"""Durable prioritized work queue with retries, a dead letter store and health monitoring."""

from __future__ import annotations

from .app import WorkQueue
from .config import WorkQueueSettings
from .core import (
    ConfigurationError,
    FailureCategory,
    JobError,
    PermanentJobError,
    QueueItemStatus,
    TransientJobError,
    WorkQueueError,
)
from .dlq import DeadLetterEntry, DeadLetterQueue, DeadLetterStatus, InMemoryDeadLetterStore
from .logger import configure_logging, get_logger
from .monitor import AlertType, DashboardSnapshot, QueueMonitor
from .queue import HandlerRegistry, InMemoryQueueStore, QueueItem, QueueProcessor, QueueProducer
from .resilience import RetryPolicy, RetryPolicyConfig

__version__ = "0.1.0"

__all__ = [
    "AlertType",
    "ConfigurationError",
    "DashboardSnapshot",
    "DeadLetterEntry",
    "DeadLetterQueue",
    "DeadLetterStatus",
    "FailureCategory",
    "HandlerRegistry",
    "InMemoryDeadLetterStore",
    "InMemoryQueueStore",
    "JobError",
    "PermanentJobError",
    "QueueItem",
    "QueueItemStatus",
    "QueueMonitor",
    "QueueProcessor",
    "QueueProducer",
    "RetryPolicy",
    "RetryPolicyConfig",
    "TransientJobError",
    "WorkQueue",
    "WorkQueueError",
    "WorkQueueSettings",
    "__version__",
]
