from __future__ import annotations

from .config import ProcessorConfig
from .domain import DEFAULT_PRIORITY, HIGH_PRIORITY, LOW_PRIORITY, PriorityBand, QueueItem, QueueStats
from .processor import (
    BatchResult,
    DeadLetterSink,
    ProcessorHealth,
    ProcessorStats,
    QueueProcessor,
    WorkerInfo,
    WorkerOutcome,
)
from .producer import EnqueueResult, JobSpec, QueueProducer
from .registry import HandlerRegistry, JobHandler
from .store import InMemoryQueueStore, QueueStore

__all__ = [
    "DEFAULT_PRIORITY",
    "HIGH_PRIORITY",
    "LOW_PRIORITY",
    "BatchResult",
    "DeadLetterSink",
    "EnqueueResult",
    "HandlerRegistry",
    "InMemoryQueueStore",
    "JobHandler",
    "JobSpec",
    "PriorityBand",
    "ProcessorConfig",
    "ProcessorHealth",
    "ProcessorStats",
    "QueueItem",
    "QueueProcessor",
    "QueueProducer",
    "QueueStats",
    "QueueStore",
    "WorkerInfo",
    "WorkerOutcome",
]
