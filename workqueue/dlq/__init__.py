from __future__ import annotations

from .config import DLQConfig
from .domain import (
    DeadLetterContext,
    DeadLetterEntry,
    DeadLetterFilter,
    DeadLetterPriority,
    DeadLetterStats,
    DeadLetterStatus,
    ErrorSnapshot,
    RetryOutcome,
    SweepResult,
)
from .service import DeadLetterExecutor, DeadLetterQueue
from .store import DeadLetterStore, InMemoryDeadLetterStore

__all__ = [
    "DLQConfig",
    "DeadLetterContext",
    "DeadLetterEntry",
    "DeadLetterExecutor",
    "DeadLetterFilter",
    "DeadLetterPriority",
    "DeadLetterQueue",
    "DeadLetterStats",
    "DeadLetterStatus",
    "DeadLetterStore",
    "ErrorSnapshot",
    "InMemoryDeadLetterStore",
    "RetryOutcome",
    "SweepResult",
]
