from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

from ..core.enums import QueueItemStatus
from ..core.types import UTCDatetime

HIGH_PRIORITY = 90
DEFAULT_PRIORITY = 50
LOW_PRIORITY = 20


ALLOWED_TRANSITIONS: dict[QueueItemStatus, frozenset[QueueItemStatus]] = {
    QueueItemStatus.PENDING: frozenset(
        {QueueItemStatus.PROCESSING, QueueItemStatus.PAUSED, QueueItemStatus.FAILED},
    ),
    QueueItemStatus.PAUSED: frozenset({QueueItemStatus.PENDING}),
    QueueItemStatus.PROCESSING: frozenset(
        {QueueItemStatus.COMPLETED, QueueItemStatus.FAILED, QueueItemStatus.PENDING},
    ),
    QueueItemStatus.COMPLETED: frozenset(),
    QueueItemStatus.FAILED: frozenset(),
}


def utcnow() -> datetime:
    return datetime.now(UTC)


def can_transition(current: QueueItemStatus, new: QueueItemStatus) -> bool:
    return current == new or new in ALLOWED_TRANSITIONS[current]


class PriorityBand(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def for_priority(cls, priority: int) -> PriorityBand:
        if priority >= 70:
            return cls.HIGH
        if priority >= 40:
            return cls.MEDIUM
        return cls.LOW


class QueueItem(BaseModel):
    """A unit of scheduled asynchronous work.

    Items are immutable snapshots of a store row; state transitions go through
    the `QueueStore` and return a fresh snapshot.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), min_length=1, description="Opaque unique identifier")
    type: str = Field(min_length=1, description="Job type selecting the handler (e.g. 'email_send')")
    payload: dict[str, Any] = Field(default_factory=dict, description="Opaque data consumed by the handler")
    status: QueueItemStatus = Field(default=QueueItemStatus.PENDING)
    priority: int = Field(default=DEFAULT_PRIORITY, ge=0, le=100, description="Higher is served first")
    scheduled_for: UTCDatetime = Field(default_factory=utcnow, description="Not eligible before this instant")
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    last_error: str | None = None
    last_failed_at: UTCDatetime | None = None
    processing_started_at: UTCDatetime | None = None
    processing_completed_at: UTCDatetime | None = None
    result: Any = None
    user_id: str | None = Field(default=None, description="Originating user, if any")
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: UTCDatetime = Field(default_factory=utcnow)
    updated_at: UTCDatetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_invariants(self) -> Self:
        if self.retry_count > self.max_retries + 1:
            raise ValueError(f"retry_count {self.retry_count} exceeds max_retries + 1 ({self.max_retries + 1})")
        if self.status is QueueItemStatus.PENDING and self.retry_count > self.max_retries:
            raise ValueError("pending item cannot have retry_count above max_retries")
        if self.status is QueueItemStatus.PROCESSING and self.processing_started_at is None:
            raise ValueError("processing item requires processing_started_at")
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def priority_band(self) -> PriorityBand:
        return PriorityBand.for_priority(self.priority)

    @property
    def is_terminal(self) -> bool:
        return self.status in (QueueItemStatus.COMPLETED, QueueItemStatus.FAILED)

    def is_eligible(self, now: datetime) -> bool:
        return self.status is QueueItemStatus.PENDING and self.scheduled_for <= now

    def processing_duration_ms(self) -> float | None:
        if self.processing_started_at is None or self.processing_completed_at is None:
            return None
        return (self.processing_completed_at - self.processing_started_at).total_seconds() * 1000


class QueueStats(BaseModel):
    """Aggregate counts over the queue store."""

    model_config = ConfigDict(frozen=True)

    total: int = 0
    by_status: dict[QueueItemStatus, int] = Field(default_factory=dict)
    by_priority_band: dict[PriorityBand, int] = Field(default_factory=dict)
    oldest_pending_age_s: float | None = None
    avg_processing_duration_ms: float = 0.0

    def count(self, status: QueueItemStatus) -> int:
        return self.by_status.get(status, 0)

    @property
    def pending(self) -> int:
        return self.count(QueueItemStatus.PENDING)

    @property
    def processing(self) -> int:
        return self.count(QueueItemStatus.PROCESSING)

    @property
    def completed(self) -> int:
        return self.count(QueueItemStatus.COMPLETED)

    @property
    def failed(self) -> int:
        return self.count(QueueItemStatus.FAILED)

    @property
    def paused(self) -> int:
        return self.count(QueueItemStatus.PAUSED)

    @property
    def queue_size(self) -> int:
        """Items still owed work: pending plus in flight."""
        return self.pending + self.processing

    @classmethod
    def from_items(cls, items: list[QueueItem], now: datetime | None = None) -> QueueStats:
        now = now or utcnow()
        by_status: dict[QueueItemStatus, int] = {}
        by_band: dict[PriorityBand, int] = dict.fromkeys(PriorityBand, 0)
        oldest_pending: datetime | None = None
        durations: list[float] = []

        for item in items:
            by_status[item.status] = by_status.get(item.status, 0) + 1
            by_band[item.priority_band] += 1

            if item.status is QueueItemStatus.PENDING and (oldest_pending is None or item.created_at < oldest_pending):
                oldest_pending = item.created_at

            if item.status is QueueItemStatus.COMPLETED:
                duration = item.processing_duration_ms()
                if duration is not None:
                    durations.append(duration)

        return cls(
            total=len(items),
            by_status=by_status,
            by_priority_band=by_band,
            oldest_pending_age_s=(now - oldest_pending).total_seconds() if oldest_pending else None,
            avg_processing_duration_ms=sum(durations) / len(durations) if durations else 0.0,
        )
