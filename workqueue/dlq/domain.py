from __future__ import annotations

import traceback
import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ..core.enums import FailureCategory
from ..core.types import UTCDatetime


def utcnow() -> datetime:
    return datetime.now(UTC)


class DeadLetterStatus(StrEnum):
    PENDING_REVIEW = "pending_review"
    RETRYING = "retrying"
    RESOLVED = "resolved"
    FAILED = "failed"


class DeadLetterPriority(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def from_item_priority(cls, priority: int) -> DeadLetterPriority:
        if priority >= 90:
            return cls.CRITICAL
        if priority >= 70:
            return cls.HIGH
        if priority >= 40:
            return cls.NORMAL
        return cls.LOW


class ErrorSnapshot(BaseModel):
    """What went wrong, captured at the moment of failure."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    message: str = Field(description="Exception message")
    error_type: str = Field(default="Exception", description="Exception class name")
    category: FailureCategory = Field(default=FailureCategory.PERMANENT)
    code: str | None = Field(default=None, description="Machine readable error code, if any")
    traceback: str = Field(default="", description="Formatted stack trace")
    count: int = Field(default=0, ge=0, description="Failed attempts before dead-lettering")

    @classmethod
    def from_exception(
        cls,
        error: BaseException,
        category: FailureCategory,
        count: int = 0,
    ) -> ErrorSnapshot:
        code = getattr(error, "code", None)
        return cls(
            message=str(error) or type(error).__name__,
            error_type=type(error).__name__,
            category=category,
            code=str(code) if code is not None else None,
            traceback="".join(traceback.format_exception(type(error), error, error.__traceback__)),
            count=count,
        )


class DeadLetterContext(BaseModel):
    """Where the failed work came from."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    user_id: str | None = None
    operation: str | None = None
    queue_item_id: str | None = None
    timestamp: UTCDatetime = Field(default_factory=utcnow)
    extras: dict[str, Any] = Field(default_factory=dict)


class DeadLetterEntry(BaseModel):
    """A terminally failed job preserved for inspection and remediation.

    Once ``status`` is ``resolved`` only ``metadata`` and ``resolution_notes``
    may change.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), min_length=1)
    operation_type: str = Field(min_length=1, description="Job type of the failed work")
    original_payload: dict[str, Any] = Field(default_factory=dict)
    error_snapshot: ErrorSnapshot
    context: DeadLetterContext = Field(default_factory=DeadLetterContext)
    priority: DeadLetterPriority = Field(default=DeadLetterPriority.NORMAL)
    status: DeadLetterStatus = Field(default=DeadLetterStatus.PENDING_REVIEW)
    retry_count: int = Field(default=0, ge=0, description="Dead-letter retries attempted")
    created_at: UTCDatetime = Field(default_factory=utcnow)
    updated_at: UTCDatetime = Field(default_factory=utcnow)
    last_retry_at: UTCDatetime | None = None
    resolved_at: UTCDatetime | None = None
    resolution_notes: str | None = None
    resolved_by: str | None = None
    result: Any = None
    retry_error: ErrorSnapshot | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_resolved(self) -> bool:
        return self.status is DeadLetterStatus.RESOLVED

    @property
    def latest_error(self) -> ErrorSnapshot:
        return self.retry_error or self.error_snapshot


class DeadLetterFilter(BaseModel):
    """Conjunction of optional criteria; an unset field matches everything."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    status: DeadLetterStatus | None = None
    operation_type: str | None = None
    priority: DeadLetterPriority | None = None
    user_id: str | None = None
    operation_types: frozenset[str] | None = Field(default=None, description="Any of these operation types")
    retry_count_below: int | None = Field(default=None, ge=0, description="Only entries retried fewer times")

    def matches(self, entry: DeadLetterEntry) -> bool:
        return (
            (self.status is None or entry.status == self.status)
            and (self.operation_type is None or entry.operation_type == self.operation_type)
            and (self.priority is None or entry.priority == self.priority)
            and (self.user_id is None or entry.context.user_id == self.user_id)
            and (self.operation_types is None or entry.operation_type in self.operation_types)
            and (self.retry_count_below is None or entry.retry_count < self.retry_count_below)
        )


class DeadLetterStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_priority: dict[str, int] = Field(default_factory=dict)
    by_operation_type: dict[str, int] = Field(default_factory=dict)
    by_day: dict[str, int] = Field(default_factory=dict)
    oldest_entry: datetime | None = None
    newest_entry: datetime | None = None

    @property
    def unresolved(self) -> int:
        """Entries still needing attention: pending review, retrying or failed."""
        return self.total - self.by_status.get(DeadLetterStatus.RESOLVED.value, 0)

    @classmethod
    def from_entries(cls, entries: list[DeadLetterEntry]) -> DeadLetterStats:
        by_status: dict[str, int] = {}
        by_priority: dict[str, int] = {}
        by_operation_type: dict[str, int] = {}
        by_day: dict[str, int] = {}

        for entry in entries:
            by_status[entry.status.value] = by_status.get(entry.status.value, 0) + 1
            by_priority[entry.priority.value] = by_priority.get(entry.priority.value, 0) + 1
            by_operation_type[entry.operation_type] = by_operation_type.get(entry.operation_type, 0) + 1
            day = entry.created_at.astimezone(UTC).date().isoformat()
            by_day[day] = by_day.get(day, 0) + 1

        created = [entry.created_at for entry in entries]
        return cls(
            total=len(entries),
            by_status=by_status,
            by_priority=by_priority,
            by_operation_type=by_operation_type,
            by_day=by_day,
            oldest_entry=min(created) if created else None,
            newest_entry=max(created) if created else None,
        )


class RetryOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    entry_id: str
    result: Any = None


class SweepResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    examined: int = 0
    resolved: int = 0
    failed: int = 0
    skipped: int = 0
