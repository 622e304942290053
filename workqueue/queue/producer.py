from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from ..core.enums import QueueItemStatus
from ..logger import get_logger
from .domain import DEFAULT_PRIORITY, HIGH_PRIORITY, LOW_PRIORITY, QueueItem, utcnow

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .store import QueueStore

logger = get_logger(__name__)


class JobSpec(BaseModel):
    """Input for `QueueProducer.enqueue_batch`."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    job_type: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(default=DEFAULT_PRIORITY, ge=0, le=100)
    scheduled_for: datetime | None = None
    user_id: str | None = None


class EnqueueResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    item_id: str | None = None
    error: str | None = None


class QueueProducer:
    """Producer-side API: put work on the queue and manage it in bulk."""

    def __init__(self, store: QueueStore, *, default_max_retries: int = 3) -> None:
        self._store = store
        self._default_max_retries = default_max_retries

    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any] | None = None,
        priority: int = DEFAULT_PRIORITY,
        scheduled_for: datetime | None = None,
        *,
        user_id: str | None = None,
        max_retries: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Insert a pending item and return its id.

        Raises
        ------
        pydantic.ValidationError
            If the job type is empty or priority is outside 0..100.
        """
        now = utcnow()
        item = QueueItem(
            type=job_type,
            payload=payload or {},
            priority=priority,
            scheduled_for=scheduled_for or now,
            max_retries=self._default_max_retries if max_retries is None else max_retries,
            user_id=user_id,
            metadata=metadata or {},
            created_at=now,
            updated_at=now,
        )
        item_id = await self._store.enqueue(item)

        logger.info(
            "Enqueued item",
            item_id=item_id,
            job_type=job_type,
            priority=priority,
            scheduled_for=item.scheduled_for.isoformat(),
        )
        return item_id

    async def enqueue_high_priority(self, job_type: str, payload: dict[str, Any] | None = None, **kwargs: Any) -> str:
        return await self.enqueue(job_type, payload, HIGH_PRIORITY, **kwargs)

    async def enqueue_low_priority(self, job_type: str, payload: dict[str, Any] | None = None, **kwargs: Any) -> str:
        return await self.enqueue(job_type, payload, LOW_PRIORITY, **kwargs)

    async def schedule_for_later(
        self,
        job_type: str,
        payload: dict[str, Any] | None,
        when: datetime | timedelta,
        priority: int = DEFAULT_PRIORITY,
        **kwargs: Any,
    ) -> str:
        scheduled_for = utcnow() + when if isinstance(when, timedelta) else when
        return await self.enqueue(job_type, payload, priority, scheduled_for, **kwargs)

    async def enqueue_batch(self, jobs: Iterable[JobSpec]) -> list[EnqueueResult]:
        """Enqueue each job independently; one failure does not abort the rest."""
        results: list[EnqueueResult] = []
        for job in jobs:
            try:
                item_id = await self.enqueue(
                    job.job_type,
                    job.payload,
                    job.priority,
                    job.scheduled_for,
                    user_id=job.user_id,
                )
            except Exception as e:
                logger.error("Failed to enqueue item", job_type=job.job_type, error=str(e))
                results.append(EnqueueResult(success=False, error=str(e)))
            else:
                results.append(EnqueueResult(success=True, item_id=item_id))
        return results

    async def pause_queue(self, user_id: str | None = None) -> int:
        count = await self._store.pause(user_id)
        logger.info("Queue paused", user_id=user_id, paused=count)
        return count

    async def resume_queue(self, user_id: str | None = None) -> int:
        count = await self._store.resume(user_id)
        logger.info("Queue resumed", user_id=user_id, resumed=count)
        return count

    async def cleanup_old_items(self, days_old: int = 30) -> int:
        """Delete completed and failed items older than ``days_old`` days."""
        deleted = await self._store.delete_older_than(
            timedelta(days=days_old),
            (QueueItemStatus.COMPLETED, QueueItemStatus.FAILED),
        )
        logger.info("Cleaned up old queue items", days_old=days_old, deleted=deleted)
        return deleted
