"""Queue store contract and an in-process implementation.

The processor relies on `claim` being an atomic conditional update
(pending -> processing) so that two callers racing on the same fetched item
cannot both own it. Stores that cannot provide this fall back to at-least-once
execution, which is why handlers must be idempotent.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any, Protocol, runtime_checkable

from ..core.enums import QueueItemStatus
from ..core.exceptions import InvalidTransitionError, QueueItemNotFoundError
from ..logger import get_logger
from .domain import QueueItem, QueueStats, can_transition, utcnow

logger = get_logger(__name__)


@runtime_checkable
class QueueStore(Protocol):
    """Transactional persistence for queue items. Every operation is individually atomic."""

    async def enqueue(self, item: QueueItem) -> str: ...

    async def get(self, item_id: str) -> QueueItem | None: ...

    async def fetch_batch(
        self,
        status: QueueItemStatus = QueueItemStatus.PENDING,
        limit: int = 10,
        user_id: str | None = None,
    ) -> list[QueueItem]:
        """Eligible items ordered by ``priority desc, created_at asc`` with ``scheduled_for <= now``."""
        ...

    async def claim(self, item_id: str) -> QueueItem | None:
        """Atomically move a pending item to processing. None if someone else owns it."""
        ...

    async def update(self, item_id: str, **fields: Any) -> QueueItem: ...

    async def aggregate_stats(self, user_id: str | None = None) -> QueueStats: ...

    async def delete_older_than(self, age: timedelta, statuses: Iterable[QueueItemStatus]) -> int: ...

    async def pause(self, user_id: str | None = None) -> int: ...

    async def resume(self, user_id: str | None = None) -> int: ...


def apply_update(item: QueueItem, fields: dict[str, Any], now: datetime) -> QueueItem:
    """Validate a partial update against the item lifecycle and return the new snapshot."""
    new_status = fields.get("status")
    if new_status is not None and not can_transition(item.status, QueueItemStatus(new_status)):
        raise InvalidTransitionError(f"Queue item {item.id} cannot move from {item.status} to {new_status}")

    data = item.model_dump(exclude={"priority_band"})
    data.update(fields)
    data["updated_at"] = now
    return QueueItem.model_validate(data)


class InMemoryQueueStore:
    """Dict-backed queue store guarded by a single asyncio lock.

    Suitable for tests and single-process deployments. State is lost on exit.
    """

    def __init__(self) -> None:
        self._items: dict[str, QueueItem] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._items)

    async def enqueue(self, item: QueueItem) -> str:
        async with self._lock:
            if item.id in self._items:
                raise ValueError(f"Queue item {item.id} already exists")
            self._items[item.id] = item
        return item.id

    async def get(self, item_id: str) -> QueueItem | None:
        return self._items.get(item_id)

    async def fetch_batch(
        self,
        status: QueueItemStatus = QueueItemStatus.PENDING,
        limit: int = 10,
        user_id: str | None = None,
    ) -> list[QueueItem]:
        now = utcnow()
        async with self._lock:
            candidates = [
                item
                for item in self._items.values()
                if item.status == status
                and item.scheduled_for <= now
                and (user_id is None or item.user_id == user_id)
            ]
        candidates.sort(key=lambda item: (-item.priority, item.created_at))
        return candidates[:limit]

    async def claim(self, item_id: str) -> QueueItem | None:
        now = utcnow()
        async with self._lock:
            item = self._items.get(item_id)
            if item is None or item.status is not QueueItemStatus.PENDING:
                return None
            claimed = apply_update(
                item,
                {"status": QueueItemStatus.PROCESSING, "processing_started_at": now, "processing_completed_at": None},
                now,
            )
            self._items[item_id] = claimed
        return claimed

    async def update(self, item_id: str, **fields: Any) -> QueueItem:
        async with self._lock:
            item = self._items.get(item_id)
            if item is None:
                raise QueueItemNotFoundError(f"Queue item not found: {item_id}")
            updated = apply_update(item, fields, utcnow())
            self._items[item_id] = updated
        return updated

    async def aggregate_stats(self, user_id: str | None = None) -> QueueStats:
        async with self._lock:
            items = [item for item in self._items.values() if user_id is None or item.user_id == user_id]
        return QueueStats.from_items(items)

    async def delete_older_than(self, age: timedelta, statuses: Iterable[QueueItemStatus]) -> int:
        cutoff = utcnow() - age
        wanted = set(statuses)
        async with self._lock:
            doomed = [
                item_id
                for item_id, item in self._items.items()
                if item.status in wanted and item.created_at < cutoff
            ]
            for item_id in doomed:
                del self._items[item_id]
        return len(doomed)

    async def pause(self, user_id: str | None = None) -> int:
        return await self._move_all(QueueItemStatus.PENDING, QueueItemStatus.PAUSED, user_id)

    async def resume(self, user_id: str | None = None) -> int:
        return await self._move_all(QueueItemStatus.PAUSED, QueueItemStatus.PENDING, user_id)

    async def _move_all(self, source: QueueItemStatus, target: QueueItemStatus, user_id: str | None) -> int:
        now = utcnow()
        fields: dict[str, Any] = {"status": target}
        if target is QueueItemStatus.PENDING:
            fields["scheduled_for"] = now

        moved = 0
        async with self._lock:
            for item_id, item in list(self._items.items()):
                if item.status is source and (user_id is None or item.user_id == user_id):
                    self._items[item_id] = apply_update(item, fields, now)
                    moved += 1
        return moved
