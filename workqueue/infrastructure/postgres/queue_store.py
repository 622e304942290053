"""Postgres-backed `QueueStore`.

`claim` is a single conditional ``UPDATE ... WHERE status = 'pending'`` so two
processors racing on the same row cannot both receive it. Partial updates lock
the row, validate the transition against the domain model, then write back.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import asyncpg

from ...core.enums import QueueItemStatus
from ...core.exceptions import QueueItemNotFoundError
from ...logger import get_logger
from ...queue.domain import PriorityBand, QueueItem, QueueStats, utcnow
from ...queue.store import apply_update
from .schema import QUEUE_TABLE

if TYPE_CHECKING:
    from asyncpg import Record

    from .pool import AsyncConnectionPool

logger = get_logger(__name__)

COLUMNS: tuple[str, ...] = (
    "id",
    "type",
    "payload",
    "status",
    "priority",
    "scheduled_for",
    "retry_count",
    "max_retries",
    "last_error",
    "last_failed_at",
    "processing_started_at",
    "processing_completed_at",
    "result",
    "user_id",
    "metadata",
    "created_at",
    "updated_at",
)
JSON_COLUMNS = frozenset({"payload", "result", "metadata"})

_PLACEHOLDERS = ", ".join(f"${i}" for i in range(1, len(COLUMNS) + 1))
_ASSIGNMENTS = ", ".join(f"{column} = ${i}" for i, column in enumerate(COLUMNS[1:], start=2))


def dump_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str)


def load_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def affected_rows(status: str) -> int:
    """Row count from an asyncpg command tag such as ``"UPDATE 3"``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except ValueError:
        return 0


def record_to_item(record: Record) -> QueueItem:
    data = dict(record)
    for column in JSON_COLUMNS:
        data[column] = load_json(data.get(column))
    if data["payload"] is None:
        data["payload"] = {}
    if data["metadata"] is None:
        data["metadata"] = {}
    return QueueItem.model_validate(data)


def item_to_params(item: QueueItem) -> list[Any]:
    data = item.model_dump(exclude={"priority_band"})
    data["status"] = item.status.value
    return [dump_json(data[column]) if column in JSON_COLUMNS else data[column] for column in COLUMNS]


class PostgresQueueStore:
    """`QueueStore` over the ``work_queue_items`` table."""

    def __init__(self, pool: AsyncConnectionPool) -> None:
        self._pool = pool

    async def enqueue(self, item: QueueItem) -> str:
        query = f"INSERT INTO {QUEUE_TABLE} ({', '.join(COLUMNS)}) VALUES ({_PLACEHOLDERS})"
        try:
            await self._pool.aexecute(query, *item_to_params(item))
        except asyncpg.UniqueViolationError as e:
            raise ValueError(f"Queue item {item.id} already exists") from e
        return item.id

    async def get(self, item_id: str) -> QueueItem | None:
        record = await self._pool.afetchrow(f"SELECT * FROM {QUEUE_TABLE} WHERE id = $1", item_id)
        return record_to_item(record) if record is not None else None

    async def fetch_batch(
        self,
        status: QueueItemStatus = QueueItemStatus.PENDING,
        limit: int = 10,
        user_id: str | None = None,
    ) -> list[QueueItem]:
        records = await self._pool.afetch(
            f"""
            SELECT * FROM {QUEUE_TABLE}
            WHERE status = $1
              AND scheduled_for <= $2
              AND ($3::text IS NULL OR user_id = $3)
            ORDER BY priority DESC, created_at ASC
            LIMIT $4
            """,
            QueueItemStatus(status).value,
            utcnow(),
            user_id,
            limit,
        )
        return [record_to_item(record) for record in records]

    async def claim(self, item_id: str) -> QueueItem | None:
        now = utcnow()
        record = await self._pool.afetchrow(
            f"""
            UPDATE {QUEUE_TABLE}
            SET status = $2, processing_started_at = $3, processing_completed_at = NULL, updated_at = $3
            WHERE id = $1 AND status = $4
            RETURNING *
            """,
            item_id,
            QueueItemStatus.PROCESSING.value,
            now,
            QueueItemStatus.PENDING.value,
        )
        return record_to_item(record) if record is not None else None

    async def update(self, item_id: str, **fields: Any) -> QueueItem:
        async with self._pool.atransaction() as conn:
            record = await conn.fetchrow(f"SELECT * FROM {QUEUE_TABLE} WHERE id = $1 FOR UPDATE", item_id)
            if record is None:
                raise QueueItemNotFoundError(f"Queue item not found: {item_id}")

            updated = apply_update(record_to_item(record), fields, utcnow())
            await conn.execute(f"UPDATE {QUEUE_TABLE} SET {_ASSIGNMENTS} WHERE id = $1", *item_to_params(updated))
        return updated

    async def aggregate_stats(self, user_id: str | None = None) -> QueueStats:
        async with self._pool.aacquire() as conn:
            status_rows = await conn.fetch(
                f"""
                SELECT status, count(*) AS n FROM {QUEUE_TABLE}
                WHERE ($1::text IS NULL OR user_id = $1)
                GROUP BY status
                """,
                user_id,
            )
            band_rows = await conn.fetch(
                f"""
                SELECT CASE WHEN priority >= 70 THEN 'high' WHEN priority >= 40 THEN 'medium' ELSE 'low' END AS band,
                       count(*) AS n
                FROM {QUEUE_TABLE}
                WHERE ($1::text IS NULL OR user_id = $1)
                GROUP BY band
                """,
                user_id,
            )
            summary = await conn.fetchrow(
                f"""
                SELECT
                    min(created_at) FILTER (WHERE status = 'pending') AS oldest_pending,
                    avg(EXTRACT(EPOCH FROM processing_completed_at - processing_started_at) * 1000)
                        FILTER (WHERE status = 'completed'
                                AND processing_started_at IS NOT NULL
                                AND processing_completed_at IS NOT NULL) AS avg_ms
                FROM {QUEUE_TABLE}
                WHERE ($1::text IS NULL OR user_id = $1)
                """,
                user_id,
            )

        by_status = {QueueItemStatus(row["status"]): row["n"] for row in status_rows}
        by_band = dict.fromkeys(PriorityBand, 0)
        by_band.update({PriorityBand(row["band"]): row["n"] for row in band_rows})
        oldest_pending = summary["oldest_pending"] if summary else None
        avg_ms = summary["avg_ms"] if summary else None

        return QueueStats(
            total=sum(by_status.values()),
            by_status=by_status,
            by_priority_band=by_band,
            oldest_pending_age_s=(utcnow() - oldest_pending).total_seconds() if oldest_pending else None,
            avg_processing_duration_ms=float(avg_ms) if avg_ms is not None else 0.0,
        )

    async def delete_older_than(self, age: timedelta, statuses: Iterable[QueueItemStatus]) -> int:
        status = await self._pool.aexecute(
            f"DELETE FROM {QUEUE_TABLE} WHERE status = ANY($1::text[]) AND created_at < $2",
            [QueueItemStatus(s).value for s in statuses],
            utcnow() - age,
        )
        deleted = affected_rows(status)
        logger.debug("Deleted old queue items", deleted=deleted, age_s=age.total_seconds())
        return deleted

    async def pause(self, user_id: str | None = None) -> int:
        status = await self._pool.aexecute(
            f"""
            UPDATE {QUEUE_TABLE} SET status = $1, updated_at = $2
            WHERE status = $3 AND ($4::text IS NULL OR user_id = $4)
            """,
            QueueItemStatus.PAUSED.value,
            utcnow(),
            QueueItemStatus.PENDING.value,
            user_id,
        )
        return affected_rows(status)

    async def resume(self, user_id: str | None = None) -> int:
        status = await self._pool.aexecute(
            f"""
            UPDATE {QUEUE_TABLE} SET status = $1, scheduled_for = $2, updated_at = $2
            WHERE status = $3 AND ($4::text IS NULL OR user_id = $4)
            """,
            QueueItemStatus.PENDING.value,
            utcnow(),
            QueueItemStatus.PAUSED.value,
            user_id,
        )
        return affected_rows(status)
