"""Postgres-backed `DeadLetterStore` over the ``dead_letter_entries`` table."""

from __future__ import annotations

from collections import Counter
from typing import TYPE_CHECKING, Any

import asyncpg

from ...core.exceptions import DeadLetterEntryNotFoundError, EntryStatusConflictError
from ...dlq.domain import DeadLetterEntry, DeadLetterFilter, DeadLetterStats, DeadLetterStatus
from ...dlq.store import apply_entry_update, check_expected_status
from ...logger import get_logger
from .queue_store import dump_json, load_json
from .schema import DEAD_LETTER_TABLE

if TYPE_CHECKING:
    from asyncpg import Record

    from .pool import AsyncConnectionPool

logger = get_logger(__name__)

COLUMNS: tuple[str, ...] = (
    "id",
    "operation_type",
    "original_payload",
    "error_snapshot",
    "context",
    "user_id",
    "priority",
    "status",
    "retry_count",
    "created_at",
    "updated_at",
    "last_retry_at",
    "resolved_at",
    "resolution_notes",
    "resolved_by",
    "result",
    "retry_error",
    "metadata",
)
JSON_COLUMNS = frozenset({"original_payload", "error_snapshot", "context", "result", "retry_error", "metadata"})

_PLACEHOLDERS = ", ".join(f"${i}" for i in range(1, len(COLUMNS) + 1))
_ASSIGNMENTS = ", ".join(f"{column} = ${i}" for i, column in enumerate(COLUMNS[1:], start=2))
_STATUS_GUARD = len(COLUMNS) + 1


def record_to_entry(record: Record) -> DeadLetterEntry:
    data = dict(record)
    data.pop("user_id", None)
    for column in JSON_COLUMNS:
        data[column] = load_json(data.get(column))
    return DeadLetterEntry.model_validate(data)


def entry_to_params(entry: DeadLetterEntry) -> list[Any]:
    data = entry.model_dump(mode="json")
    data["user_id"] = entry.context.user_id
    params: list[Any] = []
    for column in COLUMNS:
        if column in JSON_COLUMNS:
            params.append(dump_json(data[column]))
        elif column.endswith("_at"):
            params.append(getattr(entry, column))
        else:
            params.append(data[column])
    return params


class PostgresDeadLetterStore:
    def __init__(self, pool: AsyncConnectionPool) -> None:
        self._pool = pool

    async def insert(self, entry: DeadLetterEntry) -> str:
        query = f"INSERT INTO {DEAD_LETTER_TABLE} ({', '.join(COLUMNS)}) VALUES ({_PLACEHOLDERS})"
        try:
            await self._pool.aexecute(query, *entry_to_params(entry))
        except asyncpg.UniqueViolationError as e:
            raise ValueError(f"Dead letter entry {entry.id} already exists") from e
        return entry.id

    async def get(self, entry_id: str) -> DeadLetterEntry | None:
        record = await self._pool.afetchrow(f"SELECT * FROM {DEAD_LETTER_TABLE} WHERE id = $1", entry_id)
        return record_to_entry(record) if record is not None else None

    async def list(self, filters: DeadLetterFilter, limit: int) -> list[DeadLetterEntry]:
        records = await self._pool.afetch(
            f"""
            SELECT * FROM {DEAD_LETTER_TABLE}
            WHERE ($1::text IS NULL OR status = $1)
              AND ($2::text IS NULL OR operation_type = $2)
              AND ($3::text IS NULL OR priority = $3)
              AND ($4::text IS NULL OR user_id = $4)
              AND ($5::text[] IS NULL OR operation_type = ANY($5::text[]))
              AND ($6::int IS NULL OR retry_count < $6)
            ORDER BY created_at DESC
            LIMIT $7
            """,
            filters.status.value if filters.status else None,
            filters.operation_type,
            filters.priority.value if filters.priority else None,
            filters.user_id,
            sorted(filters.operation_types) if filters.operation_types is not None else None,
            filters.retry_count_below,
            limit,
        )
        return [record_to_entry(record) for record in records]

    async def update(
        self,
        entry_id: str,
        *,
        expected_status: DeadLetterStatus | None = None,
        **fields: Any,
    ) -> DeadLetterEntry:
        async with self._pool.atransaction() as conn:
            record = await conn.fetchrow(f"SELECT * FROM {DEAD_LETTER_TABLE} WHERE id = $1 FOR UPDATE", entry_id)
            if record is None:
                raise DeadLetterEntryNotFoundError(f"Dead letter entry not found: {entry_id}")

            current = record_to_entry(record)
            check_expected_status(current, expected_status)
            updated = apply_entry_update(current, fields)
            status = await conn.execute(
                f"UPDATE {DEAD_LETTER_TABLE} SET {_ASSIGNMENTS} WHERE id = $1 AND status = ${_STATUS_GUARD}",
                *entry_to_params(updated),
                current.status.value,
            )
            if not status.endswith(" 1"):
                raise EntryStatusConflictError(f"Dead letter entry {entry_id} changed status during update")
        return updated

    async def delete(self, entry_id: str) -> bool:
        status = await self._pool.aexecute(f"DELETE FROM {DEAD_LETTER_TABLE} WHERE id = $1", entry_id)
        return status.endswith(" 1")

    async def aggregate_stats(self) -> DeadLetterStats:
        async with self._pool.aacquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT status, priority, operation_type,
                       to_char(created_at AT TIME ZONE 'UTC', 'YYYY-MM-DD') AS day,
                       count(*) AS n
                FROM {DEAD_LETTER_TABLE}
                GROUP BY status, priority, operation_type, day
                """
            )
            bounds = await conn.fetchrow(
                f"SELECT min(created_at) AS oldest, max(created_at) AS newest FROM {DEAD_LETTER_TABLE}"
            )

        by_status: Counter[str] = Counter()
        by_priority: Counter[str] = Counter()
        by_operation_type: Counter[str] = Counter()
        by_day: Counter[str] = Counter()
        for row in rows:
            by_status[row["status"]] += row["n"]
            by_priority[row["priority"]] += row["n"]
            by_operation_type[row["operation_type"]] += row["n"]
            by_day[row["day"]] += row["n"]

        return DeadLetterStats(
            total=sum(by_status.values()),
            by_status=dict(by_status),
            by_priority=dict(by_priority),
            by_operation_type=dict(by_operation_type),
            by_day=dict(by_day),
            oldest_entry=bounds["oldest"] if bounds else None,
            newest_entry=bounds["newest"] if bounds else None,
        )
