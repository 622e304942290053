from __future__ import annotations

import asyncio
from typing import Any, Protocol, runtime_checkable

from ..core.exceptions import DeadLetterEntryNotFoundError, EntryStatusConflictError
from .domain import DeadLetterEntry, DeadLetterFilter, DeadLetterStats, DeadLetterStatus, utcnow


@runtime_checkable
class DeadLetterStore(Protocol):
    """Persistence for dead letter entries, independent of the live queue."""

    async def insert(self, entry: DeadLetterEntry) -> str: ...

    async def get(self, entry_id: str) -> DeadLetterEntry | None: ...

    async def list(self, filters: DeadLetterFilter, limit: int) -> list[DeadLetterEntry]:
        """Matching entries, newest first."""
        ...

    async def update(
        self,
        entry_id: str,
        *,
        expected_status: DeadLetterStatus | None = None,
        **fields: Any,
    ) -> DeadLetterEntry:
        """Apply ``fields`` atomically.

        With ``expected_status`` the write only happens while the stored entry
        still has that status; otherwise `EntryStatusConflictError` is raised.
        """
        ...

    async def delete(self, entry_id: str) -> bool: ...

    async def aggregate_stats(self) -> DeadLetterStats: ...


def check_expected_status(entry: DeadLetterEntry, expected_status: DeadLetterStatus | None) -> None:
    if expected_status is not None and entry.status != expected_status:
        raise EntryStatusConflictError(
            f"Dead letter entry {entry.id} is {entry.status.value}, expected {DeadLetterStatus(expected_status).value}"
        )


def apply_entry_update(entry: DeadLetterEntry, fields: dict[str, Any]) -> DeadLetterEntry:
    data = entry.model_dump()
    data.update(fields)
    data["updated_at"] = utcnow()
    return DeadLetterEntry.model_validate(data)


class InMemoryDeadLetterStore:
    def __init__(self) -> None:
        self._entries: dict[str, DeadLetterEntry] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    async def insert(self, entry: DeadLetterEntry) -> str:
        async with self._lock:
            if entry.id in self._entries:
                raise ValueError(f"Dead letter entry {entry.id} already exists")
            self._entries[entry.id] = entry
        return entry.id

    async def get(self, entry_id: str) -> DeadLetterEntry | None:
        return self._entries.get(entry_id)

    async def list(self, filters: DeadLetterFilter, limit: int) -> list[DeadLetterEntry]:
        async with self._lock:
            matching = [entry for entry in self._entries.values() if filters.matches(entry)]
        matching.sort(key=lambda entry: entry.created_at, reverse=True)
        return matching[:limit]

    async def update(
        self,
        entry_id: str,
        *,
        expected_status: DeadLetterStatus | None = None,
        **fields: Any,
    ) -> DeadLetterEntry:
        async with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                raise DeadLetterEntryNotFoundError(f"Dead letter entry not found: {entry_id}")
            check_expected_status(entry, expected_status)
            updated = apply_entry_update(entry, fields)
            self._entries[entry_id] = updated
        return updated

    async def delete(self, entry_id: str) -> bool:
        async with self._lock:
            return self._entries.pop(entry_id, None) is not None

    async def aggregate_stats(self) -> DeadLetterStats:
        async with self._lock:
            entries = list(self._entries.values())
        return DeadLetterStats.from_entries(entries)
