"""Shared fixtures for unit tests: in-memory stores and queue item factories."""

from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta
from typing import Any, TypeAlias

import pytest

from workqueue.dlq import InMemoryDeadLetterStore
from workqueue.queue import InMemoryQueueStore, QueueItem
from workqueue.queue.domain import utcnow

ItemFactory: TypeAlias = Callable[..., QueueItem]


@pytest.fixture
def queue_store() -> InMemoryQueueStore:
    return InMemoryQueueStore()


@pytest.fixture
def dead_letter_store() -> InMemoryDeadLetterStore:
    return InMemoryDeadLetterStore()


@pytest.fixture
def make_item() -> ItemFactory:
    """Build a pending item created ``age_s`` seconds ago (older items sort first at equal priority)."""

    def _make(job_type: str = "email_send", *, age_s: float = 0.0, **fields: Any) -> QueueItem:
        created = utcnow() - timedelta(seconds=age_s)
        fields.setdefault("created_at", created)
        fields.setdefault("updated_at", created)
        fields.setdefault("scheduled_for", created)
        return QueueItem(type=job_type, **fields)

    return _make
