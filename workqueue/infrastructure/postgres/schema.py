"""DDL for the work queue tables.

Status and priority columns are plain text/smallint with CHECK constraints so
the tables stay readable from psql without custom enum types.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from ...logger import get_logger

if TYPE_CHECKING:
    from .pool import AsyncConnectionPool

logger = get_logger(__name__)

QUEUE_TABLE = "work_queue_items"
DEAD_LETTER_TABLE = "dead_letter_entries"

QUEUE_DDL = f"""
CREATE TABLE IF NOT EXISTS {QUEUE_TABLE} (
    id                      TEXT PRIMARY KEY,
    type                    TEXT NOT NULL,
    payload                 JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    status                  TEXT NOT NULL DEFAULT 'pending'
                            CHECK (status IN ('pending', 'processing', 'completed', 'failed', 'paused')),
    priority                SMALLINT NOT NULL DEFAULT 50 CHECK (priority BETWEEN 0 AND 100),
    scheduled_for           TIMESTAMPTZ NOT NULL DEFAULT now(),
    retry_count             INTEGER NOT NULL DEFAULT 0 CHECK (retry_count >= 0),
    max_retries             INTEGER NOT NULL DEFAULT 3 CHECK (max_retries >= 0),
    last_error              TEXT,
    last_failed_at          TIMESTAMPTZ,
    processing_started_at   TIMESTAMPTZ,
    processing_completed_at TIMESTAMPTZ,
    result                  JSONB,
    user_id                 TEXT,
    metadata                JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    created_at              TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at              TIMESTAMPTZ NOT NULL DEFAULT now(),
    CHECK (retry_count <= max_retries + 1)
);

CREATE INDEX IF NOT EXISTS idx_{QUEUE_TABLE}_status_scheduled
    ON {QUEUE_TABLE} (status, scheduled_for);
CREATE INDEX IF NOT EXISTS idx_{QUEUE_TABLE}_priority_created
    ON {QUEUE_TABLE} (priority DESC, created_at ASC);
CREATE INDEX IF NOT EXISTS idx_{QUEUE_TABLE}_user
    ON {QUEUE_TABLE} (user_id) WHERE user_id IS NOT NULL;
"""

DEAD_LETTER_DDL = f"""
CREATE TABLE IF NOT EXISTS {DEAD_LETTER_TABLE} (
    id                TEXT PRIMARY KEY,
    operation_type    TEXT NOT NULL,
    original_payload  JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    error_snapshot    JSONB NOT NULL,
    context           JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    user_id           TEXT,
    priority          TEXT NOT NULL DEFAULT 'normal'
                      CHECK (priority IN ('low', 'normal', 'high', 'critical')),
    status            TEXT NOT NULL DEFAULT 'pending_review'
                      CHECK (status IN ('pending_review', 'retrying', 'resolved', 'failed')),
    retry_count       INTEGER NOT NULL DEFAULT 0 CHECK (retry_count >= 0),
    created_at        TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at        TIMESTAMPTZ NOT NULL DEFAULT now(),
    last_retry_at     TIMESTAMPTZ,
    resolved_at       TIMESTAMPTZ,
    resolution_notes  TEXT,
    resolved_by       TEXT,
    result            JSONB,
    retry_error       JSONB,
    metadata          JSONB NOT NULL DEFAULT '{{}}'::jsonb
);

CREATE INDEX IF NOT EXISTS idx_{DEAD_LETTER_TABLE}_status_created
    ON {DEAD_LETTER_TABLE} (status, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_{DEAD_LETTER_TABLE}_operation_type
    ON {DEAD_LETTER_TABLE} (operation_type);
"""


async def create_schema(pool: AsyncConnectionPool) -> None:
    """Create both tables and their indexes. Safe to run repeatedly."""
    async with pool.atransaction() as conn:
        await conn.execute(QUEUE_DDL)
        await conn.execute(DEAD_LETTER_DDL)
    logger.info("Work queue schema ensured", tables=[QUEUE_TABLE, DEAD_LETTER_TABLE])


async def drop_schema(pool: AsyncConnectionPool) -> None:
    async with pool.atransaction() as conn:
        await conn.execute(f"DROP TABLE IF EXISTS {DEAD_LETTER_TABLE}")
        await conn.execute(f"DROP TABLE IF EXISTS {QUEUE_TABLE}")
    logger.info("Work queue schema dropped")
