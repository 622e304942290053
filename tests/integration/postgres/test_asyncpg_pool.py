"""Integration tests for AsyncConnectionPool and the schema helpers."""

from __future__ import annotations

import asyncpg
import pytest

from workqueue.core.enums import HealthCheckStatus
from workqueue.infrastructure.postgres import (
    DEAD_LETTER_TABLE,
    QUEUE_TABLE,
    AsyncConnectionPool,
    create_schema,
    drop_schema,
)


@pytest.mark.asyncio
@pytest.mark.integration
class TestPool:
    async def test_health_check(self, asyncpg_pool: AsyncConnectionPool) -> None:
        health = await asyncpg_pool.ahealth_check()

        assert health.status is HealthCheckStatus.HEALTHY
        assert health.latency_ms is not None
        assert health.connections >= 1
        assert health.schema_ready

    async def test_schema_is_idempotent(self, asyncpg_pool: AsyncConnectionPool) -> None:
        await create_schema(asyncpg_pool)

        tables = await asyncpg_pool.afetch(
            "SELECT table_name FROM information_schema.tables WHERE table_name = ANY($1::text[])",
            [QUEUE_TABLE, DEAD_LETTER_TABLE],
        )
        assert {row["table_name"] for row in tables} == {QUEUE_TABLE, DEAD_LETTER_TABLE}

    async def test_transaction_rolls_back_on_error(self, asyncpg_pool: AsyncConnectionPool) -> None:
        with pytest.raises(RuntimeError):
            async with asyncpg_pool.atransaction() as conn:
                await conn.execute(
                    f"INSERT INTO {QUEUE_TABLE} (id, type) VALUES ($1, $2)",
                    "rolled-back",
                    "email_send",
                )
                raise RuntimeError("abort")

        assert await asyncpg_pool.afetchval(f"SELECT count(*) FROM {QUEUE_TABLE}") == 0

    async def test_check_constraints(self, asyncpg_pool: AsyncConnectionPool) -> None:
        with pytest.raises(asyncpg.CheckViolationError):
            await asyncpg_pool.aexecute(
                f"INSERT INTO {QUEUE_TABLE} (id, type, priority) VALUES ($1, $2, $3)",
                "bad-priority",
                "email_send",
                101,
            )

    async def test_health_check_reports_missing_schema(self, asyncpg_pool: AsyncConnectionPool) -> None:
        await drop_schema(asyncpg_pool)
        try:
            health = await asyncpg_pool.ahealth_check()
        finally:
            await create_schema(asyncpg_pool)

        assert health.status is HealthCheckStatus.DEGRADED
        assert set(health.missing_tables) == {QUEUE_TABLE, DEAD_LETTER_TABLE}
