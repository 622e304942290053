"""asyncpg connection pool shared by the Postgres queue and dead letter stores."""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Literal, Self, TypeAlias

import asyncpg
from asyncpg import Pool, Record

from ...core.enums import HealthCheckStatus
from ...logger import get_logger
from ...resilience.config import ExecutionRetryConfig
from ...resilience.retry import log_before_sleep, retry
from .exceptions import PoolNotInitializedError
from .health import StoreHealth
from .schema import DEAD_LETTER_TABLE, QUEUE_TABLE

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from types import TracebackType

    from asyncpg.pool import PoolConnectionProxy

    from .config import AsyncpgConfig

logger = get_logger(__name__)

IsolationLevel: TypeAlias = Literal["read_uncommitted", "read_committed", "repeatable_read", "serializable"]

_CONNECT_ERRORS = (OSError, asyncpg.CannotConnectNowError, asyncpg.TooManyConnectionsError)


def _is_connect_error(error: BaseException) -> bool:
    return isinstance(error, _CONNECT_ERRORS)


class AsyncConnectionPool:
    """Lazily created asyncpg pool with retrying startup and store health checks.

    Examples
    --------
    >>> async with AsyncConnectionPool(config) as pool:
    ...     await create_schema(pool)
    ...     queue = WorkQueue.from_postgres(pool)
    """

    __slots__ = ("_config", "_init_lock", "_pool")

    def __init__(self, config: AsyncpgConfig) -> None:
        self._config = config
        self._pool: Pool[Record] | None = None
        self._init_lock = asyncio.Lock()

    async def __aenter__(self) -> Self:
        await self.ainitialize()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if exc_val is not None:
            logger.error("Closing store pool after error", error_type=type(exc_val).__name__, error=str(exc_val))
        await self.aclose()

    @property
    def config(self) -> AsyncpgConfig:
        return self._config

    @property
    def pool(self) -> Pool[Record]:
        if self._pool is None:
            raise PoolNotInitializedError("Store pool is not open; call ainitialize() first")
        return self._pool

    @property
    def is_initialized(self) -> bool:
        return self._pool is not None

    async def ainitialize(self) -> None:
        """Open the pool, retrying while the database is still starting up.

        Safe to call repeatedly and from concurrent tasks; only the first
        caller creates the pool.
        """
        async with self._init_lock:
            if self._pool is not None:
                return

            settings = self._config.pool
            connect = retry(
                ExecutionRetryConfig(
                    max_attempts=settings.connect_attempts,
                    wait_min=settings.connect_wait_min_s,
                    wait_max=settings.connect_wait_max_s,
                    multiplier=settings.connect_wait_min_s,
                ),
                retry_on=_is_connect_error,
                before_sleep=log_before_sleep,
            )(self._create_pool)
            self._pool = await connect()

            logger.info(
                "Store pool opened",
                host=self._config.connection.host,
                database=self._config.connection.database,
                min_size=settings.min_size,
                max_size=settings.max_size,
            )

    async def _create_pool(self) -> Pool[Record]:
        pool = await asyncpg.create_pool(**self._config.to_pool_params())
        try:
            async with pool.acquire() as conn:
                await conn.execute("SELECT 1")
        except BaseException:
            await pool.close()
            raise
        return pool

    async def aclose(self) -> None:
        if self._pool is None:
            return
        pool, self._pool = self._pool, None
        await pool.close()
        logger.info("Store pool closed")

    async def ahealth_check(self) -> StoreHealth:
        """Ping the database and confirm both queue tables exist."""
        max_connections = self._config.pool.max_size
        if self._pool is None:
            return StoreHealth(status=HealthCheckStatus.INITIALIZING, max_connections=max_connections)

        try:
            start = time.perf_counter()
            async with self._pool.acquire() as conn:
                missing = await conn.fetchval(
                    "SELECT array_agg(t) FROM unnest($1::text[]) AS t WHERE to_regclass(t) IS NULL",
                    [QUEUE_TABLE, DEAD_LETTER_TABLE],
                )
            latency_ms = (time.perf_counter() - start) * 1000
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            logger.warning("Store health check failed", error=str(e))
            return StoreHealth(status=HealthCheckStatus.UNHEALTHY, max_connections=max_connections, error=str(e))

        return StoreHealth(
            status=HealthCheckStatus.DEGRADED if missing else HealthCheckStatus.HEALTHY,
            connections=self._pool.get_size(),
            max_connections=max_connections,
            idle_connections=self._pool.get_idle_size(),
            latency_ms=latency_ms,
            missing_tables=tuple(missing or ()),
        )

    @asynccontextmanager
    async def aacquire(self) -> AsyncIterator[PoolConnectionProxy[Record]]:
        async with self.pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def atransaction(
        self,
        isolation: IsolationLevel = "read_committed",
        *,
        readonly: bool = False,
    ) -> AsyncIterator[PoolConnectionProxy[Record]]:
        """Run the block in one transaction; row locks taken inside are held until it exits."""
        async with self.aacquire() as conn, conn.transaction(isolation=isolation, readonly=readonly):
            yield conn

    async def aexecute(self, query: str, *args: object, timeout: float | None = None) -> str:
        async with self.aacquire() as conn:
            return await conn.execute(query, *args, timeout=timeout)

    async def afetch(self, query: str, *args: object, timeout: float | None = None) -> list[Record]:
        async with self.aacquire() as conn:
            return await conn.fetch(query, *args, timeout=timeout)

    async def afetchrow(self, query: str, *args: object, timeout: float | None = None) -> Record | None:
        async with self.aacquire() as conn:
            return await conn.fetchrow(query, *args, timeout=timeout)

    async def afetchval(self, query: str, *args: object, timeout: float | None = None) -> Any:
        async with self.aacquire() as conn:
            return await conn.fetchval(query, *args, timeout=timeout)
