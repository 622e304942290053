"""PostgreSQL persistence for the work queue, built on asyncpg.

Usage
-----
::

    async with AsyncConnectionPool(config) as pool:
        await create_schema(pool)
        queue = WorkQueue.from_postgres(pool)
"""

from .config import AsyncpgConfig, AsyncpgConnectionSettings, AsyncpgPoolSettings, AsyncpgServerSettings
from .dead_letter_store import PostgresDeadLetterStore
from .exceptions import AsyncpgWrapperError, PoolNotInitializedError
from .health import StoreHealth
from .pool import AsyncConnectionPool, IsolationLevel
from .queue_store import PostgresQueueStore
from .schema import DEAD_LETTER_TABLE, QUEUE_TABLE, create_schema, drop_schema

__all__ = [
    "DEAD_LETTER_TABLE",
    "QUEUE_TABLE",
    "AsyncConnectionPool",
    "AsyncpgConfig",
    "AsyncpgConnectionSettings",
    "AsyncpgPoolSettings",
    "AsyncpgServerSettings",
    "AsyncpgWrapperError",
    "IsolationLevel",
    "PoolNotInitializedError",
    "PostgresDeadLetterStore",
    "PostgresQueueStore",
    "StoreHealth",
    "create_schema",
    "drop_schema",
]
