"""Shared fixtures for the Postgres store integration tests."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
import pytest_asyncio
from docker import from_env  # type: ignore[import-untyped]
from docker.errors import DockerException  # type: ignore[import-untyped]
from pydantic import SecretStr
from testcontainers.postgres import PostgresContainer  # type: ignore[import-untyped]

from workqueue.infrastructure.postgres import (
    DEAD_LETTER_TABLE,
    QUEUE_TABLE,
    AsyncConnectionPool,
    AsyncpgConfig,
    AsyncpgConnectionSettings,
    AsyncpgPoolSettings,
    AsyncpgServerSettings,
    PostgresDeadLetterStore,
    PostgresQueueStore,
    create_schema,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterator


POSTGRES_IMAGE = "postgres:17-alpine"
DOCKER_SOCKETS = (Path("/var/run/docker.sock"), Path.home() / ".docker" / "run" / "docker.sock")


def pytest_configure(config: pytest.Config) -> None:  # noqa: ARG001
    if "DOCKER_HOST" not in os.environ:
        socket_path = next((path for path in DOCKER_SOCKETS if path.exists()), None)
        if socket_path is not None:
            os.environ["DOCKER_HOST"] = f"unix://{socket_path}"
            os.environ["TESTCONTAINERS_DOCKER_SOCKET_OVERRIDE"] = str(socket_path)

    # Ryuk cannot reach the Docker Desktop VM socket on macOS
    if sys.platform == "darwin":
        os.environ.setdefault("TESTCONTAINERS_RYUK_DISABLED", "true")


def _docker_responds() -> bool:
    try:
        return bool(from_env().ping())
    except DockerException:
        return False


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    if not _docker_responds():
        pytest.skip("Postgres store tests need a running Docker daemon")

    with PostgresContainer(POSTGRES_IMAGE, driver="asyncpg") as container:
        yield container


@pytest_asyncio.fixture
async def asyncpg_pool(postgres_container: PostgresContainer) -> AsyncIterator[AsyncConnectionPool]:
    """Fresh pool per test with the schema in place and both tables emptied.

    Yields
    ------
    AsyncConnectionPool
        Initialized connection pool instance.
    """
    config = AsyncpgConfig(
        connection=AsyncpgConnectionSettings(
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            database=postgres_container.dbname,
            user=postgres_container.username,
            password=SecretStr(postgres_container.password),
        ),
        pool=AsyncpgPoolSettings(min_size=2, max_size=10, command_timeout=60.0),
        server_settings=AsyncpgServerSettings(application_name="workqueue_test"),
    )

    async with AsyncConnectionPool(config) as pool:
        await create_schema(pool)
        await pool.aexecute(f"TRUNCATE TABLE {QUEUE_TABLE}, {DEAD_LETTER_TABLE}")
        yield pool


@pytest.fixture
def pg_queue_store(asyncpg_pool: AsyncConnectionPool) -> PostgresQueueStore:
    return PostgresQueueStore(asyncpg_pool)


@pytest.fixture
def pg_dead_letter_store(asyncpg_pool: AsyncConnectionPool) -> PostgresDeadLetterStore:
    return PostgresDeadLetterStore(asyncpg_pool)
