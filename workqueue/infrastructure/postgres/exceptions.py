from __future__ import annotations

from ...core.exceptions import StoreNotInitializedError


class AsyncpgWrapperError(Exception):
    """Base exception for asyncpg wrapper errors."""


class PoolNotInitializedError(AsyncpgWrapperError, StoreNotInitializedError):
    """Raised when attempting to use a pool that has not been initialized."""
