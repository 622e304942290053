from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Iterator
from typing import TYPE_CHECKING, Any, TypeAlias

from ..core.exceptions import ConfigurationError
from ..logger import get_logger

if TYPE_CHECKING:
    from .domain import QueueItem

logger = get_logger(__name__)

JobHandler: TypeAlias = "Callable[[QueueItem], Awaitable[Any] | Any]"


class HandlerRegistry:
    """Maps a job type to the callable that executes it.

    Built once at process start and injected into the processor; callers
    extend it with `register`. Handlers receive the claimed `QueueItem`, must
    be idempotent, and signal failure by raising.

    Examples
    --------
    >>> registry = HandlerRegistry()
    >>> async def send_email(item):
    ...     return {"status": "sent"}
    >>> registry.register("email_send", send_email)
    >>> "email_send" in registry
    True
    """

    def __init__(self, handlers: dict[str, JobHandler] | None = None) -> None:
        self._handlers: dict[str, JobHandler] = {}
        for job_type, handler in (handlers or {}).items():
            self.register(job_type, handler)

    def register(self, job_type: str, handler: JobHandler) -> None:
        if not job_type:
            raise ValueError("job_type must be a non-empty string")
        if not callable(handler):
            raise TypeError(f"Handler for {job_type!r} is not callable")

        replaced = job_type in self._handlers
        self._handlers[job_type] = handler
        logger.info("Registered handler", job_type=job_type, replaced=replaced)

    def unregister(self, job_type: str) -> bool:
        removed = self._handlers.pop(job_type, None) is not None
        if removed:
            logger.info("Unregistered handler", job_type=job_type)
        return removed

    def get(self, job_type: str) -> JobHandler | None:
        return self._handlers.get(job_type)

    def require(self, job_type: str) -> JobHandler:
        handler = self._handlers.get(job_type)
        if handler is None:
            raise ConfigurationError(f"No handler registered for job type: {job_type}", code="NO_HANDLER")
        return handler

    async def dispatch(self, item: QueueItem) -> Any:
        """Run the handler for ``item.type``; sync handlers run in a worker thread."""
        handler = self.require(item.type)
        if inspect.iscoroutinefunction(handler):
            return await handler(item)

        result = await asyncio.to_thread(handler, item)
        if inspect.isawaitable(result):
            return await result
        return result

    @property
    def job_types(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._handlers

    def __iter__(self) -> Iterator[str]:
        return iter(self.job_types)

    def __len__(self) -> int:
        return len(self._handlers)
