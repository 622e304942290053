"""In-process retries around a single call, built on tenacity.

This is the fast inner loop: a handler that hits a blip gets another go
before its claim is released. Anything that outlasts ``max_attempts`` falls
through to the queue-level requeue governed by ``RetryPolicy``.
"""

from __future__ import annotations

import inspect
from collections.abc import Callable, Coroutine
from functools import wraps
from typing import Any, cast

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)

from ..core.types import P, R
from ..logger import get_logger
from .config import ExecutionRetryConfig
from .types import BeforeSleepCallback, RetryCallback, RetryPredicate

logger = get_logger(__name__)


class RetryLogicError(RuntimeError):
    """The retry loop ended without a result or an exception, which tenacity should never do."""


def log_before_sleep(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    error = outcome.exception() if outcome is not None else None
    logger.warning(
        "Attempt failed, retrying in process",
        attempt=retry_state.attempt_number,
        wait_s=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
        error_type=type(error).__name__ if error else None,
        error=str(error) if error else None,
    )


def _bind_attempt(retry_state: RetryCallState) -> None:
    structlog.contextvars.bind_contextvars(in_process_attempt=retry_state.attempt_number)


class Retry:
    """Decorator retrying a sync or async callable with jittered exponential waits.

    Only errors accepted by ``retry_on`` are retried; everything else
    propagates from the first attempt. While the wrapped call runs, the
    current attempt number is bound to the log context as
    ``in_process_attempt``.
    """

    def __init__(
        self,
        config: ExecutionRetryConfig,
        retry_on: RetryPredicate | None = None,
        before: RetryCallback | None = None,
        after: RetryCallback | None = None,
        before_sleep: BeforeSleepCallback | None = None,
    ) -> None:
        self._config = config
        self._before = before
        self._after = after
        self._before_sleep = before_sleep
        self._retry_on = retry_on

    def _retrying_kwargs(self) -> dict[str, Any]:
        config = self._config
        kwargs: dict[str, Any] = {
            "stop": stop_after_attempt(config.max_attempts),
            # full jitter: sleep ~ U(0, min(wait_max, multiplier * exp_base ** n))
            "wait": wait_random_exponential(
                multiplier=config.multiplier,
                min=config.wait_min,
                max=config.wait_max,
                exp_base=config.exp_base,
            ),
            "retry": retry_if_exception(self._retry_on or (lambda _error: True)),
            "reraise": config.reraise,
        }
        if self._before is not None:
            kwargs["before"] = self._before
        if self._after is not None:
            kwargs["after"] = self._after
        if self._before_sleep is not None:
            kwargs["before_sleep"] = self._before_sleep
        return kwargs

    def __call__(self, func: Callable[P, R]) -> Callable[P, R]:
        if inspect.iscoroutinefunction(func):
            return cast(Callable[P, R], self._wrap_async(func))
        return self._wrap_sync(func)

    def _wrap_async(self, func: Callable[P, Coroutine[Any, Any, R]]) -> Callable[P, Coroutine[Any, Any, R]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            with structlog.contextvars.bound_contextvars(in_process_attempt=1):
                async for attempt in AsyncRetrying(**self._retrying_kwargs()):
                    with attempt:
                        _bind_attempt(attempt.retry_state)
                        return await func(*args, **kwargs)
            raise RetryLogicError("Async retry loop exited without an outcome")

        return wrapper

    def _wrap_sync(self, func: Callable[P, R]) -> Callable[P, R]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            with structlog.contextvars.bound_contextvars(in_process_attempt=1):
                for attempt in Retrying(**self._retrying_kwargs()):
                    with attempt:
                        _bind_attempt(attempt.retry_state)
                        return func(*args, **kwargs)
            raise RetryLogicError("Retry loop exited without an outcome")

        return wrapper


def retry(
    config: ExecutionRetryConfig | None = None,
    retry_on: RetryPredicate | None = None,
    before: RetryCallback | None = None,
    after: RetryCallback | None = None,
    before_sleep: BeforeSleepCallback | None = log_before_sleep,
) -> Retry:
    """Build a ``Retry`` with ``log_before_sleep`` as the default sleep hook."""
    return Retry(config or ExecutionRetryConfig(), retry_on=retry_on, before=before, after=after, before_sleep=before_sleep)
