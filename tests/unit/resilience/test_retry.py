"""Tests for in-process handler retries (tenacity wrapper)."""

from __future__ import annotations

from typing import Any

import pytest
import structlog
from tenacity import RetryCallState, RetryError

from workqueue.core.exceptions import PermanentJobError, TransientJobError
from workqueue.queue import QueueItem
from workqueue.resilience import ExecutionRetryConfig, Retry, RetryPolicy, retry

# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def fast_config() -> ExecutionRetryConfig:
    return ExecutionRetryConfig(max_attempts=3, wait_min=0.0, wait_max=0.01, multiplier=0.01)


@pytest.fixture
def item() -> QueueItem:
    return QueueItem(type="email_send", payload={"to": "a@example.com"})


class FlakyHandler:
    """Raises each queued error in turn, then returns ``result``."""

    def __init__(self, *errors: BaseException, result: Any = "sent") -> None:
        self._errors = list(errors)
        self._result = result
        self.calls = 0

    async def __call__(self, item: QueueItem) -> Any:
        self.calls += 1
        if self._errors:
            raise self._errors.pop(0)
        return self._result


# =============================================================================
# TEST CLASSES
# =============================================================================


class TestAsyncHandlerRetry:
    @pytest.mark.asyncio
    async def test_first_attempt_success(self, fast_config: ExecutionRetryConfig, item: QueueItem) -> None:
        handler = FlakyHandler()

        assert await retry(fast_config)(handler.__call__)(item) == "sent"
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_recovers_within_budget(self, fast_config: ExecutionRetryConfig, item: QueueItem) -> None:
        handler = FlakyHandler(ConnectionResetError("reset"), TimeoutError("slow smtp"))

        assert await retry(fast_config)(handler.__call__)(item) == "sent"
        assert handler.calls == 3

    @pytest.mark.asyncio
    async def test_last_error_surfaces_when_budget_spent(
        self, fast_config: ExecutionRetryConfig, item: QueueItem
    ) -> None:
        handler = FlakyHandler(*(TimeoutError(f"attempt {n}") for n in range(1, 4)))

        with pytest.raises(TimeoutError, match="attempt 3"):
            await retry(fast_config)(handler.__call__)(item)

        assert handler.calls == 3

    @pytest.mark.asyncio
    async def test_retry_error_when_reraise_disabled(self, fast_config: ExecutionRetryConfig, item: QueueItem) -> None:
        config = fast_config.model_copy(update={"reraise": False, "max_attempts": 2})
        handler = FlakyHandler(ConnectionError("a"), ConnectionError("b"))

        with pytest.raises(RetryError):
            await retry(config)(handler.__call__)(item)

    @pytest.mark.asyncio
    async def test_default_config_is_single_attempt(self, item: QueueItem) -> None:
        handler = FlakyHandler(ConnectionError("reset"))

        with pytest.raises(ConnectionError):
            await retry()(handler.__call__)(item)

        assert handler.calls == 1


class TestPolicyDrivenRetry:
    """The processor retries only what the queue retry policy calls transient."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("error", "expected_calls"),
        [
            (TransientJobError("throttled", code="RATE_LIMITED"), 2),
            (RuntimeError("NETWORK_ERROR talking to upstream"), 2),
            (ConnectionResetError("peer reset"), 2),
            (PermanentJobError("invalid recipient"), 1),
            (ValueError("malformed payload"), 1),
        ],
    )
    async def test_retries_only_transient_errors(
        self,
        fast_config: ExecutionRetryConfig,
        item: QueueItem,
        error: BaseException,
        expected_calls: int,
    ) -> None:
        handler = FlakyHandler(error)
        wrapped = Retry(fast_config, retry_on=RetryPolicy().is_retryable)(handler.__call__)

        if expected_calls == 1:
            with pytest.raises(type(error)):
                await wrapped(item)
        else:
            assert await wrapped(item) == "sent"

        assert handler.calls == expected_calls


class TestSyncHandlerRetry:
    def test_sync_callable_retried(self, fast_config: ExecutionRetryConfig) -> None:
        attempts: list[int] = []

        @retry(fast_config)
        def render_template(name: str) -> str:
            attempts.append(len(attempts) + 1)
            if len(attempts) < 2:
                raise OSError("template cache busy")
            return f"<{name}>"

        assert render_template("welcome") == "<welcome>"
        assert attempts == [1, 2]

    def test_wrapping_keeps_identity(self, fast_config: ExecutionRetryConfig) -> None:
        @retry(fast_config)
        def sync_handler(item: QueueItem) -> None:
            """Push a webhook."""

        assert sync_handler.__name__ == "sync_handler"
        assert sync_handler.__doc__ == "Push a webhook."


class TestRetryHooks:
    @pytest.mark.asyncio
    async def test_before_sleep_sees_each_failed_attempt(
        self, fast_config: ExecutionRetryConfig, item: QueueItem
    ) -> None:
        slept_after: list[int] = []

        def record(state: RetryCallState) -> None:
            slept_after.append(state.attempt_number)

        handler = FlakyHandler(*(ConnectionError("reset") for _ in range(3)))

        with pytest.raises(ConnectionError):
            await retry(fast_config, before_sleep=record)(handler.__call__)(item)

        assert slept_after == [1, 2]

    @pytest.mark.asyncio
    async def test_before_and_after_hooks(self, fast_config: ExecutionRetryConfig, item: QueueItem) -> None:
        before: list[int] = []
        after: list[int] = []
        handler = FlakyHandler(ConnectionError("reset"))

        wrapped = retry(
            fast_config,
            before=lambda state: before.append(state.attempt_number),
            after=lambda state: after.append(state.attempt_number),
        )(handler.__call__)

        assert await wrapped(item) == "sent"
        assert before == [1, 2]
        assert after == [1]

    @pytest.mark.asyncio
    async def test_attempt_number_bound_to_log_context(
        self, fast_config: ExecutionRetryConfig, item: QueueItem
    ) -> None:
        seen: list[int] = []

        async def handler(queue_item: QueueItem) -> str:
            seen.append(structlog.contextvars.get_contextvars()["in_process_attempt"])
            if len(seen) < 2:
                raise ConnectionError("reset")
            return "sent"

        assert await retry(fast_config)(handler)(item) == "sent"
        assert seen == [1, 2]
        assert "in_process_attempt" not in structlog.contextvars.get_contextvars()
