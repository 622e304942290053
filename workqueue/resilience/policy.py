"""Retry policy: classify a failure and decide between requeue and dead-letter."""

from __future__ import annotations

from datetime import timedelta
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from ..core.enums import FailureCategory
from ..core.exceptions import OperatorError, PermanentJobError, RetryExhaustedError, TransientJobError
from .config import RetryPolicyConfig


class RetryAction(StrEnum):
    RETRY = "retry"
    DEADLETTER = "deadletter"


class RetryDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: RetryAction
    category: FailureCategory
    attempt: int = Field(ge=1)
    delay: timedelta | None = None

    @property
    def should_retry(self) -> bool:
        return self.action is RetryAction.RETRY


class RetryPolicy:
    """Pure decision function mapping (attempt, error class) to retry or dead-letter.

    Parameters
    ----------
    config
        Backoff and classification settings. Defaults to `RetryPolicyConfig()`.

    Examples
    --------
    >>> policy = RetryPolicy(RetryPolicyConfig(retry_base_delay_ms=1000, backoff_multiplier=2.0))
    >>> policy.backoff_delay(1)
    datetime.timedelta(seconds=2)
    >>> policy.decide(1, TimeoutError("upstream timeout")).action
    <RetryAction.RETRY: 'retry'>
    """

    def __init__(self, config: RetryPolicyConfig | None = None) -> None:
        self._config = config or RetryPolicyConfig()

    @property
    def config(self) -> RetryPolicyConfig:
        return self._config

    @property
    def max_retries(self) -> int:
        return self._config.max_retries

    def classify(self, error: BaseException) -> FailureCategory:
        """Partition an error into the failure taxonomy.

        Explicit job error types win. Built-in timeouts and connection errors
        are transient. Anything else is transient only when its code or
        message contains one of the configured retryable markers.
        """
        if isinstance(error, PermanentJobError):
            return FailureCategory.PERMANENT
        if isinstance(error, TransientJobError):
            return FailureCategory.TRANSIENT
        if isinstance(error, RetryExhaustedError):
            return FailureCategory.EXHAUSTED
        if isinstance(error, OperatorError):
            return FailureCategory.OPERATOR
        if isinstance(error, (TimeoutError, ConnectionError)):
            return FailureCategory.TRANSIENT
        if self.matches_retryable_marker(error):
            return FailureCategory.TRANSIENT
        return FailureCategory.PERMANENT

    def matches_retryable_marker(self, error: BaseException | str) -> bool:
        if isinstance(error, str):
            text = error.upper()
        else:
            code = getattr(error, "code", None) or ""
            text = f"{code} {error}".upper()
        return any(marker in text for marker in self._config.retryable_error_markers)

    def is_retryable(self, error: BaseException) -> bool:
        return self.classify(error) is FailureCategory.TRANSIENT

    def backoff_delay(self, attempt: int) -> timedelta:
        """Delay before retry number ``attempt`` (1-indexed), capped at ``max_delay_ms``."""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")

        try:
            raw_ms = self._config.retry_base_delay_ms * self._config.backoff_multiplier**attempt
        except OverflowError:
            raw_ms = float("inf")

        return timedelta(milliseconds=min(raw_ms, self._config.max_delay_ms))

    def decide(
        self,
        attempt: int,
        error: BaseException | FailureCategory,
        max_retries: int | None = None,
    ) -> RetryDecision:
        """Decide what to do with a failed item.

        Parameters
        ----------
        attempt
            1-indexed number of the retry that would be scheduled
            (``retry_count + 1`` for a queue item).
        error
            The raised error, or an already computed category.
        max_retries
            Retry budget of the item. Defaults to the configured budget.

        Returns
        -------
        RetryDecision
            ``retry`` with a backoff delay, or ``deadletter`` with the final category.
        """
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")

        category = error if isinstance(error, FailureCategory) else self.classify(error)
        budget = self._config.max_retries if max_retries is None else max_retries

        if category is not FailureCategory.TRANSIENT:
            return RetryDecision(action=RetryAction.DEADLETTER, category=category, attempt=attempt)

        if attempt > budget:
            return RetryDecision(action=RetryAction.DEADLETTER, category=FailureCategory.EXHAUSTED, attempt=attempt)

        return RetryDecision(
            action=RetryAction.RETRY,
            category=category,
            attempt=attempt,
            delay=self.backoff_delay(attempt),
        )
