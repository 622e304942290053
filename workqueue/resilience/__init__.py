from __future__ import annotations

from .config import DEFAULT_RETRYABLE_ERROR_MARKERS, ExecutionRetryConfig, RetryPolicyConfig
from .policy import RetryAction, RetryDecision, RetryPolicy
from .retry import Retry, RetryLogicError, retry

__all__ = [
    "DEFAULT_RETRYABLE_ERROR_MARKERS",
    "ExecutionRetryConfig",
    "Retry",
    "RetryAction",
    "RetryDecision",
    "RetryLogicError",
    "RetryPolicy",
    "RetryPolicyConfig",
    "retry",
]
