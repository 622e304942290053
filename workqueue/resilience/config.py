from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_RETRYABLE_ERROR_MARKERS: tuple[str, ...] = (
    "TIMEOUT",
    "NETWORK_ERROR",
    "RATE_LIMITED",
    "TEMPORARY_FAILURE",
    "ECONNRESET",
    "ENOTFOUND",
    "ETIMEDOUT",
)


class RetryPolicyConfig(BaseModel):
    """Configuration for requeue decisions and backoff of failed queue items.

    Delay for retry ``attempt`` (1-indexed) is
    ``retry_base_delay_ms * backoff_multiplier ** attempt``, capped at ``max_delay_ms``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_retries: int = Field(default=3, ge=0, description="Default retry budget for new queue items")
    retry_base_delay_ms: int = Field(default=60_000, ge=0, description="Base backoff delay in milliseconds")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Exponential backoff multiplier")
    max_delay_ms: int = Field(default=3_600_000, ge=0, description="Upper bound for a single backoff delay")
    retryable_error_markers: tuple[str, ...] = Field(
        default=DEFAULT_RETRYABLE_ERROR_MARKERS,
        description="Substrings of the upper-cased error code/message that mark an error as transient",
    )

    @field_validator("retryable_error_markers")
    @classmethod
    def _uppercase_markers(cls, markers: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(marker.upper() for marker in markers)


class ExecutionRetryConfig(BaseModel):
    """In-process retry of a single handler invocation (tenacity).

    ``max_attempts=1`` disables in-process retries, leaving all retrying to
    the requeue path.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(default=1, ge=1, description="Handler attempts per claim")
    wait_min: float = Field(default=0.1, ge=0, description="Minimum wait time in seconds")
    wait_max: float = Field(default=2.0, ge=0, description="Maximum wait time in seconds")
    multiplier: float = Field(default=0.1, ge=0, description="Wait multiplier")
    exp_base: float = Field(default=2.0, ge=1, description="Exponential base")
    reraise: bool = Field(default=True, description="Reraise the last exception after all attempts fail")
