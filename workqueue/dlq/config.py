from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator


class DLQConfig(BaseModel):
    """Configuration for the dead letter store and its automatic sweep.

    An entry is eligible for automatic retry only when its operation type is
    in ``auto_retry_allowlist``, its latest error matches one of
    ``auto_retry_error_markers``, and it has been retried fewer than
    ``max_auto_retries`` times.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    auto_retry_allowlist: frozenset[str] = Field(
        default=frozenset({"email_send", "api_call", "data_sync"}),
        description="Operation types the automatic sweep may retry",
    )
    auto_retry_error_markers: tuple[str, ...] = Field(
        default=("TIMEOUT", "NETWORK_ERROR", "RATE_LIMITED"),
        description="Substrings of the upper-cased error code/message eligible for automatic retry",
    )
    max_auto_retries: int = Field(
        default=3,
        ge=0,
        description="Automatic retries allowed per entry before manual review is required",
    )

    # Sweep
    sweep_interval_ms: int = Field(
        default=300_000,
        ge=1000,
        description="Interval between automatic sweeps",
    )
    sweep_batch_size: int = Field(
        default=10,
        ge=1,
        le=1000,
        description="Entries examined per sweep",
    )
    shutdown_timeout_ms: int = Field(
        default=30_000,
        ge=0,
        description="How long stop_automatic_processing waits for a running sweep",
    )

    default_list_limit: int = Field(
        default=50,
        ge=1,
        le=10_000,
        description="Entries returned by list() when no limit is given",
    )

    @field_validator("auto_retry_error_markers")
    @classmethod
    def _uppercase_markers(cls, markers: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(marker.upper() for marker in markers)

    @property
    def sweep_interval_s(self) -> float:
        return self.sweep_interval_ms / 1000

    @property
    def shutdown_timeout_s(self) -> float:
        return self.shutdown_timeout_ms / 1000
