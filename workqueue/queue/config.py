from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ProcessorConfig(BaseModel):
    """Configuration for the queue processor loop and its worker pool."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    batch_size: int = Field(default=10, ge=1, le=1000, description="Items fetched per pass")
    max_workers: int = Field(default=5, ge=1, le=256, description="Items executing concurrently")
    processing_interval_ms: int = Field(default=5000, ge=10, description="Delay between batch passes")
    shutdown_timeout_ms: int = Field(
        default=30_000,
        ge=0,
        description="How long stop_processing waits for in-flight workers",
    )
    handler_timeout_ms: int | None = Field(
        default=None,
        ge=1,
        description="Per-invocation handler timeout (None = unbounded)",
    )

    @property
    def processing_interval_s(self) -> float:
        return self.processing_interval_ms / 1000

    @property
    def shutdown_timeout_s(self) -> float:
        return self.shutdown_timeout_ms / 1000

    @property
    def handler_timeout_s(self) -> float | None:
        return None if self.handler_timeout_ms is None else self.handler_timeout_ms / 1000
