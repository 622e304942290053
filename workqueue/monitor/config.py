from __future__ import annotations

from typing import Literal, TypeAlias

from pydantic import BaseModel, ConfigDict, Field

DeadLetterRateBasis: TypeAlias = Literal["processed", "queue_size"]


class AlertThresholds(BaseModel):
    """Breach thresholds. Each alert fires when its metric is strictly above the threshold."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    queue_size: int = Field(default=100, ge=0, description="Pending + processing items")
    processing_time_ms: float = Field(default=300_000, ge=0, description="Average processing time")
    failure_rate: float = Field(default=0.1, ge=0, le=1, description="failed / total")
    dead_letter_rate: float = Field(default=0.05, ge=0, description="dead letters / basis")


class MonitorConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    monitoring_interval_ms: int = Field(default=30_000, ge=100, description="Sampling interval")
    window_size: int = Field(default=100, ge=1, le=100_000, description="Points kept per metric")
    alert_bucket_s: int = Field(default=60, ge=1, description="Deduplication bucket per alert type")
    alert_retention_s: int = Field(default=3600, ge=1, description="How long fired alerts are kept")
    shutdown_timeout_ms: int = Field(default=10_000, ge=0, description="How long stop waits for a running sample")
    thresholds: AlertThresholds = Field(default_factory=AlertThresholds)
    dead_letter_rate_basis: DeadLetterRateBasis = Field(
        default="processed",
        description=(
            "Denominator of the dead-letter rate: 'processed' = completed + failed items, "
            "'queue_size' = current live queue size"
        ),
    )
