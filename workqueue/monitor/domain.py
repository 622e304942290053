from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from .config import AlertThresholds


class MetricName(StrEnum):
    QUEUE_SIZE = "queue_size"
    PROCESSING_TIME = "processing_time"
    FAILURE_RATE = "failure_rate"
    THROUGHPUT = "throughput"
    DEAD_LETTER_COUNT = "dead_letter_count"
    DEAD_LETTER_RATE = "dead_letter_rate"
    ACTIVE_WORKERS = "active_workers"
    IS_PROCESSING = "is_processing"


class AlertType(StrEnum):
    QUEUE_SIZE_HIGH = "queue_size_high"
    PROCESSING_TIME_HIGH = "processing_time_high"
    FAILURE_RATE_HIGH = "failure_rate_high"
    DEAD_LETTER_RATE_HIGH = "dead_letter_rate_high"
    PROCESSOR_DOWN = "processor_down"


class AlertSeverity(StrEnum):
    WARNING = "warning"
    CRITICAL = "critical"


class QueueHealthStatus(StrEnum):
    HEALTHY = "healthy"
    WARNING = "warning"
    DEGRADED = "degraded"
    CRITICAL = "critical"

    @classmethod
    def from_score(cls, score: float) -> QueueHealthStatus:
        if score >= 90:
            return cls.HEALTHY
        if score >= 70:
            return cls.WARNING
        if score >= 50:
            return cls.DEGRADED
        return cls.CRITICAL


class MetricPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    name: MetricName
    value: float


class QueueMetrics(BaseModel):
    """One sample of queue, processor and dead-letter statistics."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    queue_size: int = Field(default=0, ge=0)
    processing_time_ms: float = Field(default=0.0, ge=0)
    failure_rate: float = Field(default=0.0, ge=0)
    throughput: float = Field(default=0.0, ge=0, description="Items processed per second of uptime")
    dead_letter_count: int = Field(default=0, ge=0)
    dead_letter_rate: float = Field(default=0.0, ge=0)
    active_workers: int = Field(default=0, ge=0)
    is_processing: bool = False

    def values(self) -> dict[MetricName, float]:
        return {
            MetricName.QUEUE_SIZE: float(self.queue_size),
            MetricName.PROCESSING_TIME: self.processing_time_ms,
            MetricName.FAILURE_RATE: self.failure_rate,
            MetricName.THROUGHPUT: self.throughput,
            MetricName.DEAD_LETTER_COUNT: float(self.dead_letter_count),
            MetricName.DEAD_LETTER_RATE: self.dead_letter_rate,
            MetricName.ACTIVE_WORKERS: float(self.active_workers),
            MetricName.IS_PROCESSING: 1.0 if self.is_processing else 0.0,
        }


class AlertRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: AlertType
    severity: AlertSeverity
    message: str
    value: float
    threshold: float | None = None
    timestamp: datetime
    minute_bucket: int = Field(description="floor(timestamp / bucket size), first bucket this alert was seen in")

    @property
    def key(self) -> str:
        return f"{self.type.value}:{self.minute_bucket}"


class MetricTrend(BaseModel):
    model_config = ConfigDict(frozen=True)

    change: float
    percent_change: float
    direction: Literal["up", "down", "stable"]


class MetricSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    min: float
    max: float
    avg: float
    count: int


class MonitorStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_monitoring: bool
    latest_metrics: dict[MetricName, float]
    active_alerts: list[AlertRecord]
    thresholds: AlertThresholds
    timestamp: datetime


class DashboardMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    current: dict[MetricName, float]
    trends: dict[MetricName, MetricTrend]
    summary: dict[MetricName, MetricSummary]


class DashboardSnapshot(BaseModel):
    """Read-only operator view of queue health."""

    model_config = ConfigDict(frozen=True)

    health_score: int = Field(ge=0, le=100)
    status: QueueHealthStatus
    metrics: DashboardMetrics
    alerts: list[AlertRecord]
    timestamp: datetime
