from __future__ import annotations

from .config import AlertThresholds, DeadLetterRateBasis, MonitorConfig
from .domain import (
    AlertRecord,
    AlertSeverity,
    AlertType,
    DashboardMetrics,
    DashboardSnapshot,
    MetricName,
    MetricPoint,
    MetricSummary,
    MetricTrend,
    MonitorStatus,
    QueueHealthStatus,
    QueueMetrics,
)
from .service import TIME_RANGES, AlertHandler, QueueMonitor
from .window import SlidingWindow

__all__ = [
    "TIME_RANGES",
    "AlertHandler",
    "AlertRecord",
    "AlertSeverity",
    "AlertThresholds",
    "AlertType",
    "DashboardMetrics",
    "DashboardSnapshot",
    "DeadLetterRateBasis",
    "MetricName",
    "MetricPoint",
    "MetricSummary",
    "MetricTrend",
    "MonitorConfig",
    "MonitorStatus",
    "QueueHealthStatus",
    "QueueMetrics",
    "QueueMonitor",
    "SlidingWindow",
]
