"""Queue monitor: periodic sampling, sliding-window metrics, threshold alerts, health score.

The monitor only reads from the queue store. Its one side effect outside
itself is asking the processor to restart when items are waiting and the
processor is down.
"""

from __future__ import annotations

import asyncio
import inspect
import math
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol, TypeAlias

from ..logger import get_logger
from ..queue.domain import utcnow
from .config import AlertThresholds, MonitorConfig
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
from .window import SlidingWindow

if TYPE_CHECKING:
    from ..dlq.domain import DeadLetterStats
    from ..queue.domain import QueueStats
    from ..queue.processor import ProcessorStats
    from ..queue.store import QueueStore

logger = get_logger(__name__)

AlertHandler: TypeAlias = Callable[[AlertRecord], Awaitable[None] | None]

TIME_RANGES: dict[str, timedelta] = {
    "1h": timedelta(hours=1),
    "6h": timedelta(hours=6),
    "24h": timedelta(hours=24),
}


class MonitoredProcessor(Protocol):
    def get_stats(self) -> ProcessorStats: ...

    async def restart_processing(self) -> None: ...


class DeadLetterStatsSource(Protocol):
    async def stats(self) -> DeadLetterStats: ...


class QueueMonitor:
    """Samples queue health on a fixed interval and raises deduplicated alerts.

    Parameters
    ----------
    store
        Queue store, read through ``aggregate_stats``.
    processor
        Source of processor counters and the restart operation.
    dead_letters
        Source of dead letter statistics.
    config
        Sampling interval, window size, thresholds.
    clock
        Returns the current UTC time. Injected so sampling and alert
        bucketing can be driven deterministically.
    """

    def __init__(
        self,
        store: QueueStore,
        processor: MonitoredProcessor,
        dead_letters: DeadLetterStatsSource,
        config: MonitorConfig | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._processor = processor
        self._dead_letters = dead_letters
        self._config = config or MonitorConfig()
        self._clock = clock

        self._thresholds = self._config.thresholds
        self._interval_ms = self._config.monitoring_interval_ms
        self._windows: dict[MetricName, SlidingWindow] = {
            name: SlidingWindow(name, self._config.window_size) for name in MetricName
        }
        self._alerts: dict[str, AlertRecord] = {}
        self._alert_handlers: dict[AlertType, AlertHandler] = {}
        self._register_default_alert_handlers()

        self._state_lock = asyncio.Lock()
        self._monitoring = False
        self._stop_event = asyncio.Event()
        self._loop_task: asyncio.Task[None] | None = None
        self._restart_task: asyncio.Task[None] | None = None

    @property
    def is_monitoring(self) -> bool:
        return self._monitoring

    @property
    def restart_task(self) -> asyncio.Task[None] | None:
        """The most recent automatic processor restart, if one was scheduled."""
        return self._restart_task

    @property
    def thresholds(self) -> AlertThresholds:
        return self._thresholds

    @property
    def monitoring_interval_ms(self) -> int:
        return self._interval_ms

    def window(self, name: MetricName) -> SlidingWindow:
        return self._windows[name]

    # Lifecycle

    async def start_monitoring(self) -> None:
        async with self._state_lock:
            if self._monitoring:
                logger.warning("Queue monitor is already running")
                return
            self._monitoring = True
            self._stop_event = asyncio.Event()

        logger.info(
            "Starting queue monitoring",
            interval_ms=self._interval_ms,
            thresholds=self._thresholds.model_dump(),
        )

        await self.collect_metrics()

        async with self._state_lock:
            if self._monitoring and self._loop_task is None:
                self._loop_task = asyncio.create_task(self._run_loop(self._stop_event), name="queue-monitor-loop")

    async def stop_monitoring(self) -> None:
        async with self._state_lock:
            if not self._monitoring:
                logger.warning("Queue monitor is not running")
                return
            self._monitoring = False
            self._stop_event.set()
            loop_task, self._loop_task = self._loop_task, None

        if loop_task is not None and loop_task is not asyncio.current_task():
            _done, pending = await asyncio.wait({loop_task}, timeout=self._config.shutdown_timeout_ms / 1000)
            if pending:
                logger.warning("Timeout waiting for metrics collection to finish")

        restart_task = self._restart_task
        if restart_task is not None and not restart_task.done():
            _done, pending = await asyncio.wait({restart_task}, timeout=self._config.shutdown_timeout_ms / 1000)
            if pending:
                logger.warning("Timeout waiting for queue processor restart to finish")

        logger.info("Queue monitoring stopped")

    async def _run_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._interval_ms / 1000)
            except TimeoutError:
                await self.collect_metrics()
            else:
                break

    # Sampling

    async def collect_metrics(self) -> QueueMetrics | None:
        """Take one sample. Store errors are logged and the sample is skipped."""
        try:
            queue_stats = await self._store.aggregate_stats()
            processor_stats = self._processor.get_stats()
            dead_letter_stats = await self._dead_letters.stats()
        except Exception as e:
            logger.error("Failed to collect metrics", error=str(e), error_type=type(e).__name__)
            return None

        metrics = self.build_metrics(queue_stats, processor_stats, dead_letter_stats)
        self.store_metrics(metrics)
        await self.check_alerts(metrics)

        logger.debug("Metrics collected", **metrics.model_dump(mode="json"))
        return metrics

    def build_metrics(
        self,
        queue_stats: QueueStats,
        processor_stats: ProcessorStats,
        dead_letter_stats: DeadLetterStats,
    ) -> QueueMetrics:
        queue_size = queue_stats.queue_size
        dead_letter_count = dead_letter_stats.unresolved

        if self._config.dead_letter_rate_basis == "queue_size":
            basis = queue_size
        else:
            basis = queue_stats.completed + queue_stats.failed

        return QueueMetrics(
            timestamp=self._clock(),
            queue_size=queue_size,
            processing_time_ms=queue_stats.avg_processing_duration_ms,
            failure_rate=self.calculate_failure_rate(queue_stats),
            throughput=self.calculate_throughput(processor_stats),
            dead_letter_count=dead_letter_count,
            dead_letter_rate=dead_letter_count / max(basis, 1),
            active_workers=processor_stats.active_workers,
            is_processing=processor_stats.is_processing,
        )

    @staticmethod
    def calculate_failure_rate(queue_stats: QueueStats) -> float:
        if queue_stats.total == 0:
            return 0.0
        return queue_stats.failed / queue_stats.total

    @staticmethod
    def calculate_throughput(processor_stats: ProcessorStats) -> float:
        if processor_stats.started_at is None or processor_stats.uptime_s <= 0:
            return 0.0
        return processor_stats.processed / processor_stats.uptime_s

    def store_metrics(self, metrics: QueueMetrics) -> list[MetricPoint]:
        return [self._windows[name].append(metrics.timestamp, value) for name, value in metrics.values().items()]

    # Alerting

    async def check_alerts(self, metrics: QueueMetrics) -> list[AlertRecord]:
        """Evaluate every threshold independently; returns the alerts that actually fired."""
        thresholds = self._thresholds
        candidates: list[tuple[AlertType, AlertSeverity, str, float, float | None]] = []

        if metrics.queue_size > thresholds.queue_size:
            candidates.append(
                (
                    AlertType.QUEUE_SIZE_HIGH,
                    AlertSeverity.WARNING,
                    f"Queue size is high: {metrics.queue_size} items",
                    metrics.queue_size,
                    thresholds.queue_size,
                )
            )

        if metrics.processing_time_ms > thresholds.processing_time_ms:
            candidates.append(
                (
                    AlertType.PROCESSING_TIME_HIGH,
                    AlertSeverity.WARNING,
                    f"Processing time is high: {round(metrics.processing_time_ms / 1000)}s",
                    metrics.processing_time_ms,
                    thresholds.processing_time_ms,
                )
            )

        if metrics.failure_rate > thresholds.failure_rate:
            candidates.append(
                (
                    AlertType.FAILURE_RATE_HIGH,
                    AlertSeverity.CRITICAL,
                    f"Failure rate is high: {metrics.failure_rate * 100:.1f}%",
                    metrics.failure_rate,
                    thresholds.failure_rate,
                )
            )

        if metrics.dead_letter_count > 0 and metrics.dead_letter_rate > thresholds.dead_letter_rate:
            candidates.append(
                (
                    AlertType.DEAD_LETTER_RATE_HIGH,
                    AlertSeverity.WARNING,
                    f"Dead letter rate is high: {metrics.dead_letter_rate * 100:.1f}%",
                    metrics.dead_letter_rate,
                    thresholds.dead_letter_rate,
                )
            )

        if not metrics.is_processing and metrics.queue_size > 0:
            candidates.append(
                (
                    AlertType.PROCESSOR_DOWN,
                    AlertSeverity.CRITICAL,
                    "Queue processor is not running but items are pending",
                    metrics.queue_size,
                    None,
                )
            )

        now = self._clock()
        bucket = self._bucket(now)
        fired: list[AlertRecord] = []
        for alert_type, severity, message, value, threshold in candidates:
            record = AlertRecord(
                type=alert_type,
                severity=severity,
                message=message,
                value=value,
                threshold=threshold,
                timestamp=now,
                minute_bucket=bucket,
            )
            if await self.process_alert(record):
                fired.append(record)
        return fired

    async def process_alert(self, alert: AlertRecord) -> bool:
        """Record and dispatch an alert unless one of its type already fired in the same bucket."""
        if alert.key in self._alerts:
            return False

        self._alerts[alert.key] = alert
        self.cleanup_old_alerts()

        handler = self._alert_handlers.get(alert.type)
        if handler is not None:
            try:
                result = handler(alert)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Alert handler failed", alert_type=alert.type.value, error=str(e))

        logger.warning(
            "Alert triggered",
            alert_type=alert.type.value,
            severity=alert.severity.value,
            value=alert.value,
            threshold=alert.threshold,
        )
        return True

    def cleanup_old_alerts(self) -> int:
        cutoff = self._clock() - timedelta(seconds=self._config.alert_retention_s)
        expired = [key for key, alert in self._alerts.items() if alert.timestamp < cutoff]
        for key in expired:
            del self._alerts[key]
        return len(expired)

    def register_alert_handler(self, alert_type: AlertType, handler: AlertHandler) -> None:
        self._alert_handlers[alert_type] = handler
        logger.info("Registered alert handler", alert_type=alert_type.value)

    def _register_default_alert_handlers(self) -> None:
        for alert_type in AlertType:
            self._alert_handlers[alert_type] = self._log_alert
        self._alert_handlers[AlertType.PROCESSOR_DOWN] = self._handle_processor_down

    async def _log_alert(self, alert: AlertRecord) -> None:
        logger.error(
            f"{alert.type.value.replace('_', ' ').upper()} ALERT",
            message=alert.message,
            value=alert.value,
            threshold=alert.threshold,
        )

    async def _handle_processor_down(self, alert: AlertRecord) -> None:
        await self._log_alert(alert)
        if self._restart_task is not None and not self._restart_task.done():
            logger.info("Queue processor restart already in progress")
            return
        # restart runs a first batch inline; sampling must not wait on it
        self._restart_task = asyncio.create_task(self._restart_processor(), name="queue-processor-restart")

    async def _restart_processor(self) -> None:
        try:
            await self._processor.restart_processing()
        except Exception as e:
            logger.error("Failed to restart queue processor", error=str(e), error_type=type(e).__name__)
        else:
            logger.info("Queue processor restarted automatically")

    def _bucket(self, moment: datetime) -> int:
        return math.floor(moment.timestamp() / self._config.alert_bucket_s)

    @property
    def alerts(self) -> list[AlertRecord]:
        return sorted(self._alerts.values(), key=lambda alert: alert.timestamp)

    # Reporting

    def get_metrics(self, time_range: str = "1h") -> dict[MetricName, list[MetricPoint]]:
        start = self._clock() - TIME_RANGES.get(time_range, TIME_RANGES["1h"])
        return {name: window.since(start) for name, window in self._windows.items()}

    def latest_metrics(self) -> dict[MetricName, float]:
        latest: dict[MetricName, float] = {}
        for name, window in self._windows.items():
            point = window.latest()
            if point is not None:
                latest[name] = point.value
        return latest

    def get_current_status(self) -> MonitorStatus:
        self.cleanup_old_alerts()
        return MonitorStatus(
            is_monitoring=self._monitoring,
            latest_metrics=self.latest_metrics(),
            active_alerts=self.alerts,
            thresholds=self._thresholds,
            timestamp=self._clock(),
        )

    def get_health_score(self) -> int:
        """Score from 100 down, one proportional penalty per breached threshold, clamped to [0, 100]."""
        metrics = self.latest_metrics()
        thresholds = self._thresholds
        score = 100.0

        queue_size = metrics.get(MetricName.QUEUE_SIZE, 0.0)
        if queue_size > thresholds.queue_size:
            score -= min(30.0, queue_size / max(thresholds.queue_size, 1) * 15)

        failure_rate = metrics.get(MetricName.FAILURE_RATE, 0.0)
        if failure_rate > thresholds.failure_rate:
            score -= min(40.0, failure_rate * 200)

        processing_time = metrics.get(MetricName.PROCESSING_TIME, 0.0)
        if processing_time > thresholds.processing_time_ms:
            score -= min(20.0, processing_time / max(thresholds.processing_time_ms, 1) * 10)

        is_processing = metrics.get(MetricName.IS_PROCESSING, 1.0) > 0
        if not is_processing and queue_size > 0:
            score -= 50

        return max(0, min(100, round(score)))

    @staticmethod
    def get_health_status(score: float) -> QueueHealthStatus:
        return QueueHealthStatus.from_score(score)

    @staticmethod
    def calculate_trends(metrics: dict[MetricName, list[MetricPoint]]) -> dict[MetricName, MetricTrend]:
        trends: dict[MetricName, MetricTrend] = {}
        for name, points in metrics.items():
            if len(points) < 2:
                continue
            first, last = points[0].value, points[-1].value
            change = last - first
            trends[name] = MetricTrend(
                change=change,
                percent_change=(change / first) * 100 if first > 0 else 0.0,
                direction="up" if change > 0 else "down" if change < 0 else "stable",
            )
        return trends

    @staticmethod
    def calculate_summary(metrics: dict[MetricName, list[MetricPoint]]) -> dict[MetricName, MetricSummary]:
        summary: dict[MetricName, MetricSummary] = {}
        for name, points in metrics.items():
            if not points:
                continue
            values = [point.value for point in points]
            summary[name] = MetricSummary(
                min=min(values),
                max=max(values),
                avg=sum(values) / len(values),
                count=len(values),
            )
        return summary

    def get_dashboard_data(self) -> DashboardSnapshot:
        metrics = self.get_metrics("1h")
        status = self.get_current_status()
        health_score = self.get_health_score()

        return DashboardSnapshot(
            health_score=health_score,
            status=self.get_health_status(health_score),
            metrics=DashboardMetrics(
                current=status.latest_metrics,
                trends=self.calculate_trends(metrics),
                summary=self.calculate_summary(metrics),
            ),
            alerts=status.active_alerts,
            timestamp=status.timestamp,
        )

    # Configuration

    def update_alert_thresholds(self, **changes: Any) -> AlertThresholds:
        """Merge ``changes`` into the current thresholds (validated)."""
        self._thresholds = AlertThresholds.model_validate({**self._thresholds.model_dump(), **changes})
        logger.info("Alert thresholds updated", **self._thresholds.model_dump())
        return self._thresholds

    async def update_monitoring_interval(self, interval_ms: int) -> None:
        if interval_ms < 100:
            raise ValueError(f"monitoring interval must be >= 100ms, got {interval_ms}")

        self._interval_ms = interval_ms
        if self._monitoring:
            await self.stop_monitoring()
            await self.start_monitoring()

        logger.info("Monitoring interval updated", interval_ms=interval_ms)

    async def cleanup(self) -> None:
        if self._monitoring:
            await self.stop_monitoring()
        self._alerts.clear()
        for window in self._windows.values():
            window.clear()
        logger.info("Queue monitor cleaned up")
