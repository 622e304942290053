"""Unit tests for QueueMonitor sampling, alerting and health reporting."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import ValidationError

from workqueue.core.enums import QueueItemStatus
from workqueue.dlq import DeadLetterStats
from workqueue.monitor import (
    AlertRecord,
    AlertSeverity,
    AlertThresholds,
    AlertType,
    MetricName,
    MonitorConfig,
    QueueHealthStatus,
    QueueMetrics,
    QueueMonitor,
)
from workqueue.queue import ProcessorStats, QueueStats

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def _processor_stats(**overrides: object) -> ProcessorStats:
    data: dict[str, object] = {
        "processed": 4,
        "failed": 2,
        "retried": 1,
        "dead_lettered": 1,
        "started_at": T0 - timedelta(seconds=2),
        "uptime_s": 2.0,
        "active_workers": 1,
        "is_processing": True,
        "handlers": ["email_send"],
    }
    data.update(overrides)
    return ProcessorStats.model_validate(data)


def _queue_stats(pending: int = 3, processing: int = 1, completed: int = 4, failed: int = 2) -> QueueStats:
    return QueueStats(
        total=pending + processing + completed + failed,
        by_status={
            QueueItemStatus.PENDING: pending,
            QueueItemStatus.PROCESSING: processing,
            QueueItemStatus.COMPLETED: completed,
            QueueItemStatus.FAILED: failed,
        },
        avg_processing_duration_ms=1500.0,
    )


def _metrics(clock: FakeClock, **fields: object) -> QueueMetrics:
    fields.setdefault("is_processing", True)
    return QueueMetrics(timestamp=clock(), **fields)  # type: ignore[arg-type]


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MagicMock:
    store = MagicMock()
    store.aggregate_stats = AsyncMock(return_value=_queue_stats())
    return store


@pytest.fixture
def processor() -> MagicMock:
    processor = MagicMock()
    processor.get_stats.return_value = _processor_stats()
    processor.restart_processing = AsyncMock()
    return processor


@pytest.fixture
def dead_letters() -> MagicMock:
    dead_letters = MagicMock()
    dead_letters.stats = AsyncMock(return_value=DeadLetterStats(total=2))
    return dead_letters


@pytest.fixture
def monitor(store: MagicMock, processor: MagicMock, dead_letters: MagicMock, clock: FakeClock) -> QueueMonitor:
    return QueueMonitor(store, processor, dead_letters, MonitorConfig(monitoring_interval_ms=100), clock=clock)


# =============================================================================
# TEST CLASSES
# =============================================================================


class TestCollectMetrics:
    """Tests for sampling queue, processor and dead letter statistics."""

    @pytest.mark.asyncio
    async def test_builds_sample(self, monitor: QueueMonitor, clock: FakeClock) -> None:
        metrics = await monitor.collect_metrics()

        assert metrics is not None
        assert metrics.timestamp == clock()
        assert metrics.queue_size == 4
        assert metrics.processing_time_ms == 1500.0
        assert metrics.failure_rate == pytest.approx(0.2)
        assert metrics.throughput == pytest.approx(2.0)
        assert metrics.dead_letter_count == 2
        assert metrics.dead_letter_rate == pytest.approx(2 / 6)
        assert metrics.active_workers == 1
        assert metrics.is_processing

    @pytest.mark.asyncio
    async def test_stores_every_metric(self, monitor: QueueMonitor) -> None:
        await monitor.collect_metrics()
        await monitor.collect_metrics()

        for name in MetricName:
            assert len(monitor.window(name)) == 2
        assert monitor.latest_metrics()[MetricName.QUEUE_SIZE] == 4.0

    @pytest.mark.asyncio
    async def test_queue_size_rate_basis(
        self, store: MagicMock, processor: MagicMock, dead_letters: MagicMock, clock: FakeClock
    ) -> None:
        monitor = QueueMonitor(
            store, processor, dead_letters, MonitorConfig(dead_letter_rate_basis="queue_size"), clock=clock
        )

        metrics = await monitor.collect_metrics()

        assert metrics is not None
        assert metrics.dead_letter_rate == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_resolved_entries_do_not_count(self, monitor: QueueMonitor, dead_letters: MagicMock) -> None:
        dead_letters.stats.return_value = DeadLetterStats(total=3, by_status={"resolved": 3})

        metrics = await monitor.collect_metrics()

        assert metrics is not None
        assert metrics.dead_letter_count == 0
        assert metrics.dead_letter_rate == 0.0
        assert AlertType.DEAD_LETTER_RATE_HIGH not in {alert.type for alert in monitor.alerts}

    @pytest.mark.asyncio
    async def test_store_error_skips_sample(self, monitor: QueueMonitor, store: MagicMock) -> None:
        store.aggregate_stats.side_effect = ConnectionError("database unavailable")

        assert await monitor.collect_metrics() is None
        assert monitor.latest_metrics() == {}

    def test_throughput_zero_before_start(self) -> None:
        stats = _processor_stats(started_at=None, uptime_s=0.0)
        assert QueueMonitor.calculate_throughput(stats) == 0.0

    def test_failure_rate_empty_queue(self) -> None:
        assert QueueMonitor.calculate_failure_rate(QueueStats()) == 0.0


class TestCheckAlerts:
    """Tests for threshold evaluation."""

    @pytest.mark.asyncio
    async def test_no_alerts_when_healthy(self, monitor: QueueMonitor, clock: FakeClock) -> None:
        assert await monitor.check_alerts(_metrics(clock, queue_size=10)) == []

    @pytest.mark.asyncio
    async def test_each_threshold_fires_independently(self, monitor: QueueMonitor, clock: FakeClock) -> None:
        metrics = _metrics(
            clock,
            queue_size=150,
            processing_time_ms=400_000,
            failure_rate=0.5,
            dead_letter_count=10,
            dead_letter_rate=0.2,
        )

        fired = await monitor.check_alerts(metrics)

        assert {alert.type for alert in fired} == {
            AlertType.QUEUE_SIZE_HIGH,
            AlertType.PROCESSING_TIME_HIGH,
            AlertType.FAILURE_RATE_HIGH,
            AlertType.DEAD_LETTER_RATE_HIGH,
        }
        severities = {alert.type: alert.severity for alert in fired}
        assert severities[AlertType.FAILURE_RATE_HIGH] is AlertSeverity.CRITICAL
        assert severities[AlertType.QUEUE_SIZE_HIGH] is AlertSeverity.WARNING

    @pytest.mark.asyncio
    async def test_threshold_is_strict(self, monitor: QueueMonitor, clock: FakeClock) -> None:
        assert await monitor.check_alerts(_metrics(clock, queue_size=100)) == []

    @pytest.mark.asyncio
    async def test_dead_letter_rate_needs_entries(self, monitor: QueueMonitor, clock: FakeClock) -> None:
        assert await monitor.check_alerts(_metrics(clock, dead_letter_count=0, dead_letter_rate=0.9)) == []

    @pytest.mark.asyncio
    async def test_message_formats(self, monitor: QueueMonitor, clock: FakeClock) -> None:
        fired = await monitor.check_alerts(_metrics(clock, queue_size=150, failure_rate=0.25))

        messages = {alert.type: alert.message for alert in fired}
        assert messages[AlertType.QUEUE_SIZE_HIGH] == "Queue size is high: 150 items"
        assert messages[AlertType.FAILURE_RATE_HIGH] == "Failure rate is high: 25.0%"


class TestAlertDeduplication:
    """Alerts of one type fire at most once per bucket."""

    @pytest.mark.asyncio
    async def test_same_bucket_is_suppressed(self, monitor: QueueMonitor, clock: FakeClock) -> None:
        handler = AsyncMock()
        monitor.register_alert_handler(AlertType.QUEUE_SIZE_HIGH, handler)

        first = await monitor.check_alerts(_metrics(clock, queue_size=150))
        clock.advance(seconds=30)
        second = await monitor.check_alerts(_metrics(clock, queue_size=160))

        assert len(first) == 1
        assert second == []
        handler.assert_awaited_once()
        assert len(monitor.alerts) == 1

    @pytest.mark.asyncio
    async def test_next_bucket_fires_again(self, monitor: QueueMonitor, clock: FakeClock) -> None:
        await monitor.check_alerts(_metrics(clock, queue_size=150))
        clock.advance(seconds=60)

        fired = await monitor.check_alerts(_metrics(clock, queue_size=150))

        assert len(fired) == 1
        assert len(monitor.alerts) == 2

    @pytest.mark.asyncio
    async def test_different_types_share_bucket(self, monitor: QueueMonitor, clock: FakeClock) -> None:
        await monitor.check_alerts(_metrics(clock, queue_size=150))

        fired = await monitor.check_alerts(_metrics(clock, queue_size=150, failure_rate=0.5))

        assert [alert.type for alert in fired] == [AlertType.FAILURE_RATE_HIGH]

    @pytest.mark.asyncio
    async def test_old_alerts_expire(self, monitor: QueueMonitor, clock: FakeClock) -> None:
        await monitor.check_alerts(_metrics(clock, queue_size=150))
        clock.advance(hours=2)

        assert monitor.cleanup_old_alerts() == 1
        assert monitor.alerts == []

    @pytest.mark.asyncio
    async def test_sync_handler_and_failing_handler(self, monitor: QueueMonitor, clock: FakeClock) -> None:
        received: list[AlertRecord] = []
        monitor.register_alert_handler(AlertType.QUEUE_SIZE_HIGH, received.append)
        monitor.register_alert_handler(AlertType.FAILURE_RATE_HIGH, MagicMock(side_effect=RuntimeError("pager down")))

        fired = await monitor.check_alerts(_metrics(clock, queue_size=150, failure_rate=0.5))

        assert len(fired) == 2
        assert [alert.type for alert in received] == [AlertType.QUEUE_SIZE_HIGH]


class TestProcessorDown:
    """The processor_down alert triggers an automatic restart."""

    @pytest.mark.asyncio
    async def test_restarts_processor(self, monitor: QueueMonitor, processor: MagicMock, clock: FakeClock) -> None:
        fired = await monitor.check_alerts(_metrics(clock, queue_size=5, is_processing=False))

        assert [alert.type for alert in fired] == [AlertType.PROCESSOR_DOWN]
        assert fired[0].severity is AlertSeverity.CRITICAL
        assert monitor.restart_task is not None
        await monitor.restart_task
        processor.restart_processing.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_empty_queue_does_not_alert(
        self, monitor: QueueMonitor, processor: MagicMock, clock: FakeClock
    ) -> None:
        assert await monitor.check_alerts(_metrics(clock, queue_size=0, is_processing=False)) == []
        processor.restart_processing.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_restart_failure_is_contained(
        self, monitor: QueueMonitor, processor: MagicMock, clock: FakeClock
    ) -> None:
        processor.restart_processing.side_effect = RuntimeError("still broken")

        fired = await monitor.check_alerts(_metrics(clock, queue_size=5, is_processing=False))

        assert len(fired) == 1
        assert monitor.restart_task is not None
        await monitor.restart_task
        processor.restart_processing.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_slow_restart_does_not_block_sampling(
        self, monitor: QueueMonitor, processor: MagicMock
    ) -> None:
        release = asyncio.Event()

        async def slow_restart() -> None:
            await release.wait()

        processor.restart_processing.side_effect = slow_restart
        processor.get_stats.return_value = _processor_stats(is_processing=False)

        metrics = await asyncio.wait_for(monitor.collect_metrics(), timeout=1.0)

        assert metrics is not None
        restart = monitor.restart_task
        assert restart is not None
        assert not restart.done()

        await asyncio.wait_for(monitor.collect_metrics(), timeout=1.0)
        assert monitor.restart_task is restart

        release.set()
        await restart
        processor.restart_processing.assert_awaited_once()


class TestHealthScore:
    """Tests for the 0-100 health score and its status bands."""

    def test_no_samples_is_perfect(self, monitor: QueueMonitor) -> None:
        assert monitor.get_health_score() == 100

    @pytest.mark.parametrize(
        ("fields", "expected"),
        [
            ({"queue_size": 50}, 100),
            ({"queue_size": 200}, 70),
            ({"queue_size": 1000}, 70),
            ({"failure_rate": 0.15}, 70),
            ({"failure_rate": 0.5}, 60),
            ({"processing_time_ms": 600_000}, 80),
            ({"queue_size": 5, "is_processing": False}, 50),
            ({"queue_size": 1000, "failure_rate": 1.0, "processing_time_ms": 900_000, "is_processing": False}, 0),
        ],
    )
    def test_penalties(
        self, monitor: QueueMonitor, clock: FakeClock, fields: dict[str, object], expected: int
    ) -> None:
        monitor.store_metrics(_metrics(clock, **fields))
        assert monitor.get_health_score() == expected

    @pytest.mark.parametrize(
        ("score", "status"),
        [
            (100, QueueHealthStatus.HEALTHY),
            (90, QueueHealthStatus.HEALTHY),
            (89, QueueHealthStatus.WARNING),
            (70, QueueHealthStatus.WARNING),
            (69, QueueHealthStatus.DEGRADED),
            (50, QueueHealthStatus.DEGRADED),
            (49, QueueHealthStatus.CRITICAL),
            (0, QueueHealthStatus.CRITICAL),
        ],
    )
    def test_status_bands(self, score: int, status: QueueHealthStatus) -> None:
        assert QueueMonitor.get_health_status(score) is status


class TestReporting:
    """Tests for metric ranges, trends, summaries and the dashboard."""

    def test_get_metrics_range(self, monitor: QueueMonitor, clock: FakeClock) -> None:
        monitor.store_metrics(_metrics(clock, queue_size=1))
        clock.advance(hours=3)
        monitor.store_metrics(_metrics(clock, queue_size=2))

        last_hour = monitor.get_metrics("1h")[MetricName.QUEUE_SIZE]
        six_hours = monitor.get_metrics("6h")[MetricName.QUEUE_SIZE]
        unknown = monitor.get_metrics("7d")[MetricName.QUEUE_SIZE]

        assert [point.value for point in last_hour] == [2.0]
        assert [point.value for point in six_hours] == [1.0, 2.0]
        assert unknown == last_hour

    def test_trends(self, monitor: QueueMonitor, clock: FakeClock) -> None:
        for size in (10, 20, 15):
            monitor.store_metrics(_metrics(clock, queue_size=size, failure_rate=0.1))
            clock.advance(seconds=30)

        trends = QueueMonitor.calculate_trends(monitor.get_metrics())

        queue_trend = trends[MetricName.QUEUE_SIZE]
        assert queue_trend.change == 5
        assert queue_trend.percent_change == pytest.approx(50.0)
        assert queue_trend.direction == "up"
        assert trends[MetricName.FAILURE_RATE].direction == "stable"
        assert trends[MetricName.THROUGHPUT].percent_change == 0.0

    def test_trends_need_two_points(self, monitor: QueueMonitor, clock: FakeClock) -> None:
        monitor.store_metrics(_metrics(clock, queue_size=10))
        assert QueueMonitor.calculate_trends(monitor.get_metrics()) == {}

    def test_summary(self, monitor: QueueMonitor, clock: FakeClock) -> None:
        for size in (10, 20, 30):
            monitor.store_metrics(_metrics(clock, queue_size=size))

        summary = QueueMonitor.calculate_summary(monitor.get_metrics())[MetricName.QUEUE_SIZE]

        assert (summary.min, summary.max, summary.avg, summary.count) == (10, 30, 20, 3)

    @pytest.mark.asyncio
    async def test_dashboard(self, monitor: QueueMonitor, clock: FakeClock) -> None:
        await monitor.collect_metrics()

        dashboard = monitor.get_dashboard_data()

        assert dashboard.health_score == 60
        assert dashboard.status is QueueHealthStatus.DEGRADED
        assert dashboard.metrics.current[MetricName.QUEUE_SIZE] == 4.0
        assert {alert.type for alert in dashboard.alerts} == {
            AlertType.FAILURE_RATE_HIGH,
            AlertType.DEAD_LETTER_RATE_HIGH,
        }
        assert dashboard.timestamp == clock()

    def test_current_status(self, monitor: QueueMonitor) -> None:
        status = monitor.get_current_status()

        assert not status.is_monitoring
        assert status.active_alerts == []
        assert status.thresholds == AlertThresholds()


class TestConfiguration:
    """Tests for runtime threshold and interval changes."""

    def test_update_thresholds_merges(self, monitor: QueueMonitor) -> None:
        thresholds = monitor.update_alert_thresholds(queue_size=500)

        assert thresholds.queue_size == 500
        assert thresholds.failure_rate == 0.1
        assert monitor.thresholds is thresholds

    def test_update_thresholds_validates(self, monitor: QueueMonitor) -> None:
        with pytest.raises(ValidationError):
            monitor.update_alert_thresholds(failure_rate=2.0)
        assert monitor.thresholds == AlertThresholds()

    @pytest.mark.asyncio
    async def test_new_thresholds_apply_to_next_check(self, monitor: QueueMonitor, clock: FakeClock) -> None:
        monitor.update_alert_thresholds(queue_size=500)
        assert await monitor.check_alerts(_metrics(clock, queue_size=150)) == []

    @pytest.mark.asyncio
    async def test_update_interval_rejects_small_values(self, monitor: QueueMonitor) -> None:
        with pytest.raises(ValueError, match="100ms"):
            await monitor.update_monitoring_interval(50)

    @pytest.mark.asyncio
    async def test_update_interval_restarts_running_monitor(self, monitor: QueueMonitor, store: MagicMock) -> None:
        await monitor.start_monitoring()
        calls_before = store.aggregate_stats.await_count

        await monitor.update_monitoring_interval(250)

        try:
            assert monitor.is_monitoring
            assert monitor.monitoring_interval_ms == 250
            assert store.aggregate_stats.await_count == calls_before + 1
        finally:
            await monitor.stop_monitoring()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_samples_immediately(self, monitor: QueueMonitor) -> None:
        await monitor.start_monitoring()
        try:
            assert monitor.is_monitoring
            assert len(monitor.window(MetricName.QUEUE_SIZE)) >= 1
        finally:
            await monitor.stop_monitoring()

        assert not monitor.is_monitoring

    @pytest.mark.asyncio
    async def test_loop_keeps_sampling(self, monitor: QueueMonitor, store: MagicMock) -> None:
        await monitor.start_monitoring()
        try:
            await asyncio.sleep(0.35)
        finally:
            await monitor.stop_monitoring()

        assert store.aggregate_stats.await_count >= 2

    @pytest.mark.asyncio
    async def test_cleanup_clears_state(self, monitor: QueueMonitor) -> None:
        await monitor.start_monitoring()

        await monitor.cleanup()

        assert not monitor.is_monitoring
        assert monitor.latest_metrics() == {}
        assert monitor.alerts == []

    @pytest.mark.asyncio
    async def test_stop_waits_for_processor_restart(self, monitor: QueueMonitor, processor: MagicMock) -> None:
        restarted: list[bool] = []

        async def restart() -> None:
            await asyncio.sleep(0.05)
            restarted.append(True)

        processor.restart_processing.side_effect = restart
        processor.get_stats.return_value = _processor_stats(is_processing=False)

        await monitor.start_monitoring()
        await monitor.stop_monitoring()

        assert restarted == [True]
        assert monitor.restart_task is not None and monitor.restart_task.done()
