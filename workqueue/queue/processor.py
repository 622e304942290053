"""Queue processor: batch fetch, bounded worker pool, handler dispatch, failure routing.

Claim order follows fetch order (priority desc, created_at asc) because workers
acquire the shared semaphore in creation order. Completion order is not
guaranteed.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, ConfigDict, Field

from ..core.enums import FailureCategory, HealthCheckStatus, QueueItemStatus
from ..logger import get_logger, job_context
from ..resilience.config import ExecutionRetryConfig
from ..resilience.policy import RetryPolicy
from ..resilience.retry import Retry, log_before_sleep
from .config import ProcessorConfig
from .domain import QueueItem, QueueStats, utcnow

if TYPE_CHECKING:
    from .registry import HandlerRegistry, JobHandler
    from .store import QueueStore

logger = get_logger(__name__)


class DeadLetterSink(Protocol):
    async def add_from_item(self, item: QueueItem, error: BaseException, category: FailureCategory) -> str: ...


class WorkerOutcome(StrEnum):
    COMPLETED = "completed"
    REQUEUED = "requeued"
    DEAD_LETTERED = "dead_lettered"
    SKIPPED = "skipped"
    UNRECORDED = "unrecorded"


class WorkerInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    queue_item_id: str
    job_type: str
    started_at: datetime
    status: str = "processing"

    @property
    def duration_s(self) -> float:
        return (utcnow() - self.started_at).total_seconds()


class BatchResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    fetched: int = 0
    outcomes: dict[WorkerOutcome, int] = Field(default_factory=dict)

    def count(self, outcome: WorkerOutcome) -> int:
        return self.outcomes.get(outcome, 0)


class ProcessorStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    processed: int
    failed: int
    retried: int
    dead_lettered: int
    started_at: datetime | None
    uptime_s: float
    active_workers: int
    is_processing: bool
    handlers: list[str]


class ProcessorHealth(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: HealthCheckStatus
    processor: ProcessorStats
    queue: QueueStats | None = None
    error: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)


@dataclass(slots=True)
class _Counters:
    processed: int = 0
    failed: int = 0
    retried: int = 0
    dead_lettered: int = 0


def _error_text(error: BaseException) -> str:
    return str(error) or type(error).__name__


class QueueProcessor:
    """Execution engine for queued work.

    Usage Pattern
    -------------
    ```python
    registry = HandlerRegistry()
    registry.register("email_send", send_email)

    processor = QueueProcessor(store, registry, dead_letters, RetryPolicy())
    await processor.start_processing()
    ...
    await processor.stop_processing()
    ```
    """

    def __init__(
        self,
        store: QueueStore,
        registry: HandlerRegistry,
        dead_letters: DeadLetterSink,
        policy: RetryPolicy | None = None,
        config: ProcessorConfig | None = None,
        execution_retry: ExecutionRetryConfig | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._dead_letters = dead_letters
        self._policy = policy or RetryPolicy()
        self._config = config or ProcessorConfig()

        execution_retry = execution_retry or ExecutionRetryConfig()
        if execution_retry.max_attempts > 1:
            self._dispatch = Retry(
                execution_retry,
                retry_on=self._policy.is_retryable,
                before_sleep=log_before_sleep,
            )(self._dispatch_once)
        else:
            self._dispatch = self._dispatch_once

        self._semaphore = asyncio.Semaphore(self._config.max_workers)
        self._state_lock = asyncio.Lock()
        self._running = False
        self._stop_event = asyncio.Event()
        self._loop_task: asyncio.Task[None] | None = None
        self._in_flight: set[asyncio.Task[WorkerOutcome]] = set()
        self._workers: dict[str, WorkerInfo] = {}
        self._counters = _Counters()
        self._started_at: datetime | None = None

    @property
    def config(self) -> ProcessorConfig:
        return self._config

    @property
    def registry(self) -> HandlerRegistry:
        return self._registry

    @property
    def is_processing(self) -> bool:
        return self._running

    @property
    def active_workers(self) -> int:
        return len(self._workers)

    def register_handler(self, job_type: str, handler: JobHandler) -> None:
        self._registry.register(job_type, handler)

    async def start_processing(self) -> None:
        """Start the periodic loop after an immediate first pass."""
        async with self._state_lock:
            if self._running:
                logger.warning("Queue processor is already running")
                return

            self._running = True
            self._stop_event = asyncio.Event()
            self._started_at = utcnow()

        logger.info(
            "Starting queue processor",
            max_workers=self._config.max_workers,
            batch_size=self._config.batch_size,
            processing_interval_ms=self._config.processing_interval_ms,
        )

        await self.process_batch()

        async with self._state_lock:
            if self._running and self._loop_task is None:
                self._loop_task = asyncio.create_task(self._run_loop(self._stop_event), name="queue-processor-loop")

    async def stop_processing(self, timeout: float | None = None) -> None:
        """Stop admitting work and wait up to ``timeout`` seconds for in-flight workers.

        Workers still running after the timeout are logged and left to finish
        on their own; they are never cancelled.
        """
        async with self._state_lock:
            if not self._running:
                logger.warning("Queue processor is not running")
                return

            self._running = False
            self._stop_event.set()
            loop_task, self._loop_task = self._loop_task, None

        wait_s = self._config.shutdown_timeout_s if timeout is None else timeout
        pending: set[asyncio.Task[Any]] = set(self._in_flight)
        if loop_task is not None:
            pending.add(loop_task)
        current = asyncio.current_task()
        if current is not None:
            pending.discard(current)

        if pending:
            _done, still_running = await asyncio.wait(pending, timeout=wait_s)
            if still_running:
                logger.warning(
                    "Timeout waiting for workers to complete",
                    active_workers=len(self._workers),
                    item_ids=[worker.queue_item_id for worker in self._workers.values()],
                    timeout_s=wait_s,
                )

        logger.info("Queue processor stopped", **self.get_stats().model_dump(exclude={"handlers", "started_at"}))

    async def pause_processing(self) -> None:
        await self.stop_processing()
        logger.info("Queue processing paused")

    async def resume_processing(self) -> None:
        await self.start_processing()
        logger.info("Queue processing resumed")

    async def restart_processing(self) -> None:
        logger.info("Restarting queue processing")
        if self._running:
            await self.stop_processing()
        await self.start_processing()

    async def _run_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._config.processing_interval_s)
            except TimeoutError:
                await self.process_batch()
            else:
                break

    async def process_batch(self) -> BatchResult:
        """Run one pass while the processor is running; no-op once stopped."""
        if not self._running:
            return BatchResult()
        return await self._process_batch(require_running=True)

    async def run_once(self) -> BatchResult:
        """Run one pass regardless of loop state (manual drains, tests, cron-style use)."""
        return await self._process_batch(require_running=False)

    async def _process_batch(self, *, require_running: bool) -> BatchResult:
        try:
            batch = await self._store.fetch_batch(QueueItemStatus.PENDING, limit=self._config.batch_size)
        except Exception as e:
            logger.error("Failed to fetch queue batch", error=str(e), error_type=type(e).__name__)
            return BatchResult()

        if not batch:
            return BatchResult()

        logger.debug("Processing batch", size=len(batch), item_ids=[item.id for item in batch])

        tasks: list[asyncio.Task[WorkerOutcome]] = []
        for item in batch:
            task = asyncio.create_task(self._run_worker(item, require_running=require_running))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
            tasks.append(task)

        outcomes: dict[WorkerOutcome, int] = {}
        for result in await asyncio.gather(*tasks, return_exceptions=True):
            if isinstance(result, BaseException):
                logger.error("Worker raised unexpectedly", error=str(result), error_type=type(result).__name__)
                outcome = WorkerOutcome.UNRECORDED
            else:
                outcome = result
            outcomes[outcome] = outcomes.get(outcome, 0) + 1

        return BatchResult(fetched=len(batch), outcomes=outcomes)

    async def _run_worker(self, item: QueueItem, *, require_running: bool) -> WorkerOutcome:
        async with self._semaphore:
            if require_running and not self._running:
                return WorkerOutcome.SKIPPED

            try:
                claimed = await self._store.claim(item.id)
            except Exception as e:
                logger.error("Failed to claim queue item", item_id=item.id, error=str(e))
                return WorkerOutcome.SKIPPED

            if claimed is None:
                logger.debug("Queue item already claimed elsewhere", item_id=item.id)
                return WorkerOutcome.SKIPPED

            worker_id = f"worker_{uuid.uuid4().hex[:8]}"
            self._workers[worker_id] = WorkerInfo(
                id=worker_id,
                queue_item_id=claimed.id,
                job_type=claimed.type,
                started_at=claimed.processing_started_at or utcnow(),
            )
            try:
                with job_context(
                    item_id=claimed.id,
                    job_type=claimed.type,
                    attempt=claimed.retry_count + 1,
                    user_id=claimed.user_id,
                    worker_id=worker_id,
                ):
                    return await self._execute(claimed)
            finally:
                del self._workers[worker_id]

    async def _dispatch_once(self, item: QueueItem) -> Any:
        timeout_s = self._config.handler_timeout_s
        if timeout_s is None:
            return await self._registry.dispatch(item)
        async with asyncio.timeout(timeout_s):
            return await self._registry.dispatch(item)

    async def _execute(self, item: QueueItem) -> WorkerOutcome:
        started = time.perf_counter()
        try:
            result = await self._dispatch(item)
        except Exception as e:
            logger.error(
                "Queue item processing failed",
                processing_time_ms=round((time.perf_counter() - started) * 1000, 2),
                retry_count=item.retry_count,
                error=_error_text(e),
                error_type=type(e).__name__,
            )
            return await self._handle_failure(item, e)

        try:
            await self._store.update(
                item.id,
                status=QueueItemStatus.COMPLETED,
                processing_completed_at=utcnow(),
                result=result,
                last_error=None,
            )
        except Exception as e:
            logger.error("Failed to record completion", error=str(e), error_type=type(e).__name__)
            return WorkerOutcome.UNRECORDED

        self._counters.processed += 1
        logger.info(
            "Queue item processed successfully",
            processing_time_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return WorkerOutcome.COMPLETED

    async def _handle_failure(self, item: QueueItem, error: Exception) -> WorkerOutcome:
        self._counters.failed += 1
        decision = self._policy.decide(item.retry_count + 1, error, max_retries=item.max_retries)
        now = utcnow()
        message = _error_text(error)

        try:
            if decision.should_retry and decision.delay is not None:
                await self._store.update(
                    item.id,
                    status=QueueItemStatus.PENDING,
                    retry_count=item.retry_count + 1,
                    scheduled_for=now + decision.delay,
                    last_error=message,
                    last_failed_at=now,
                )
                self._counters.retried += 1
                logger.warning(
                    "Queue item scheduled for retry",
                    retry_count=item.retry_count + 1,
                    max_retries=item.max_retries,
                    delay_s=decision.delay.total_seconds(),
                )
                return WorkerOutcome.REQUEUED

            failed = await self._store.update(
                item.id,
                status=QueueItemStatus.FAILED,
                retry_count=min(item.retry_count + 1, item.max_retries + 1),
                last_error=message,
                last_failed_at=now,
                processing_completed_at=now,
            )
            entry_id = await self._dead_letters.add_from_item(failed, error, decision.category)
        except Exception as handling_error:
            logger.error(
                "Failed to handle processing failure",
                original_error=message,
                handling_error=str(handling_error),
                handling_error_type=type(handling_error).__name__,
            )
            return WorkerOutcome.UNRECORDED

        self._counters.dead_lettered += 1
        logger.error(
            "Queue item sent to dead letter queue",
            dead_letter_id=entry_id,
            category=decision.category.value,
            error=message,
        )
        return WorkerOutcome.DEAD_LETTERED

    def get_stats(self) -> ProcessorStats:
        uptime_s = (utcnow() - self._started_at).total_seconds() if self._started_at else 0.0
        return ProcessorStats(
            processed=self._counters.processed,
            failed=self._counters.failed,
            retried=self._counters.retried,
            dead_lettered=self._counters.dead_lettered,
            started_at=self._started_at,
            uptime_s=uptime_s,
            active_workers=len(self._workers),
            is_processing=self._running,
            handlers=self._registry.job_types,
        )

    def get_worker_stats(self) -> list[WorkerInfo]:
        return list(self._workers.values())

    async def health_check(self) -> ProcessorHealth:
        try:
            queue_stats = await self._store.aggregate_stats()
        except Exception as e:
            return ProcessorHealth(status=HealthCheckStatus.UNHEALTHY, processor=self.get_stats(), error=str(e))

        return ProcessorHealth(status=HealthCheckStatus.HEALTHY, processor=self.get_stats(), queue=queue_stats)
