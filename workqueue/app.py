"""Composition root wiring the queue components together.

`WorkQueue` owns exactly one of each component and is the object an
application holds on to. Components never reach for globals; everything is
passed in here.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Self

from .config import WorkQueueSettings
from .dlq.service import DeadLetterQueue
from .infrastructure.postgres.dead_letter_store import PostgresDeadLetterStore
from .infrastructure.postgres.queue_store import PostgresQueueStore
from .logger import get_logger
from .monitor.service import QueueMonitor
from .queue.domain import QueueItem
from .queue.producer import QueueProducer
from .queue.processor import QueueProcessor
from .queue.registry import HandlerRegistry
from .resilience.policy import RetryPolicy

if TYPE_CHECKING:
    from types import TracebackType

    from .dlq.domain import DeadLetterContext, DeadLetterEntry, RetryOutcome
    from .dlq.store import DeadLetterStore
    from .infrastructure.postgres.pool import AsyncConnectionPool
    from .monitor.config import AlertThresholds
    from .monitor.domain import DashboardSnapshot
    from .queue.processor import ProcessorHealth
    from .queue.registry import JobHandler
    from .queue.store import QueueStore

logger = get_logger(__name__)


class WorkQueue:
    """Queue, processor, dead letter store and monitor for one deployment.

    Usage Pattern
    -------------
    ```python
    queue = WorkQueue(InMemoryQueueStore(), InMemoryDeadLetterStore())
    queue.register_handler("email_send", send_email)

    async with queue:
        await queue.producer.enqueue("email_send", {"to": "a@example.com"})
        ...
    ```
    """

    def __init__(
        self,
        store: QueueStore,
        dead_letter_store: DeadLetterStore,
        settings: WorkQueueSettings | None = None,
        *,
        registry: HandlerRegistry | None = None,
    ) -> None:
        self._settings = settings or WorkQueueSettings()
        self._store = store

        self.registry = registry or HandlerRegistry()
        self.policy = RetryPolicy(self._settings.retry)
        self.producer = QueueProducer(store, default_max_retries=self._settings.retry.max_retries)
        self.dead_letters = DeadLetterQueue(dead_letter_store, self._settings.dlq)
        self.processor = QueueProcessor(
            store,
            self.registry,
            self.dead_letters,
            self.policy,
            self._settings.processor,
            self._settings.execution_retry,
        )
        self.monitor = QueueMonitor(store, self.processor, self.dead_letters, self._settings.monitor)

    @classmethod
    def from_postgres(
        cls,
        pool: AsyncConnectionPool,
        settings: WorkQueueSettings | None = None,
        *,
        registry: HandlerRegistry | None = None,
    ) -> Self:
        return cls(PostgresQueueStore(pool), PostgresDeadLetterStore(pool), settings, registry=registry)

    @property
    def settings(self) -> WorkQueueSettings:
        return self._settings

    @property
    def store(self) -> QueueStore:
        return self._store

    def register_handler(self, job_type: str, handler: JobHandler) -> None:
        self.registry.register(job_type, handler)

    async def start(self) -> None:
        await self.processor.start_processing()
        if self._settings.enable_monitoring:
            await self.monitor.start_monitoring()
        if self._settings.enable_dead_letter_sweep:
            await self.dead_letters.start_automatic_processing(self.execute_dead_letter)
        logger.info(
            "Work queue started",
            handlers=self.registry.job_types,
            monitoring=self._settings.enable_monitoring,
            dead_letter_sweep=self._settings.enable_dead_letter_sweep,
        )

    async def stop(self) -> None:
        if self.dead_letters.is_sweeping:
            await self.dead_letters.stop_automatic_processing()
        if self.monitor.is_monitoring:
            await self.monitor.stop_monitoring()
        if self.processor.is_processing:
            await self.processor.stop_processing()
        logger.info("Work queue stopped")

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if exc_val is not None:
            logger.error("Work queue exiting with exception", exc_type=type(exc_val).__name__, exc_val=str(exc_val))
        await self.stop()

    async def execute_dead_letter(
        self,
        payload: dict[str, Any],
        context: DeadLetterContext,
        operation_type: str | None = None,
    ) -> Any:
        """Run the registered handler for a dead letter entry's original job."""
        job_type = context.operation or operation_type
        if job_type is None:
            raise ValueError("Dead letter context has no operation type")

        fields: dict[str, Any] = {"type": job_type, "payload": payload, "user_id": context.user_id}
        if context.queue_item_id:
            fields["id"] = context.queue_item_id
        return await self.registry.dispatch(QueueItem(**fields))

    async def retry_dead_letter_entry(self, entry_id: str) -> RetryOutcome:
        """Re-run an entry through its job handler. Re-raises if the handler fails."""
        entry = await self.dead_letters.get(entry_id)

        async def executor(payload: dict[str, Any], context: DeadLetterContext) -> Any:
            return await self.execute_dead_letter(payload, context, entry.operation_type)

        return await self.dead_letters.retry(entry_id, executor)

    async def resolve_dead_letter_entry(
        self,
        entry_id: str,
        notes: str = "",
        *,
        resolved_by: str = "system",
    ) -> DeadLetterEntry:
        return await self.dead_letters.resolve(entry_id, notes, resolved_by=resolved_by)

    def dashboard(self) -> DashboardSnapshot:
        return self.monitor.get_dashboard_data()

    def update_alert_thresholds(self, **changes: Any) -> AlertThresholds:
        return self.monitor.update_alert_thresholds(**changes)

    async def update_monitoring_interval(self, interval_ms: int) -> None:
        await self.monitor.update_monitoring_interval(interval_ms)

    async def health_check(self) -> ProcessorHealth:
        return await self.processor.health_check()
