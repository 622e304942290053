from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, TypeAlias

from ..core.enums import FailureCategory
from ..core.exceptions import DeadLetterEntryNotFoundError, EntryAlreadyResolvedError, EntryStatusConflictError
from ..logger import get_logger, job_context
from .config import DLQConfig
from .domain import (
    DeadLetterContext,
    DeadLetterEntry,
    DeadLetterFilter,
    DeadLetterPriority,
    DeadLetterStats,
    DeadLetterStatus,
    ErrorSnapshot,
    RetryOutcome,
    SweepResult,
    utcnow,
)

if TYPE_CHECKING:
    from structlog.stdlib import BoundLogger

    from ..queue.domain import QueueItem
    from .store import DeadLetterStore

logger: BoundLogger = get_logger(__name__)

DeadLetterExecutor: TypeAlias = Callable[[dict[str, Any], DeadLetterContext], Awaitable[Any] | Any]

RESOLVED_MUTABLE_FIELDS: frozenset[str] = frozenset({"metadata", "resolution_notes"})
SWEEPABLE_STATUSES: tuple[DeadLetterStatus, ...] = (DeadLetterStatus.PENDING_REVIEW, DeadLetterStatus.FAILED)


class DeadLetterQueue:
    """Dead letter store service for permanently failed work.

    Entries are never removed implicitly: they leave ``pending_review`` only
    through an explicit retry, a manual resolve, or an operator delete.

    Usage Pattern
    -------------
    ```python
    dlq = DeadLetterQueue(InMemoryDeadLetterStore(), DLQConfig())

    # Route failed work
    entry_id = await dlq.add_from_item(item, error, FailureCategory.EXHAUSTED)

    # Operator retry; re-raises when the executor fails
    outcome = await dlq.retry(entry_id, executor)

    # Manual closure
    await dlq.resolve(entry_id, "fixed upstream", resolved_by="ops")

    # Background sweep of auto-retryable entries
    await dlq.start_automatic_processing(executor)
    ```
    """

    def __init__(self, store: DeadLetterStore, config: DLQConfig | None = None) -> None:
        self._store = store
        self._config = config or DLQConfig()
        self._sweeping = False
        self._sweep_task: asyncio.Task[None] | None = None
        self._sweep_stop = asyncio.Event()

    @property
    def config(self) -> DLQConfig:
        return self._config

    @property
    def is_sweeping(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def add(
        self,
        operation_type: str,
        error: BaseException | ErrorSnapshot,
        *,
        original_payload: dict[str, Any] | None = None,
        context: DeadLetterContext | None = None,
        priority: DeadLetterPriority = DeadLetterPriority.NORMAL,
        category: FailureCategory = FailureCategory.PERMANENT,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Route failed work to the dead letter store.

        Parameters
        ----------
        operation_type
            Job type of the failed work.
        error
            The exception that caused the failure, or a prebuilt snapshot.
        original_payload
            Payload preserved exactly as the handler received it.
        context
            Originating user / operation / queue item.
        priority
            Review priority.
        category
            Failure classification, used when ``error`` is an exception.
        metadata
            Free-form annotations.

        Returns
        -------
        str
            The new entry id.
        """
        snapshot = error if isinstance(error, ErrorSnapshot) else ErrorSnapshot.from_exception(error, category)
        entry = DeadLetterEntry(
            operation_type=operation_type,
            original_payload=original_payload or {},
            error_snapshot=snapshot,
            context=context or DeadLetterContext(operation=operation_type),
            priority=priority,
            metadata=metadata or {},
        )
        entry_id = await self._store.insert(entry)

        logger.error(
            "Entry added to dead letter queue",
            entry_id=entry_id,
            operation_type=operation_type,
            error_type=snapshot.error_type,
            category=snapshot.category.value,
            error=snapshot.message,
        )
        return entry_id

    async def add_from_item(self, item: QueueItem, error: BaseException, category: FailureCategory) -> str:
        return await self.add(
            item.type,
            ErrorSnapshot.from_exception(error, category, count=item.retry_count),
            original_payload=item.payload,
            context=DeadLetterContext(
                user_id=item.user_id,
                operation=item.type,
                queue_item_id=item.id,
                extras={"max_retries": item.max_retries, "item_priority": item.priority},
            ),
            priority=DeadLetterPriority.from_item_priority(item.priority),
            metadata=dict(item.metadata),
        )

    async def list(
        self,
        *,
        status: DeadLetterStatus | None = None,
        operation_type: str | None = None,
        priority: DeadLetterPriority | None = None,
        user_id: str | None = None,
        limit: int | None = None,
    ) -> list[DeadLetterEntry]:
        filters = DeadLetterFilter(status=status, operation_type=operation_type, priority=priority, user_id=user_id)
        return await self._store.list(filters, limit or self._config.default_list_limit)

    async def get(self, entry_id: str) -> DeadLetterEntry:
        """Fetch an entry.

        Raises
        ------
        DeadLetterEntryNotFoundError
            If no entry has this id.
        """
        entry = await self._store.get(entry_id)
        if entry is None:
            raise DeadLetterEntryNotFoundError(f"Dead letter entry not found: {entry_id}")
        return entry

    async def update(self, entry_id: str, **fields: Any) -> DeadLetterEntry:
        """Apply a partial update.

        Raises
        ------
        EntryAlreadyResolvedError
            If the entry is resolved and ``fields`` touch anything besides
            ``metadata`` or ``resolution_notes``.
        EntryStatusConflictError
            If the entry changed status between the read and the write.
        """
        entry = await self.get(entry_id)
        if entry.is_resolved and not set(fields) <= RESOLVED_MUTABLE_FIELDS:
            raise EntryAlreadyResolvedError(f"Entry {entry_id} is resolved; only audit annotations may change")

        updated = await self._store.update(entry_id, expected_status=entry.status, **fields)
        logger.info("Dead letter entry updated", entry_id=entry_id, fields=sorted(fields))
        return updated

    async def retry(self, entry_id: str, executor: DeadLetterExecutor) -> RetryOutcome:
        """Reprocess an entry through ``executor(original_payload, context)``.

        On success the entry becomes ``resolved`` with the executor result. On
        failure it becomes ``failed``, ``retry_count`` is incremented, the new
        error is stored and the exception is re-raised. Both final writes only
        land while the entry is still ``retrying``, so a concurrent manual
        resolve is never overwritten.

        Raises
        ------
        EntryAlreadyResolvedError
            If the entry is already resolved.
        EntryStatusConflictError
            If another retry of the entry is in flight.
        """
        entry = await self.get(entry_id)
        if entry.is_resolved:
            raise EntryAlreadyResolvedError(f"Entry {entry_id} is already resolved")
        if entry.status is DeadLetterStatus.RETRYING:
            raise EntryStatusConflictError(f"Entry {entry_id} is already being retried")

        await self._store.update(
            entry_id,
            expected_status=entry.status,
            status=DeadLetterStatus.RETRYING,
            last_retry_at=utcnow(),
        )
        logger.info("Retrying dead letter entry", entry_id=entry_id, operation_type=entry.operation_type)

        try:
            with job_context(
                dead_letter_id=entry_id,
                job_type=entry.operation_type,
                item_id=entry.context.queue_item_id,
                user_id=entry.context.user_id,
            ):
                result = executor(entry.original_payload, entry.context)
                if inspect.isawaitable(result):
                    result = await result
        except Exception as e:
            retry_count = entry.retry_count + 1
            try:
                await self._store.update(
                    entry_id,
                    expected_status=DeadLetterStatus.RETRYING,
                    status=DeadLetterStatus.FAILED,
                    retry_count=retry_count,
                    retry_error=ErrorSnapshot.from_exception(e, entry.error_snapshot.category, count=retry_count),
                )
            except EntryStatusConflictError:
                logger.warning("Dead letter entry changed during retry, keeping its state", entry_id=entry_id)
            logger.error(
                "Dead letter entry retry failed",
                entry_id=entry_id,
                operation_type=entry.operation_type,
                retry_count=retry_count,
                error=str(e),
            )
            raise

        try:
            await self._store.update(
                entry_id,
                expected_status=DeadLetterStatus.RETRYING,
                status=DeadLetterStatus.RESOLVED,
                resolved_at=utcnow(),
                result=result,
            )
        except EntryStatusConflictError:
            logger.warning("Dead letter entry changed during retry, keeping its state", entry_id=entry_id)
        else:
            logger.info("Dead letter entry resolved", entry_id=entry_id, operation_type=entry.operation_type)
        return RetryOutcome(success=True, entry_id=entry_id, result=result)

    async def resolve(
        self,
        entry_id: str,
        notes: str = "",
        *,
        resolved_by: str = "system",
        data: Any = None,
    ) -> DeadLetterEntry:
        """Close an entry manually.

        Raises
        ------
        EntryAlreadyResolvedError
            If the entry is already resolved; resolving twice is rejected.
        EntryStatusConflictError
            If a retry of the entry is in flight.
        """
        entry = await self.get(entry_id)
        if entry.is_resolved:
            raise EntryAlreadyResolvedError(f"Entry {entry_id} is already resolved")
        if entry.status is DeadLetterStatus.RETRYING:
            raise EntryStatusConflictError(f"Entry {entry_id} is being retried; resolve it after the retry finishes")

        fields: dict[str, Any] = {
            "status": DeadLetterStatus.RESOLVED,
            "resolved_at": utcnow(),
            "resolution_notes": notes,
            "resolved_by": resolved_by,
        }
        if data is not None:
            fields["result"] = data

        resolved = await self._store.update(entry_id, expected_status=entry.status, **fields)
        logger.info("Dead letter entry resolved manually", entry_id=entry_id, resolved_by=resolved_by)
        return resolved

    async def delete(self, entry_id: str) -> bool:
        deleted = await self._store.delete(entry_id)
        if deleted:
            logger.info("Dead letter entry deleted", entry_id=entry_id)
        else:
            logger.warning("Dead letter entry not found for delete", entry_id=entry_id)
        return deleted

    async def stats(self) -> DeadLetterStats:
        return await self._store.aggregate_stats()

    def can_auto_retry(self, entry: DeadLetterEntry) -> bool:
        if entry.operation_type not in self._config.auto_retry_allowlist:
            return False

        error = entry.latest_error
        text = f"{error.code or ''} {error.message}".upper()
        if not any(marker in text for marker in self._config.auto_retry_error_markers):
            return False

        return entry.retry_count < self._config.max_auto_retries

    async def process_sweep(self, executor: DeadLetterExecutor) -> SweepResult:
        """Retry every auto-eligible entry once. Failures are logged, never raised."""
        if self._sweeping:
            logger.debug("Dead letter sweep already in progress, skipping")
            return SweepResult()

        self._sweeping = True
        examined = resolved = failed = skipped = 0
        try:
            # error markers are checked per entry, everything else is filtered by the store
            entries: list[DeadLetterEntry] = []
            for status in SWEEPABLE_STATUSES:
                filters = DeadLetterFilter(
                    status=status,
                    operation_types=self._config.auto_retry_allowlist,
                    retry_count_below=self._config.max_auto_retries,
                )
                entries.extend(await self._store.list(filters, self._config.sweep_batch_size))
            entries = entries[: self._config.sweep_batch_size]

            if not entries:
                logger.debug("No dead letter entries to process")
                return SweepResult()

            logger.info("Processing dead letter entries", count=len(entries))
            for entry in entries:
                examined += 1
                if not self.can_auto_retry(entry):
                    skipped += 1
                    logger.debug(
                        "Entry requires manual intervention",
                        entry_id=entry.id,
                        operation_type=entry.operation_type,
                    )
                    continue

                try:
                    await self.retry(entry.id, executor)
                except Exception as e:
                    failed += 1
                    logger.error("Failed to process dead letter entry", entry_id=entry.id, error=str(e))
                else:
                    resolved += 1
        except Exception as e:
            logger.error("Failed to process dead letter queue", error=str(e), error_type=type(e).__name__)
        finally:
            self._sweeping = False

        return SweepResult(examined=examined, resolved=resolved, failed=failed, skipped=skipped)

    async def start_automatic_processing(self, executor: DeadLetterExecutor, interval_ms: int | None = None) -> None:
        if self.is_sweeping:
            logger.warning("Automatic dead letter processing is already running")
            return

        interval_s = self._config.sweep_interval_s if interval_ms is None else interval_ms / 1000
        self._sweep_stop = asyncio.Event()
        self._sweep_task = asyncio.create_task(
            self._run_sweeps(executor, interval_s, self._sweep_stop),
            name="dead-letter-sweep",
        )
        logger.info("Started automatic dead letter processing", interval_s=interval_s)

    async def stop_automatic_processing(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return

        self._sweep_stop.set()
        _done, pending = await asyncio.wait({task}, timeout=self._config.shutdown_timeout_s)
        if pending:
            logger.warning("Timeout waiting for dead letter sweep to finish")
        logger.info("Stopped automatic dead letter processing")

    async def _run_sweeps(self, executor: DeadLetterExecutor, interval_s: float, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_s)
            except TimeoutError:
                await self.process_sweep(executor)
            else:
                break

    def format_entry(self, entry: DeadLetterEntry) -> dict[str, Any]:
        return {
            "id": entry.id,
            "operation": entry.operation_type,
            "status": entry.status.value,
            "priority": entry.priority.value,
            "error": entry.latest_error.message,
            "created_at": entry.created_at.isoformat(),
            "retry_count": entry.retry_count,
            "context": entry.context.model_dump(mode="json"),
        }

    def entry_age_days(self, entry: DeadLetterEntry) -> int:
        return (utcnow() - entry.created_at).days
