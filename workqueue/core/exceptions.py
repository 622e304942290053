"""Exception taxonomy for the work queue.

Handlers signal failure by raising. The processor converts whatever they raise
into a `FailureCategory`:

- `TransientJobError` (and built-in timeouts / connection errors) are retried.
- `PermanentJobError` and its subclasses are dead-lettered immediately.
- A transient failure whose retry budget is spent is recorded as exhausted.
- `OperatorError` marks failures raised by explicit manual actions.
"""

from __future__ import annotations


class WorkQueueError(Exception):
    """Base class for all work queue errors."""


class JobError(WorkQueueError):
    """Error raised by a job handler.

    Parameters
    ----------
    message
        Human readable error message.
    code
        Optional machine readable code (e.g. ``"RATE_LIMITED"``) matched
        against the retryable-error markers.
    """

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class TransientJobError(JobError):
    """Timeout, network or rate-limit failure. Always retryable."""


class PermanentJobError(JobError):
    """Validation or authorization failure. Never retried."""


class ConfigurationError(PermanentJobError):
    """No handler is registered for the job type."""


class RetryExhaustedError(WorkQueueError):
    """Retry budget spent on a transient failure."""

    def __init__(self, message: str, *, attempts: int, last_error: BaseException | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class OperatorError(WorkQueueError):
    """Failure raised by an explicit operator action."""


class QueueItemNotFoundError(WorkQueueError):
    """Queue item does not exist in the store."""


class DeadLetterEntryNotFoundError(WorkQueueError):
    """Dead letter entry does not exist in the store."""


class EntryAlreadyResolvedError(OperatorError):
    """Dead letter entry is resolved and can no longer change state."""


class EntryStatusConflictError(OperatorError):
    """Dead letter entry is mid-retry, or its status changed under a conditional update."""


class StoreNotInitializedError(WorkQueueError):
    """Store used before its schema or pool was initialized."""


class InvalidTransitionError(WorkQueueError):
    """Requested status change is not allowed by the item lifecycle."""
