from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from ...core.enums import HealthCheckStatus
from ...queue.domain import utcnow


class StoreHealth(BaseModel):
    """Health of the Postgres backing store.

    ``DEGRADED`` means the database answers but one of the queue tables is
    missing, so stores would fail on first use until ``create_schema`` runs.
    """

    model_config = ConfigDict(frozen=True)

    status: HealthCheckStatus
    connections: int = 0
    max_connections: int
    idle_connections: int = 0
    latency_ms: float | None = None
    missing_tables: tuple[str, ...] = ()
    error: str | None = None
    checked_at: datetime = Field(default_factory=utcnow)

    @property
    def is_healthy(self) -> bool:
        return self.status is HealthCheckStatus.HEALTHY

    @property
    def schema_ready(self) -> bool:
        return self.status is not HealthCheckStatus.INITIALIZING and not self.missing_tables and self.error is None

    @property
    def saturation(self) -> float:
        """Busy connections as a fraction of the pool ceiling."""
        if self.max_connections == 0:
            return 0.0
        return (self.connections - self.idle_connections) / self.max_connections
