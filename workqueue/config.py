"""Top-level settings for a `WorkQueue` deployment.

Values load from the environment with the ``WORKQUEUE_`` prefix and ``__`` as
the nested delimiter, e.g. ``WORKQUEUE_PROCESSOR__MAX_WORKERS=8`` or
``WORKQUEUE_MONITOR__THRESHOLDS__QUEUE_SIZE=500``.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .dlq.config import DLQConfig
from .infrastructure.postgres.config import AsyncpgConfig
from .monitor.config import MonitorConfig
from .queue.config import ProcessorConfig
from .resilience.config import ExecutionRetryConfig, RetryPolicyConfig


class WorkQueueSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="WORKQUEUE_",
        env_nested_delimiter="__",
        extra="ignore",
        frozen=True,
    )

    processor: ProcessorConfig = Field(default_factory=ProcessorConfig)
    retry: RetryPolicyConfig = Field(default_factory=RetryPolicyConfig)
    execution_retry: ExecutionRetryConfig = Field(default_factory=ExecutionRetryConfig)
    dlq: DLQConfig = Field(default_factory=DLQConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    database: AsyncpgConfig = Field(default_factory=AsyncpgConfig)
    enable_monitoring: bool = Field(default=True, description="Run the queue monitor alongside the processor")
    enable_dead_letter_sweep: bool = Field(
        default=False,
        description="Periodically retry allow-listed dead letter entries with transient errors",
    )
