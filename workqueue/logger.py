"""Structured logging for the work queue.

Every module logs through ``get_logger(__name__)``. Workers wrap each job in
``job_context`` so handler logs carry the item and job type without passing
a logger around.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from functools import lru_cache
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal, Protocol, TypeAlias, cast

import structlog
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from structlog.processors import CallsiteParameter

if TYPE_CHECKING:
    from structlog.types import EventDict, Processor, WrappedLogger

BoundLogger: TypeAlias = structlog.stdlib.BoundLogger
LogLevel: TypeAlias = Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"]


class LoggingConfig(BaseSettings):
    """Logging settings, read from ``LOG_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="LOG_",
        extra="ignore",
        frozen=True,
    )

    level: LogLevel = Field(default="INFO")
    json_output: bool = Field(default=False, description="Render one JSON object per line")
    service_name: str = Field(default="workqueue", description="Stamped on every record as 'service'")
    file_path: str | None = Field(default=None, description="Rotate into this file instead of stdout")
    max_bytes: int = Field(default=50_000_000, ge=1024)
    backup_count: int = Field(default=10, ge=0)
    library_log_levels: dict[str, LogLevel] = Field(default_factory=lambda: {"asyncpg": "WARNING"})


class FormatterStrategy(Protocol):
    def build_processors(self) -> list[Processor]: ...


class OutputStrategy(Protocol):
    def create_handler(self, config: LoggingConfig) -> logging.Handler: ...


class _StampService:
    """Adds the service name without going through contextvars, so ``clear_context`` keeps it."""

    def __init__(self, service_name: str) -> None:
        self._service_name = service_name

    def __call__(self, _logger: WrappedLogger, _method: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", self._service_name)
        return event_dict


def _common_processors(service_name: str) -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        _StampService(service_name),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.CallsiteParameterAdder(
            parameters=[CallsiteParameter.MODULE, CallsiteParameter.FUNC_NAME, CallsiteParameter.LINENO]
        ),
    ]


class JsonFormatterStrategy:
    def __init__(self, service_name: str = "workqueue") -> None:
        self._service_name = service_name

    def build_processors(self) -> list[Processor]:
        return [
            *_common_processors(self._service_name),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]


class ConsoleFormatterStrategy:
    def __init__(self, service_name: str = "workqueue") -> None:
        self._service_name = service_name

    def build_processors(self) -> list[Processor]:
        return [
            *_common_processors(self._service_name),
            structlog.processors.TimeStamper(fmt="%H:%M:%S.%f", utc=False),
            structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
        ]


class FileOutputStrategy:
    def create_handler(self, config: LoggingConfig) -> logging.Handler:
        if not config.file_path:
            raise ValueError("LOG_FILE_PATH must be set to log to a file")

        path = Path(config.file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        return RotatingFileHandler(path, maxBytes=config.max_bytes, backupCount=config.backup_count, encoding="utf-8")


class StreamOutputStrategy:
    def create_handler(self, config: LoggingConfig) -> logging.Handler:  # noqa: ARG002
        return logging.StreamHandler(sys.stdout)


class LoggerFactory:
    """Wires structlog onto the stdlib root logger for one process."""

    @staticmethod
    def create(config: LoggingConfig) -> BoundLogger:
        formatter: FormatterStrategy = (
            JsonFormatterStrategy(config.service_name)
            if config.json_output
            else ConsoleFormatterStrategy(config.service_name)
        )
        structlog.configure(
            processors=formatter.build_processors(),
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

        output: OutputStrategy = FileOutputStrategy() if config.file_path else StreamOutputStrategy()
        handler = output.create_handler(config)
        handler.setLevel(config.level)
        handler.setFormatter(logging.Formatter("%(message)s"))

        root = logging.getLogger()
        root.handlers = [handler]
        root.setLevel(config.level)
        for library, level in config.library_log_levels.items():
            logging.getLogger(library).setLevel(level)

        return cast(BoundLogger, structlog.get_logger("workqueue"))


@lru_cache(maxsize=1)
def _default_config() -> LoggingConfig:
    return LoggingConfig()


def configure_logging(config: LoggingConfig | None = None) -> None:
    LoggerFactory.create(config if config is not None else _default_config())


def get_logger(name: str | None = None) -> BoundLogger:
    return cast(BoundLogger, structlog.get_logger(name))


def bind_context(**kwargs: Any) -> None:
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


@contextmanager
def job_context(**fields: Any) -> Iterator[None]:
    """Bind job identifiers for the duration of one unit of work.

    ``None`` values are dropped so optional fields such as ``user_id`` do not
    show up as nulls.
    """
    with structlog.contextvars.bound_contextvars(**{k: v for k, v in fields.items() if v is not None}):
        yield
