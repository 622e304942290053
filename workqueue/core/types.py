from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, ParamSpec, TypeVar

from pydantic import AfterValidator

P = ParamSpec("P")
R = TypeVar("R")


def ensure_utc(value: datetime) -> datetime:
    """Read naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


UTCDatetime = Annotated[datetime, AfterValidator(ensure_utc)]
