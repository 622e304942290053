from __future__ import annotations

from collections import deque
from collections.abc import Iterator
from datetime import datetime

from .domain import MetricName, MetricPoint


class SlidingWindow:
    """Fixed-capacity buffer of metric samples; the oldest point is evicted first."""

    __slots__ = ("_name", "_points")

    def __init__(self, name: MetricName, capacity: int = 100) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._name = name
        self._points: deque[MetricPoint] = deque(maxlen=capacity)

    @property
    def name(self) -> MetricName:
        return self._name

    @property
    def capacity(self) -> int:
        return self._points.maxlen or 0

    def append(self, timestamp: datetime, value: float) -> MetricPoint:
        point = MetricPoint(timestamp=timestamp, name=self._name, value=value)
        self._points.append(point)
        return point

    def latest(self) -> MetricPoint | None:
        return self._points[-1] if self._points else None

    def since(self, start: datetime) -> list[MetricPoint]:
        return [point for point in self._points if point.timestamp >= start]

    def clear(self) -> None:
        self._points.clear()

    def __len__(self) -> int:
        return len(self._points)

    def __iter__(self) -> Iterator[MetricPoint]:
        return iter(self._points)
