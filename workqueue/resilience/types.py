from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TypeAlias

from tenacity import RetryCallState

RetryCallback: TypeAlias = Callable[[RetryCallState], Awaitable[None] | None]
BeforeSleepCallback: TypeAlias = Callable[[RetryCallState], Awaitable[None] | None]
RetryPredicate: TypeAlias = Callable[[BaseException], bool]
