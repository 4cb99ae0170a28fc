from __future__ import annotations

from datetime import datetime, timezone
from typing import Awaitable, Callable, Protocol

Sleeper = Callable[[float], Awaitable[None]]


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Default wall-clock implementation."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)
