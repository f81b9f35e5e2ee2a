from datetime import datetime
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Local wall-clock time, re-read on every call."""

    def now(self) -> datetime:
        return datetime.now()
