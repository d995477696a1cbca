from __future__ import annotations

from datetime import datetime, timedelta


class FrozenClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)
