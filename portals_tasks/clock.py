from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    """Monotonic clock abstraction.

    Task engines read time through this interface rather than calling real
    time directly, so headless drivers can replay an attempt frame by frame.
    """

    def now(self) -> float:
        """Return monotonic seconds."""


class RealClock:
    """Production clock backed by time.monotonic()."""

    def now(self) -> float:
        return time.monotonic()


class ManualClock:
    """Clock that only moves when told to (headless replays, demos)."""

    def __init__(self, start_s: float = 0.0) -> None:
        self._t = float(start_s)

    def now(self) -> float:
        return self._t

    def advance(self, dt: float) -> None:
        if dt < 0.0:
            raise ValueError("dt must be >= 0")
        self._t += float(dt)
