"""
Clock sources.

Every deadline and every timing measurement goes through a Clock so that
the same code runs against the wall clock on a live wire and against a
manually advanced clock in the simulator.
"""

import time


class Clock:
    """A monotonic time source, in seconds."""

    def now(self) -> float:
        raise NotImplementedError


class MonotonicClock(Clock):
    """time.monotonic(), immune to wall-clock adjustments."""

    def now(self) -> float:
        return time.monotonic()


class ManualClock(Clock):
    """
    A clock that only moves when told to.

    Used by the simulator: instead of sleeping until the next frame is
    due, the wire advances the clock straight to its delivery time.
    """

    def __init__(self, start: float = 0.0):
        self._now = start

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float):
        if seconds < 0:
            raise ValueError(f"Cannot move a clock backwards: {seconds}")
        self._now += seconds

    def advance_to(self, when: float):
        if when > self._now:
            self._now = when
