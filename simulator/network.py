#!/usr/bin/env python3
"""
Simulated wire for running checks without a network.

The wire is a discrete-event scheduler on a ManualClock. Frames travelling
to the synthetic peer and timers set by simulated endpoints sit in one
heap ordered by due time. receive() works through that heap instead of
sleeping: timers fire, the clock jumps to each due time, and the first
frame due inside the timeout is handed back.

Frames the peer injects are delivered to the attached endpoint at once;
only the DUT -> peer direction has latency.
"""

import heapq
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from packetimpact.capture import CapturedFrame, FrameSource
from packetimpact.clock import ManualClock
from packetimpact.injector import FrameInjector

logger = logging.getLogger(__name__)


@dataclass(order=True)
class ScheduledEvent:
    """A frame for the peer or a timer callback, due at ``due``."""
    due: float
    order: int
    action: Any = field(compare=False)


@dataclass
class WireStats:
    """Counters kept by the simulated wire."""
    frames_injected: int = 0
    frames_delivered: int = 0
    timers_fired: int = 0

    def __str__(self) -> str:
        return (
            f"Wire Stats:\n"
            f"  Frames injected by peer: {self.frames_injected}\n"
            f"  Frames delivered to peer: {self.frames_delivered}\n"
            f"  Timers fired: {self.timers_fired}"
        )


class SimulatedWire(FrameSource, FrameInjector):
    """
    Both ends of the synthetic peer's wire, on virtual time.

    As a FrameSource it feeds the expectation engine; as a FrameInjector it
    takes the peer's frames and hands them to the attached endpoint.
    """

    def __init__(self, clock: Optional[ManualClock] = None):
        self.clock = clock or ManualClock()
        self._events: List[ScheduledEvent] = []
        self._order = itertools.count()
        self._endpoint = None
        self._stats = WireStats()
        self.injected: List[bytes] = []

    def attach(self, endpoint):
        """Connect the far end; it must provide handle_frame(bytes)."""
        self._endpoint = endpoint

    def schedule(self, frame: bytes, due: float):
        """Put a frame on its way to the peer, arriving at ``due``."""
        heapq.heappush(self._events, ScheduledEvent(due, next(self._order), bytes(frame)))

    def call_at(self, due: float, callback: Callable[[], None]):
        heapq.heappush(self._events, ScheduledEvent(due, next(self._order), callback))

    def send(self, frame: bytes):
        self._stats.frames_injected += 1
        self.injected.append(bytes(frame))
        if self._endpoint is None:
            logger.debug("No endpoint attached, frame lost")
            return
        self._endpoint.handle_frame(bytes(frame))

    def receive(self, timeout: float) -> Optional[CapturedFrame]:
        limit = self.clock.now() + max(0.0, timeout)

        while self._events and self._events[0].due <= limit:
            event = heapq.heappop(self._events)
            self.clock.advance_to(event.due)
            if callable(event.action):
                self._stats.timers_fired += 1
                event.action()
                continue
            self._stats.frames_delivered += 1
            return CapturedFrame(data=event.action, timestamp=event.due)

        self.clock.advance_to(limit)
        return None

    def pending(self) -> int:
        return sum(1 for event in self._events if not callable(event.action))

    def get_stats(self) -> WireStats:
        return self._stats
