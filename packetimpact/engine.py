"""
Expectation engine - wait for the first frame that fits a pattern.

The engine pulls frames from a capture source until one satisfies every
set field of a SegmentSpec (and the payload, when one is given), or until
the deadline passes. Everything that does not match is discarded:

- frames that fail to decode (short, corrupt, not TCP)
- frames with a wrong header field
- frames whose header fits but whose payload does not

Matching is all-or-nothing; a near miss is just another discard.

On a match the engine calls peer.observe() before returning. That side
effect is what lets the next segment the caller builds pick up
the sequence number just learned.

The source and the engine must share a clock. A live capture pairs with
MonotonicClock; the simulator pairs its wire with a ManualClock.
"""

import logging
from collections import deque
from typing import Optional

from .capture import FrameSource
from .clock import Clock, MonotonicClock
from .codec import decode
from .errors import ExpectTimeout, MalformedFrame
from .fields import Payload, SegmentSpec
from .peer import SyntheticPeer
from .segment import ParsedSegment, TCPFlags


logger = logging.getLogger(__name__)


class ExpectationEngine:
    """Blocking pattern match with a deadline over a FrameSource."""

    # Discarded frames quoted in a timeout message
    RECENT_DISCARDS = 5

    def __init__(self, source: FrameSource, clock: Optional[Clock] = None,
                 verify_checksums: bool = True):
        self.source = source
        self.clock = clock or MonotonicClock()
        self.verify_checksums = verify_checksums

        # Statistics
        self.frames_examined = 0
        self.frames_malformed = 0
        self.frames_discarded = 0

    def expect(self, spec: SegmentSpec, payload: Optional[Payload] = None,
               timeout: float = 1.0, peer: Optional[SyntheticPeer] = None) -> ParsedSegment:
        """
        Block until a matching frame arrives.

        Args:
            spec: Header fields that must match; at least one must be set
            payload: Optional exact payload expectation
            timeout: Seconds to wait before giving up
            peer: Peer to update with the matched segment

        Returns:
            The matching segment, stamped with its arrival time

        Raises:
            ValueError: if ``spec`` constrains nothing
            ExpectTimeout: if no frame matched before the deadline
        """
        if spec is None or spec.is_empty():
            raise ValueError("An expectation must constrain at least one header field")
        if timeout < 0:
            raise ValueError(f"Invalid timeout: {timeout}")

        deadline = self.clock.now() + timeout
        recent = deque(maxlen=self.RECENT_DISCARDS)
        malformed = 0
        polled = False

        while True:
            remaining = deadline - self.clock.now()
            # A zero timeout still looks at what is already captured
            if remaining <= 0 and polled:
                break
            polled = True

            frame = self.source.receive(max(0.0, remaining))
            if frame is None:
                continue
            self.frames_examined += 1

            try:
                parsed = decode(frame.data, self.verify_checksums, frame.timestamp)
            except MalformedFrame as e:
                malformed += 1
                self.frames_malformed += 1
                logger.debug(f"Discarded malformed frame: {e}")
                continue

            wrong = spec.mismatches(parsed)
            if not wrong and payload is not None and not payload.matches(parsed.payload):
                wrong = ["payload"]
            if wrong:
                self.frames_discarded += 1
                recent.append(f"{parsed} (wrong {', '.join(wrong)})")
                if parsed.tcp.flags & TCPFlags.RST:
                    logger.warning(f"Discarded reset {parsed}: wrong {', '.join(wrong)}")
                else:
                    logger.debug(f"Discarded {parsed}: wrong {', '.join(wrong)}")
                continue

            if peer is not None:
                peer.observe(parsed)
            logger.debug(f"Matched {parsed}")
            return parsed

        raise ExpectTimeout(spec, payload, timeout, self._describe(recent, malformed))

    @staticmethod
    def _describe(recent, malformed: int) -> str:
        parts = []
        if recent:
            parts.append("last discarded: " + "; ".join(recent))
        if malformed:
            parts.append(f"{malformed} malformed frame(s) ignored")
        if not parts:
            return "nothing captured"
        return ", ".join(parts)
