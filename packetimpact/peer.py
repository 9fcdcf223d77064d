"""
Synthetic peer state - our side of the connection, kept by hand.

The peer remembers just enough to build segments the DUT will accept:
its own next sequence number, the next sequence number it expects from
the DUT, the ports and addresses of the flow, and the connection phase.

State only changes in two places:

- observe(), called by the expectation engine when a frame matches
- record_sent(), called after a segment has actually been injected

next_outgoing() is pure, so a segment that fails to send leaves no trace.
"""

import logging
import secrets
from dataclasses import dataclass, field
from typing import Optional

from .fields import SegmentSpec
from .segment import ParsedSegment, TCPFlags
from .states import PeerPhase, PeerStateMachine, event_for_received, event_for_sent


logger = logging.getLogger(__name__)

SEQ_MOD = 1 << 32


def seq_add(seq: int, n: int) -> int:
    return (seq + n) % SEQ_MOD


def seq_after(a: int, b: int) -> bool:
    """True if ``a`` comes strictly after ``b`` in sequence space."""
    return 0 < (a - b) % SEQ_MOD < (1 << 31)


@dataclass
class SyntheticPeer:
    """
    The test's own minimal TCP endpoint.

    Lives for one logical connection. Create a fresh one with initial()
    for every connection; a closed peer is not reused.
    """

    local_ip: str
    remote_ip: str
    local_port: int
    remote_port: int
    local_seq: int
    remote_seq: Optional[int] = None
    window: int = 30000
    last_flags_sent: Optional[TCPFlags] = None
    last_flags_seen: Optional[TCPFlags] = None
    machine: PeerStateMachine = field(default_factory=PeerStateMachine)

    @classmethod
    def initial(cls, local_port: int, remote_port: int,
                local_ip: str = "0.0.0.0", remote_ip: str = "0.0.0.0",
                isn: Optional[int] = None, window: int = 30000) -> "SyntheticPeer":
        """Create a CLOSED peer anchored to a 4-tuple."""
        if isn is None:
            isn = secrets.randbits(32)
        return cls(
            local_ip=local_ip,
            remote_ip=remote_ip,
            local_port=local_port,
            remote_port=remote_port,
            local_seq=isn,
            window=window,
        )

    @property
    def phase(self) -> PeerPhase:
        return self.machine.phase

    def outgoing_template(self) -> SegmentSpec:
        """The flow fields of every segment we send."""
        return SegmentSpec(
            src_ip=self.local_ip,
            dst_ip=self.remote_ip,
            src_port=self.local_port,
            dst_port=self.remote_port,
        )

    def incoming_template(self) -> SegmentSpec:
        """The flow fields every segment from the DUT must carry."""
        return SegmentSpec(
            src_ip=self.remote_ip,
            dst_ip=self.local_ip,
            src_port=self.remote_port,
            dst_port=self.local_port,
        )

    def next_outgoing(self, spec: Optional[SegmentSpec] = None) -> SegmentSpec:
        """
        Fill an outgoing spec from our state without changing it.

        Fields already set in ``spec`` win. The ACK flag is only defaulted
        on once the DUT's sequence number is known.
        """
        defaults = self.outgoing_template().merged(SegmentSpec(
            seq_num=self.local_seq,
            ack_num=self.remote_seq if self.remote_seq is not None else 0,
            flags=TCPFlags.ACK if self.remote_seq is not None else TCPFlags.NONE,
            window=self.window,
        ))
        return defaults.merged(spec)

    def observe(self, parsed: ParsedSegment):
        """
        Account for a segment received from the DUT.

        The remote sequence number only ever moves forward: retransmissions
        and duplicates end at or before what we already track.
        """
        tcp = parsed.tcp
        self.last_flags_seen = tcp.flags

        # segment_length counts the SYN, so a SYN-ACK lands on ISN + 1
        end = seq_add(tcp.seq_num, tcp.segment_length)
        if self.remote_seq is None or seq_after(end, self.remote_seq):
            self.remote_seq = end

        event = event_for_received(tcp.flags)
        if event is not None:
            changed, _ = self.machine.transition(event)
            if changed:
                logger.debug(f"Peer {self.local_port}: {event} -> {self.phase.name}")

    def record_sent(self, spec: SegmentSpec, payload_length: int = 0):
        """Advance our sequence number after ``spec`` went out on the wire."""
        flags = TCPFlags(spec.flags or 0)
        consumed = payload_length
        if flags & TCPFlags.SYN:
            consumed += 1
        if flags & TCPFlags.FIN:
            consumed += 1

        seq = spec.seq_num if spec.seq_num is not None else self.local_seq
        end = seq_add(seq, consumed)
        if seq_after(end, self.local_seq):
            self.local_seq = end
        self.last_flags_sent = flags

        event = event_for_sent(flags)
        if event is not None:
            changed, _ = self.machine.transition(event)
            if changed:
                logger.debug(f"Peer {self.local_port}: {event} -> {self.phase.name}")

    def handshake_timed_out(self):
        self.machine.transition("timeout")
        self.remote_seq = None

    def __str__(self) -> str:
        remote = self.remote_seq if self.remote_seq is not None else "?"
        return (
            f"Peer {self.local_ip}:{self.local_port} <-> "
            f"{self.remote_ip}:{self.remote_port} "
            f"[{self.phase.name}] snd={self.local_seq} rcv={remote}"
        )
