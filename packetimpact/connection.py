"""
TCPIPv4Connection - the synthetic peer wired to the wire.

This ties together the pieces a check actually talks to:

- a SyntheticPeer holding sequence numbers and phase
- an ExpectationEngine reading from the capture
- a FrameInjector writing to the wire

Expectations are scoped to the connection's flow: the caller's spec is
laid over the flow template, so ``expect_data(SegmentSpec(), payload)``
only ever matches frames from the DUT's port to ours.

Usage:
    conn = TCPIPv4Connection.open(capture, injector, config, remote_port=port)
    conn.handshake()
    conn.expect_data(SegmentSpec(), Payload(b"hello"), timeout=1.0)
    conn.send(SegmentSpec(flags=TCPFlags.ACK))
    conn.close()
"""

import logging
import secrets
from typing import Callable, Optional

from .capture import FrameSource, SniffCapture
from .clock import Clock, MonotonicClock
from .codec import encode
from .config import ConformanceConfig
from .engine import ExpectationEngine
from .errors import ExpectTimeout, HandshakeTimeout
from .fields import Payload, SegmentSpec
from .injector import FrameInjector, ScapyInjector
from .peer import SyntheticPeer, seq_add
from .segment import ParsedSegment, TCPFlags, TCPOption
from .states import PeerPhase


logger = logging.getLogger(__name__)

# Ephemeral port range used when the config leaves local_port unset
EPHEMERAL_PORTS = (32768, 60999)


class TCPIPv4Connection:
    """
    One synthetic-peer connection to the DUT.

    With ``owns_wire`` set, close() also stops the capture source and
    closes the injector; live_bench() builds connections that way.
    """

    def __init__(self, peer: SyntheticPeer, engine: ExpectationEngine,
                 injector: FrameInjector, config: Optional[ConformanceConfig] = None,
                 owns_wire: bool = False):
        self.peer = peer
        self.engine = engine
        self.injector = injector
        self.config = config or ConformanceConfig()
        self.owns_wire = owns_wire
        self.frames_sent = 0

    @classmethod
    def open(cls, source: FrameSource, injector: FrameInjector,
             config: Optional[ConformanceConfig] = None, remote_port: int = 0,
             clock: Optional[Clock] = None, isn: Optional[int] = None,
             owns_wire: bool = False) -> "TCPIPv4Connection":
        """Build a CLOSED connection to ``remote_port`` on the DUT."""
        config = config or ConformanceConfig()
        local_port = config.local_port
        if local_port is None:
            low, high = EPHEMERAL_PORTS
            local_port = low + secrets.randbelow(high - low + 1)

        peer = SyntheticPeer.initial(
            local_port=local_port,
            remote_port=remote_port,
            local_ip=config.local_ip,
            remote_ip=config.remote_ip,
            isn=isn,
            window=config.window,
        )
        engine = ExpectationEngine(source, clock or MonotonicClock(),
                                   verify_checksums=config.verify_checksums)
        return cls(peer, engine, injector, config, owns_wire=owns_wire)

    @property
    def clock(self) -> Clock:
        return self.engine.clock

    @property
    def phase(self) -> PeerPhase:
        return self.peer.phase

    def local_seq_num(self) -> int:
        return self.peer.local_seq

    def remote_seq_num(self) -> Optional[int]:
        return self.peer.remote_seq

    def send(self, spec: Optional[SegmentSpec] = None, payload: bytes = b"",
             options: Optional[list] = None) -> SegmentSpec:
        """
        Inject one segment, filling unset fields from the peer.

        The peer only advances once the injector has accepted the frame.
        """
        filled = self.peer.next_outgoing(spec)
        frame = encode(self.peer, spec, payload, options)
        self.injector.send(frame)
        self.frames_sent += 1
        self.peer.record_sent(filled, len(payload))
        logger.debug(
            f"Sent [{TCPFlags(filled.flags or 0)}] seq={filled.seq_num} "
            f"ack={filled.ack_num} len={len(payload)}"
        )
        return filled

    def expect(self, spec: Optional[SegmentSpec] = None, payload: Optional[Payload] = None,
               timeout: Optional[float] = None) -> ParsedSegment:
        """Wait for a segment of this flow matching ``spec`` and ``payload``."""
        if timeout is None:
            timeout = self.config.expect_timeout
        full = self.peer.incoming_template().merged(spec)
        return self.engine.expect(full, payload, timeout, peer=self.peer)

    def expect_data(self, spec: Optional[SegmentSpec], payload: Payload,
                    timeout: Optional[float] = None) -> ParsedSegment:
        """Wait for a segment of this flow carrying exactly ``payload``."""
        return self.expect(spec, payload, timeout)

    def expect_next_data(self, payload: Payload,
                         timeout: Optional[float] = None) -> ParsedSegment:
        """Wait for ``payload`` at the next sequence number we expect."""
        if self.peer.remote_seq is None:
            raise RuntimeError("Remote sequence number unknown before handshake")
        return self.expect(SegmentSpec(seq_num=self.peer.remote_seq), payload, timeout)

    def handshake(self, timeout: Optional[float] = None) -> ParsedSegment:
        """
        Active open: SYN, wait for SYN-ACK, ACK.

        Raises:
            HandshakeTimeout: if no SYN-ACK acknowledging our SYN arrived in
                time; the peer is left CLOSED
        """
        if self.peer.phase != PeerPhase.CLOSED:
            raise RuntimeError(f"Cannot handshake in phase {self.peer.phase.name}")
        if timeout is None:
            timeout = self.config.handshake_timeout

        isn = self.peer.local_seq
        self.send(SegmentSpec(flags=TCPFlags.SYN, ack_num=0),
                  options=[TCPOption.mss(1460)])

        syn_ack = SegmentSpec(flags=TCPFlags.SYN | TCPFlags.ACK, ack_num=seq_add(isn, 1))
        try:
            reply = self.expect(syn_ack, timeout=timeout)
        except ExpectTimeout as e:
            self.peer.handshake_timed_out()
            raise HandshakeTimeout(e.spec, e.payload, e.timeout, e.detail) from e

        self.send(SegmentSpec(flags=TCPFlags.ACK))
        logger.info(f"Connection established: {self.peer}")
        return reply

    def drain(self) -> int:
        """Discard frames captured so far."""
        return self.engine.source.drain()

    def close(self):
        """
        Reset the connection on the DUT side if one exists.

        A connection that owns its wire releases the capture and the
        injector as well, even when the reset cannot be sent.
        """
        try:
            if self.peer.phase != PeerPhase.CLOSED:
                self.send(SegmentSpec(flags=TCPFlags.RST | TCPFlags.ACK))
                logger.info(f"Connection reset: {self.peer}")
        finally:
            if self.owns_wire:
                self.engine.source.stop()
                self.injector.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __str__(self) -> str:
        return f"TCPIPv4Connection({self.peer})"


def live_bench(config: Optional[ConformanceConfig] = None) -> Callable[[int], TCPIPv4Connection]:
    """
    Connection factory for a real wire.

    Each connection gets its own scapy sniffer scoped to the peer and DUT
    addresses on ``config.interface`` and a scapy injector on the same
    interface. The sniffer is running before the factory returns, and
    closing the connection stops it and closes the injector.

    Raises:
        CaptureError: if the interface cannot be captured on
    """
    config = config or ConformanceConfig()

    def open_connection(remote_port: int) -> TCPIPv4Connection:
        source = SniffCapture.for_flow(config.interface, config.local_ip, config.remote_ip,
                                       sniff_timeout=config.sniff_timeout)
        injector = ScapyInjector(config.interface)
        source.start()
        logger.info(f"Live wire on {config.interface or 'default interface'} "
                    f"for {config.local_ip} <-> {config.remote_ip}:{remote_port}")
        return TCPIPv4Connection.open(source, injector, config, remote_port=remote_port,
                                      clock=source.clock, owns_wire=True)

    return open_connection
