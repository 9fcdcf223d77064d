"""
Retransmission timing oracle - is the DUT's RTO backoff exponential?

RFC 6298 (5.5) requires the retransmission timer to double every time it
expires. The oracle leaves one data segment unacknowledged and times the
retransmissions that follow:

    trigger   original   rtx 0        rtx 1            rtx 2
       |---------|---------|--------------|------------------------|
       <----- measured RTO ->
                           <-- ~2*RTO -->  <-------- ~4*RTO ------->

The first retransmission calibrates the RTO actually in use (the DUT may
or may not have taken an RTT sample from the warm-up exchange). Every
later interval must be at least the lower bound of its timing window,
and must arrive before the upper bound or the expectation times out.

With the default additive tolerance an interval may arrive up to one
measured RTO early. A DUT with no backoff at all still fails by the
second checked probe.
"""

import logging
import socket
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .config import ConformanceConfig, TolerancePolicy
from .connection import TCPIPv4Connection
from .errors import ExpectTimeout, TimingViolation
from .fields import Payload, SegmentSpec
from .remote import RemoteControlClient
from .segment import ParsedSegment, TCPFlags


logger = logging.getLogger(__name__)

TCP_NODELAY = getattr(socket, "TCP_NODELAY", 1)


@dataclass(frozen=True)
class TimingWindow:
    """Acceptable interval before one retransmission, in seconds."""
    lower: float
    upper: float

    def contains(self, interval: float) -> bool:
        return self.lower <= interval <= self.upper

    def __str__(self) -> str:
        return f"[{self.lower:.3f}s, {self.upper:.3f}s]"


def timing_window(current: float, measured_rto: float,
                  policy: TolerancePolicy = TolerancePolicy.ADDITIVE,
                  factor: float = 0.5) -> TimingWindow:
    """
    Window for a retransmission whose ideal interval is ``current``.

    The upper bound is always twice the ideal interval; the lower bound
    depends on the tolerance policy and is never negative.
    """
    if policy == TolerancePolicy.ADDITIVE:
        lower = current - measured_rto
    else:
        lower = current * factor
    return TimingWindow(lower=max(0.0, lower), upper=2 * current)


@dataclass
class RetransmitProbe:
    """One checked retransmission."""
    index: int
    interval: float
    window: TimingWindow


@dataclass
class RetransmitReport:
    """What the oracle saw on a passing run."""
    seq_num: int
    measured_rto: float = 0.0
    probes: List[RetransmitProbe] = field(default_factory=list)

    def intervals(self) -> List[float]:
        return [probe.interval for probe in self.probes]

    def __str__(self) -> str:
        lines = [f"Retransmits of seq={self.seq_num}, measured RTO {self.measured_rto:.3f}s:"]
        for probe in self.probes:
            lines.append(f"  probe {probe.index}: {probe.interval:.3f}s in {probe.window}")
        return "\n".join(lines)


class RetransmissionOracle:
    """
    Runs the exponential-backoff check against one DUT.

    Args:
        dut: Remote control of the DUT's sockets
        open_connection: Builds a CLOSED TCPIPv4Connection to a DUT port
        config: Timing knobs; see ConformanceConfig
    """

    def __init__(self, dut: RemoteControlClient,
                 open_connection: Callable[[int], TCPIPv4Connection],
                 config: Optional[ConformanceConfig] = None):
        self.dut = dut
        self.open_connection = open_connection
        self.config = config or ConformanceConfig()

    def run(self) -> RetransmitReport:
        """
        Set up a connection, then measure.

        Raises:
            HandshakeTimeout: if the DUT never completed the handshake
            ExpectTimeout: if a transmission or retransmission never came
            TimingViolation: if a retransmission came too early
            RemoteControlError: if the DUT rejected a command
        """
        listen_fd, remote_port = self.dut.create_listener(
            socket.SOCK_STREAM, socket.IPPROTO_TCP, 1)
        try:
            conn = self.open_connection(remote_port)
            try:
                conn.handshake()
                accept_fd = self.dut.accept(listen_fd)
                try:
                    self.dut.set_sockopt_int(accept_fd, socket.IPPROTO_TCP, TCP_NODELAY, 1)
                    return self.measure(conn, accept_fd)
                finally:
                    self.dut.close(accept_fd)
            finally:
                conn.close()
        finally:
            self.dut.close(listen_fd)

    def measure(self, conn: TCPIPv4Connection, accept_fd: int) -> RetransmitReport:
        """Warm up, trigger one unacknowledged segment and time its retransmits."""
        config = self.config
        clock = conn.clock
        data = config.sample_data
        payload = Payload(data)

        # Warm-up round trip so the DUT can take an RTT sample
        self.dut.send(accept_fd, data)
        self._expect(conn, SegmentSpec(), payload, config.expect_timeout, "warm-up")
        conn.send(SegmentSpec(flags=TCPFlags.ACK))

        start_rto = config.start_rto
        first = clock.now()
        self.dut.send(accept_fd, data)
        seq = conn.remote_seq_num()
        spec = SegmentSpec(seq_num=seq)
        self._expect(conn, spec, payload, start_rto, "original transmission")

        report = RetransmitReport(seq_num=seq)
        current = start_rto
        previous = None
        for i in range(config.retransmits):
            if i == 0:
                deadline = 2 * current
                window = None
            else:
                window = timing_window(current, report.measured_rto,
                                       config.tolerance, config.tolerance_factor)
                deadline = window.upper

            segment = self._expect(conn, spec, payload, deadline, f"loop {i}")
            arrival = self._arrival(segment, clock)

            if i == 0:
                report.measured_rto = arrival - first
                current = config.backoff_multiplier * report.measured_rto
                previous = arrival
                logger.info(f"Measured RTO {report.measured_rto:.3f}s from first retransmit")
                continue

            interval = arrival - previous
            previous = arrival
            if interval < window.lower:
                raise TimingViolation(i, interval, window)

            report.probes.append(RetransmitProbe(index=i, interval=interval, window=window))
            logger.info(f"Retransmit {i} after {interval:.3f}s, window {window}")
            current *= config.backoff_multiplier

        return report

    @staticmethod
    def _arrival(segment: ParsedSegment, clock) -> float:
        if segment.timestamp is not None:
            return segment.timestamp
        return clock.now()

    @staticmethod
    def _expect(conn: TCPIPv4Connection, spec: SegmentSpec, payload: Payload,
                timeout: float, step: str) -> ParsedSegment:
        try:
            return conn.expect_data(spec, payload, timeout)
        except ExpectTimeout as e:
            raise ExpectTimeout(
                e.spec, e.payload, e.timeout, e.detail,
                context=f"expected a packet with payload {payload} ({step})",
            ) from e
