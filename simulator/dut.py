"""
A simulated device under test.

SimulatedDUT plays both roles a real DUT has: it answers remote-control
commands (RemoteControlClient) and it runs a small TCP responder on the
simulated wire. The responder does just what the checks exercise:

- passive open: SYN -> SYN-ACK -> ACK, then the connection can be accepted
- send(): one segment per call, pushed immediately (as with TCP_NODELAY)
- retransmission of the oldest unacknowledged segment on RTO expiry,
  growing the RTO by ``backoff`` each time
- RTT sampling from ACKs of segments sent once (Karn's algorithm)
- RST tears the connection down

Misbehaving stacks are modelled with the constructor knobs:
``respond_to_syn=False`` never completes a handshake, ``backoff=1.0``
retransmits at a fixed interval, ``max_retransmits`` gives up early.
"""

import errno
import itertools
import logging
import secrets
import socket
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from packetimpact.codec import build_frame, decode
from packetimpact.config import ConformanceConfig
from packetimpact.connection import TCPIPv4Connection
from packetimpact.errors import MalformedFrame, RemoteControlError
from packetimpact.fields import SegmentSpec
from packetimpact.peer import seq_add, seq_after
from packetimpact.remote import RemoteControlClient
from packetimpact.segment import TCPFlags, TCPOption

from .network import SimulatedWire
from .rto import RTOEstimator

logger = logging.getLogger(__name__)


@dataclass
class OutstandingSegment:
    """Data sent but not yet acknowledged."""
    seq: int
    data: bytes
    sent_at: float
    retransmitted: bool = False


@dataclass
class SimConnection:
    """TCP control block of one connection on the simulated DUT."""
    local_port: int
    remote_ip: str
    remote_port: int
    iss: int
    rcv_nxt: int
    snd_una: int
    snd_nxt: int
    established: bool = False
    closed: bool = False
    retransmits: int = 0
    outstanding: List[OutstandingSegment] = field(default_factory=list)
    timer_generation: int = 0
    rto: RTOEstimator = field(default_factory=RTOEstimator)


@dataclass
class SimSocket:
    """What a DUT handle refers to: a listener or an accepted connection."""
    kind: str  # listener|connection
    port: int
    backlog: int = 1
    pending: List[SimConnection] = field(default_factory=list)
    connection: Optional[SimConnection] = None
    sockopts: Dict[Tuple[int, int], bytes] = field(default_factory=dict)


class SimulatedDUT(RemoteControlClient):
    """
    Remote-controlled TCP endpoint on a SimulatedWire.

    Args:
        wire: The wire shared with the synthetic peer
        ip: The DUT's address
        latency: One-way delay from the DUT to the peer
        respond_to_syn: Whether SYNs are answered at all
        backoff: RTO multiplier applied on every expiry
        initial_rto: RTO before any RTT sample
        max_retransmits: Stop retransmitting after this many (None: never)
    """

    FIRST_PORT = 40000
    WINDOW = 65535

    def __init__(self, wire: SimulatedWire, ip: str = "192.168.0.2",
                 latency: float = 0.01, respond_to_syn: bool = True,
                 backoff: float = 2.0, initial_rto: float = 1.0,
                 max_retransmits: Optional[int] = None, isn: Optional[int] = None):
        self.wire = wire
        self.ip = ip
        self.latency = latency
        self.respond_to_syn = respond_to_syn
        self.backoff = backoff
        self.initial_rto = initial_rto
        self.max_retransmits = max_retransmits
        self._isn = isn
        self._sockets: Dict[int, SimSocket] = {}
        self._connections: Dict[Tuple[int, str, int], SimConnection] = {}
        self._handles = itertools.count(3)
        self._ports = itertools.count(self.FIRST_PORT)
        self._ip_id = itertools.count(1)
        wire.attach(self)

    @property
    def now(self) -> float:
        return self.wire.clock.now()

    # Remote control ---------------------------------------------------

    def _lookup(self, operation: str, handle: int, kind: Optional[str] = None) -> SimSocket:
        sock = self._sockets.get(handle)
        if sock is None or (kind is not None and sock.kind != kind):
            raise RemoteControlError(operation, errno.EBADF, f"bad handle {handle}")
        return sock

    def create_listener(self, sock_type: int = socket.SOCK_STREAM,
                        protocol: int = socket.IPPROTO_TCP, backlog: int = 1,
                        family: int = socket.AF_INET) -> Tuple[int, int]:
        if family != socket.AF_INET:
            raise RemoteControlError("socket", errno.EAFNOSUPPORT, f"family {family}")
        if sock_type != socket.SOCK_STREAM or protocol not in (0, socket.IPPROTO_TCP):
            raise RemoteControlError("socket", errno.EPROTONOSUPPORT,
                                     f"type {sock_type} protocol {protocol}")
        if backlog < 0:
            raise RemoteControlError("listen", errno.EINVAL, f"backlog {backlog}")

        handle = next(self._handles)
        port = next(self._ports)
        self._sockets[handle] = SimSocket(kind="listener", port=port, backlog=max(1, backlog))
        logger.debug(f"DUT listening on {self.ip}:{port} as handle {handle}")
        return handle, port

    def accept(self, handle: int) -> int:
        listener = self._lookup("accept", handle, "listener")
        if not listener.pending:
            raise RemoteControlError("accept", errno.EAGAIN, "no established connection")
        conn = listener.pending.pop(0)
        accepted = next(self._handles)
        self._sockets[accepted] = SimSocket(kind="connection", port=conn.local_port,
                                            connection=conn)
        return accepted

    def send(self, handle: int, data: bytes, flags: int = 0) -> int:
        sock = self._lookup("send", handle, "connection")
        conn = sock.connection
        if conn.closed:
            raise RemoteControlError("send", errno.ECONNRESET, "connection reset by peer")
        if not data:
            return 0

        segment = OutstandingSegment(seq=conn.snd_nxt, data=bytes(data), sent_at=self.now)
        conn.outstanding.append(segment)
        conn.snd_nxt = seq_add(conn.snd_nxt, len(data))
        self._transmit(conn, segment.seq, segment.data, TCPFlags.ACK | TCPFlags.PSH)
        if len(conn.outstanding) == 1:
            self._arm_timer(conn)
        return len(data)

    def set_sockopt(self, handle: int, level: int, name: int, value: bytes):
        sock = self._lookup("setsockopt", handle)
        sock.sockopts[(level, name)] = bytes(value)

    def close(self, handle: int):
        sock = self._sockets.pop(handle, None)
        if sock is None:
            raise RemoteControlError("close", errno.EBADF, f"bad handle {handle}")
        if sock.connection is not None:
            self._drop(sock.connection)

    def tear_down(self):
        for handle in list(self._sockets):
            self.close(handle)

    def getsockopt(self, handle: int, level: int, name: int) -> Optional[bytes]:
        return self._lookup("getsockopt", handle).sockopts.get((level, name))

    # Wire side --------------------------------------------------------

    def handle_frame(self, frame: bytes):
        try:
            parsed = decode(frame, timestamp=self.now)
        except MalformedFrame as e:
            logger.debug(f"DUT dropped malformed frame: {e}")
            return
        if parsed.ip.dst_ip != self.ip:
            return

        tcp = parsed.tcp
        key = (tcp.dst_port, parsed.ip.src_ip, tcp.src_port)
        conn = self._connections.get(key)

        if tcp.flags & TCPFlags.RST:
            if conn is not None:
                self._drop(conn)
            return

        if tcp.flags & TCPFlags.SYN:
            if conn is None:
                self._on_syn(parsed)
            return

        if conn is None or not tcp.flags & TCPFlags.ACK:
            return
        self._on_ack(conn, tcp.ack_num)

    def _listener_for(self, port: int) -> Optional[SimSocket]:
        for sock in self._sockets.values():
            if sock.kind == "listener" and sock.port == port:
                return sock
        return None

    def _on_syn(self, parsed):
        tcp = parsed.tcp
        if not self.respond_to_syn or self._listener_for(tcp.dst_port) is None:
            logger.debug(f"DUT ignoring SYN to port {tcp.dst_port}")
            return

        iss = self._isn if self._isn is not None else secrets.randbits(32)
        conn = SimConnection(
            local_port=tcp.dst_port,
            remote_ip=parsed.ip.src_ip,
            remote_port=tcp.src_port,
            iss=iss,
            rcv_nxt=seq_add(tcp.seq_num, 1),
            snd_una=seq_add(iss, 1),
            snd_nxt=seq_add(iss, 1),
            rto=RTOEstimator(initial_rto=self.initial_rto),
        )
        self._connections[(conn.local_port, conn.remote_ip, conn.remote_port)] = conn
        self._transmit(conn, iss, b"", TCPFlags.SYN | TCPFlags.ACK,
                       options=[TCPOption.mss(1460)])

    def _on_ack(self, conn: SimConnection, ack: int):
        if not conn.established:
            if ack != conn.snd_una:
                return
            conn.established = True
            listener = self._listener_for(conn.local_port)
            if listener is not None and len(listener.pending) < listener.backlog:
                listener.pending.append(conn)
            logger.debug(f"DUT established {conn.remote_ip}:{conn.remote_port}")
            return

        if not seq_after(ack, conn.snd_una) or seq_after(ack, conn.snd_nxt):
            return

        conn.snd_una = ack
        while conn.outstanding and not seq_after(
                seq_add(conn.outstanding[0].seq, len(conn.outstanding[0].data)), ack):
            acked = conn.outstanding.pop(0)
            conn.rto.update_rtt(self.now - acked.sent_at, acked.retransmitted)
        conn.rto.on_ack(True)
        conn.retransmits = 0

        if conn.outstanding:
            self._arm_timer(conn)
        else:
            conn.timer_generation += 1

    # Retransmission timer ---------------------------------------------

    def _arm_timer(self, conn: SimConnection):
        conn.timer_generation += 1
        generation = conn.timer_generation
        self.wire.call_at(self.now + conn.rto.rto,
                          lambda: self._on_timeout(conn, generation))

    def _on_timeout(self, conn: SimConnection, generation: int):
        if conn.closed or generation != conn.timer_generation or not conn.outstanding:
            return
        if self.max_retransmits is not None and conn.retransmits >= self.max_retransmits:
            logger.debug(f"DUT giving up after {conn.retransmits} retransmits")
            return

        oldest = conn.outstanding[0]
        oldest.retransmitted = True
        conn.retransmits += 1
        self._transmit(conn, oldest.seq, oldest.data, TCPFlags.ACK | TCPFlags.PSH)
        conn.rto.backoff(self.backoff)
        logger.debug(f"DUT retransmit {conn.retransmits} seq={oldest.seq}, next {conn.rto}")
        self._arm_timer(conn)

    def _transmit(self, conn: SimConnection, seq: int, data: bytes, flags: TCPFlags,
                  options: Optional[list] = None):
        spec = SegmentSpec(
            src_ip=self.ip,
            dst_ip=conn.remote_ip,
            src_port=conn.local_port,
            dst_port=conn.remote_port,
            seq_num=seq,
            ack_num=conn.rcv_nxt,
            flags=flags,
            window=self.WINDOW,
        )
        frame = build_frame(spec, data, options, identification=next(self._ip_id) & 0xFFFF)
        self.wire.schedule(frame, self.now + self.latency)

    def _drop(self, conn: SimConnection):
        conn.closed = True
        conn.timer_generation += 1
        self._connections.pop((conn.local_port, conn.remote_ip, conn.remote_port), None)


def simulated_bench(config: Optional[ConformanceConfig] = None, **dut_options):
    """
    Wire up a SimulatedDUT and a connection factory for the oracle.

    Returns:
        Tuple of (dut, open_connection); ``dut.wire`` is the shared wire
    """
    config = config or ConformanceConfig()
    wire = SimulatedWire()
    dut = SimulatedDUT(wire, ip=config.remote_ip, **dut_options)

    def open_connection(remote_port: int) -> TCPIPv4Connection:
        return TCPIPv4Connection.open(wire, wire, config, remote_port=remote_port,
                                      clock=wire.clock)

    return dut, open_connection
