"""
Tests for TCPIPv4Connection against the simulated DUT and a stubbed live wire.
"""

import struct

import pytest
from packetimpact.codec import build_frame, decode
from packetimpact.config import ConformanceConfig
from packetimpact.connection import live_bench
from packetimpact.errors import CaptureError, HandshakeTimeout
from packetimpact.fields import Payload, SegmentSpec
from packetimpact.segment import TCPFlags, TCPOption
from packetimpact.states import PeerPhase
from simulator import simulated_bench


PEER_ISN = 1000
DUT_ISN = 5000


def bench(**dut_options):
    config = ConformanceConfig(local_port=5000)
    dut, open_connection = simulated_bench(config, isn=DUT_ISN, **dut_options)
    listen_fd, port = dut.create_listener()
    return dut, open_connection, listen_fd, port


def connect(open_connection, port):
    conn = open_connection(port)
    conn.peer.local_seq = PEER_ISN
    return conn


class TestHandshake:
    """Test the active open."""

    def test_establishes(self):
        """SYN, SYN-ACK and ACK leave both ends connected."""
        dut, open_connection, listen_fd, port = bench()
        conn = connect(open_connection, port)

        reply = conn.handshake()

        assert reply.tcp.flags == TCPFlags.SYN | TCPFlags.ACK
        assert reply.tcp.ack_num == PEER_ISN + 1
        assert conn.phase == PeerPhase.ESTABLISHED
        assert conn.local_seq_num() == PEER_ISN + 1
        assert conn.remote_seq_num() == DUT_ISN + 1
        assert dut.accept(listen_fd) > listen_fd

    def test_frames_on_the_wire(self):
        """The SYN carries MSS and a zero ack; the ACK acknowledges the DUT's ISN."""
        dut, open_connection, _, port = bench()
        conn = connect(open_connection, port)
        conn.handshake()

        syn, ack = [decode(frame) for frame in dut.wire.injected]

        assert syn.tcp.flags == TCPFlags.SYN
        assert syn.tcp.seq_num == PEER_ISN
        assert syn.tcp.ack_num == 0
        assert syn.tcp.dst_port == port
        assert syn.ip.src_ip == "192.168.0.1"
        mss = next(o for o in syn.tcp.options if o.kind == TCPOption.MSS)
        assert struct.unpack("!H", mss.data)[0] == 1460

        assert ack.tcp.flags == TCPFlags.ACK
        assert ack.tcp.seq_num == PEER_ISN + 1
        assert ack.tcp.ack_num == DUT_ISN + 1
        assert ack.tcp.window == 30000

    def test_timeout_leaves_closed(self):
        """A silent DUT fails the handshake and the peer goes back to CLOSED."""
        dut, open_connection, _, port = bench(respond_to_syn=False)
        conn = connect(open_connection, port)

        with pytest.raises(HandshakeTimeout) as excinfo:
            conn.handshake(timeout=0.5)

        assert conn.phase == PeerPhase.CLOSED
        assert conn.remote_seq_num() is None
        assert conn.clock.now() == pytest.approx(0.5)
        assert "SYN|ACK" in str(excinfo.value)

    def test_no_listener(self):
        """A SYN to a port nobody listens on goes unanswered."""
        dut, open_connection, listen_fd, port = bench()
        dut.close(listen_fd)
        conn = connect(open_connection, port)

        with pytest.raises(HandshakeTimeout):
            conn.handshake()

    def test_only_from_closed(self):
        """An established connection cannot handshake again."""
        _, open_connection, _, port = bench()
        conn = connect(open_connection, port)
        conn.handshake()

        with pytest.raises(RuntimeError):
            conn.handshake()


class TestData:
    """Test data exchange after the handshake."""

    def test_expect_next_data(self):
        """Data from the DUT is found at the tracked sequence number."""
        dut, open_connection, listen_fd, port = bench()
        conn = connect(open_connection, port)
        conn.handshake()
        accept_fd = dut.accept(listen_fd)

        dut.send(accept_fd, b"hello")
        segment = conn.expect_next_data(Payload(b"hello"))

        assert segment.tcp.seq_num == DUT_ISN + 1
        assert conn.remote_seq_num() == DUT_ISN + 6

        dut.send(accept_fd, b"world")
        assert conn.expect_next_data(Payload(b"world")).tcp.seq_num == DUT_ISN + 6

    def test_expect_next_data_before_handshake(self):
        """Without a known remote sequence there is no next data."""
        _, open_connection, _, port = bench()
        with pytest.raises(RuntimeError):
            connect(open_connection, port).expect_next_data(Payload(b"x"))

    def test_send_advances(self):
        """Sending data moves our sequence number past it."""
        _, open_connection, _, port = bench()
        conn = connect(open_connection, port)
        conn.handshake()

        filled = conn.send(SegmentSpec(flags=TCPFlags.ACK | TCPFlags.PSH), payload=b"12345")

        assert filled.seq_num == PEER_ISN + 1
        assert conn.local_seq_num() == PEER_ISN + 6
        assert conn.frames_sent == 3

    def test_expect_scoped_to_flow(self):
        """Expectations only see the connection's own flow."""
        dut, open_connection, listen_fd, port = bench()
        conn = connect(open_connection, port)
        conn.handshake()
        accept_fd = dut.accept(listen_fd)

        stray = SegmentSpec(src_ip="192.168.0.2", dst_ip="192.168.0.1", src_port=port + 1,
                            dst_port=5000, seq_num=DUT_ISN + 1, ack_num=PEER_ISN + 1,
                            flags=TCPFlags.ACK | TCPFlags.PSH, window=65535)
        dut.wire.schedule(build_frame(stray, b"hello"), conn.clock.now())
        dut.send(accept_fd, b"hello")

        segment = conn.expect_data(SegmentSpec(), Payload(b"hello"))

        assert segment.tcp.src_port == port
        assert conn.engine.frames_discarded == 1


class TestClose:
    """Test tearing the connection down."""

    def test_close_sends_rst(self):
        """close() resets an open connection."""
        dut, open_connection, _, port = bench()
        conn = connect(open_connection, port)
        conn.handshake()

        conn.close()

        last = decode(dut.wire.injected[-1])
        assert last.tcp.flags == TCPFlags.RST | TCPFlags.ACK
        assert conn.phase == PeerPhase.CLOSED

    def test_close_when_closed(self):
        """Closing a connection that never opened sends nothing."""
        dut, open_connection, _, port = bench()
        with connect(open_connection, port):
            pass
        assert dut.wire.injected == []


def live_config(**overrides):
    options = dict(interface="eth9", local_port=5000, handshake_timeout=0.2,
                   expect_timeout=0.2, sniff_timeout=0.05)
    options.update(overrides)
    return ConformanceConfig(**options)


class TestLiveBench:
    """Test assembling connections on a scapy capture and injector."""

    def test_wire_started_on_interface(self, listen_sockets, fake_sniff, l3_sockets):
        """The sniffer runs on the configured interface before anything is sent."""
        conn = live_bench(live_config())(8080)
        try:
            assert conn.engine.source.running
            assert listen_sockets[0].iface == "eth9"
            assert "host 192.168.0.1" in listen_sockets[0].filter
            assert "host 192.168.0.2" in listen_sockets[0].filter
            assert conn.peer.remote_port == 8080
        finally:
            conn.close()

    def test_handshake_and_close(self, monkeypatch, listen_sockets, fake_sniff, l3_sockets):
        """A SYN-ACK captured off the wire completes the handshake; close releases the wire."""
        conn = live_bench(live_config())(8080)
        conn.peer.local_seq = PEER_ISN
        inject = conn.injector.send

        def send_and_answer(frame):
            inject(frame)
            if decode(frame).tcp.flags == TCPFlags.SYN:
                reply = SegmentSpec(src_ip="192.168.0.2", dst_ip="192.168.0.1", src_port=8080,
                                    dst_port=5000, seq_num=DUT_ISN, ack_num=PEER_ISN + 1,
                                    flags=TCPFlags.SYN | TCPFlags.ACK, window=65535)
                conn.engine.source.feed(build_frame(reply))

        monkeypatch.setattr(conn.injector, "send", send_and_answer)
        try:
            conn.handshake()
            assert conn.phase == PeerPhase.ESTABLISHED
            assert conn.remote_seq_num() == DUT_ISN + 1
        finally:
            conn.close()

        flags = [decode(frame).tcp.flags for frame in l3_sockets[0].sent]
        assert flags == [TCPFlags.SYN, TCPFlags.ACK, TCPFlags.RST | TCPFlags.ACK]
        assert not conn.engine.source.running
        assert listen_sockets[0].closed
        assert l3_sockets[0].closes == 1

    def test_close_after_handshake_timeout(self, listen_sockets, fake_sniff, l3_sockets):
        """A failed handshake still releases the capture and the injector."""
        conn = live_bench(live_config())(8080)

        with pytest.raises(HandshakeTimeout):
            conn.handshake()
        conn.close()

        assert [decode(frame).tcp.flags for frame in l3_sockets[0].sent] == [TCPFlags.SYN]
        assert not conn.engine.source.running
        assert listen_sockets[0].closed
        assert l3_sockets[0].closes == 1

    def test_capture_failure(self, monkeypatch, fake_sniff, l3_sockets):
        """An interface that cannot be captured on fails before any frame is sent."""
        import packetimpact.capture

        def refuse(iface=None, filter=None):
            raise PermissionError("Operation not permitted")

        monkeypatch.setattr(packetimpact.capture.conf, "L2listen", refuse)

        with pytest.raises(CaptureError):
            live_bench(live_config())(8080)
        assert l3_sockets == []
