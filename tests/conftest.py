"""
Stand-ins for scapy's capture and injection sockets.

Live capture needs raw-socket privileges and a real interface, so these
fixtures replace the scapy entry points packetimpact calls with recorders.
"""

import time

import pytest
import packetimpact.capture
import packetimpact.injector


class RecordingListenSocket:
    """Replaces conf.L2listen: remembers how it was opened and closed."""

    def __init__(self, iface=None, filter=None):
        self.iface = iface
        self.filter = filter
        self.closed = False

    def close(self):
        self.closed = True


class RecordingL3Socket:
    """Replaces conf.L3socket: keeps every packet handed to send()."""

    def __init__(self, iface=None):
        self.iface = iface
        self.sent = []
        self.closes = 0

    def send(self, pkt):
        self.sent.append(bytes(pkt))

    def close(self):
        self.closes += 1


class FakeSniff:
    """
    Replaces scapy's sniff(): one call is one timed round.

    ``packets`` are handed to prn on the first round; ``fail`` is raised
    from a round once ``fail_after`` is set.
    """

    def __init__(self):
        self.rounds = []
        self.packets = []
        self.fail = None
        self.fail_after = None

    def __call__(self, opened_socket=None, prn=None, store=True, timeout=None,
                 started_callback=None, **kwargs):
        self.rounds.append(opened_socket)
        if started_callback is not None:
            started_callback()
        while self.packets:
            prn(self.packets.pop(0))
        if self.fail is not None and (self.fail_after is None or self.fail_after.is_set()):
            raise self.fail
        time.sleep(0.005)


@pytest.fixture
def listen_sockets(monkeypatch):
    """Every listen socket opened through conf.L2listen."""
    opened = []

    def open_listen(iface=None, filter=None):
        sock = RecordingListenSocket(iface, filter)
        opened.append(sock)
        return sock

    monkeypatch.setattr(packetimpact.capture.conf, "L2listen", open_listen)
    return opened


@pytest.fixture
def fake_sniff(monkeypatch):
    sniffer = FakeSniff()
    monkeypatch.setattr(packetimpact.capture, "sniff", sniffer)
    return sniffer


@pytest.fixture
def l3_sockets(monkeypatch):
    """Every injection socket opened through conf.L3socket."""
    opened = []

    def open_l3(iface=None):
        sock = RecordingL3Socket(iface)
        opened.append(sock)
        return sock

    monkeypatch.setattr(packetimpact.injector.conf, "L3socket", open_l3)
    return opened
