"""
Packet stream capture - frames off the wire, in arrival order.

A capture runs for the whole lifetime of a connection, independent of
which expectation is currently waiting. Each frame is handed out exactly
once; the expectation engine decides whether to keep or discard it.

Two sources are provided:

- QueueCapture: frames pushed in by code (tests, simulators, or a sniffer)
- SniffCapture: a scapy sniffer on a background thread feeding the queue
"""

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Optional

from scapy.all import conf, sniff
from scapy.layers.inet import IP

from .clock import Clock, MonotonicClock
from .errors import CaptureError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CapturedFrame:
    """Raw IPv4 bytes and the moment they were read off the wire."""
    data: bytes
    timestamp: float


class FrameSource:
    """
    Interface for anything that delivers captured frames.

    receive() blocks for at most ``timeout`` seconds and returns None when
    nothing arrived in that time.
    """

    def start(self):
        pass

    def stop(self):
        pass

    def receive(self, timeout: float) -> Optional[CapturedFrame]:
        raise NotImplementedError

    def drain(self) -> int:
        """Throw away everything captured so far; return how many frames."""
        count = 0
        while self.receive(0) is not None:
            count += 1
        return count

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()


class QueueCapture(FrameSource):
    """A thread-safe FIFO of frames fed by feed()."""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or MonotonicClock()
        self._frames: "queue.Queue[CapturedFrame]" = queue.Queue()
        self.frames_captured = 0

    def feed(self, data: bytes, timestamp: Optional[float] = None):
        if timestamp is None:
            timestamp = self.clock.now()
        self._frames.put(CapturedFrame(data=bytes(data), timestamp=timestamp))
        self.frames_captured += 1

    def receive(self, timeout: float) -> Optional[CapturedFrame]:
        try:
            if timeout <= 0:
                return self._frames.get_nowait()
            return self._frames.get(timeout=timeout)
        except queue.Empty:
            return None

    def pending(self) -> int:
        return self._frames.qsize()


class SniffCapture(QueueCapture):
    """
    Live capture with scapy.

    One listening socket is opened by start() and kept until stop(), so
    frames arriving between sniff() rounds wait in the kernel buffer
    instead of being lost. sniff() runs in short timed rounds over that
    socket on a daemon thread so that stop() takes effect even when the
    wire is idle. Only the IPv4 layer of each packet is kept; link-layer
    framing is dropped.

    A socket that cannot be opened fails start(); a sniffer thread that
    dies later fails the next receive() that finds the queue empty. Both
    raise CaptureError.
    """

    def __init__(self, iface: Optional[str], bpf: str,
                 clock: Optional[Clock] = None, sniff_timeout: float = 1.0):
        super().__init__(clock)
        self.iface = iface
        self.bpf = bpf
        self.sniff_timeout = sniff_timeout
        self.error: Optional[BaseException] = None
        self._stop = threading.Event()
        self._started = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._socket = None

    @classmethod
    def for_flow(cls, iface: Optional[str], local_ip: str, remote_ip: str,
                 clock: Optional[Clock] = None, sniff_timeout: float = 1.0) -> "SniffCapture":
        """Capture only TCP traffic between the peer and the DUT."""
        bpf = f"ip and tcp and host {local_ip} and host {remote_ip}"
        return cls(iface, bpf, clock=clock, sniff_timeout=sniff_timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self.error = None
        try:
            self._socket = conf.L2listen(iface=self.iface, filter=self.bpf)
        except Exception as e:
            raise CaptureError(f"Cannot capture on {self.iface or 'default interface'} "
                               f"with filter '{self.bpf}': {e}") from e

        self._stop.clear()
        self._started.clear()
        self._thread = threading.Thread(target=self._run, name="sniff", daemon=True)
        self._thread.start()
        # First frames must not slip past before the sniffer is reading
        self._started.wait(timeout=self.sniff_timeout)
        self._raise_if_failed()

    def stop(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.sniff_timeout * 2)
            self._thread = None
        if self._socket is not None:
            self._socket.close()
            self._socket = None

    def receive(self, timeout: float) -> Optional[CapturedFrame]:
        frame = super().receive(timeout)
        if frame is None:
            self._raise_if_failed()
        return frame

    def _raise_if_failed(self):
        if self.error is not None:
            raise CaptureError(f"Capture on {self.iface or 'default interface'} "
                               f"failed: {self.error}") from self.error

    def _on_packet(self, pkt):
        ip = pkt.getlayer(IP)
        if ip is None:
            return
        self.feed(bytes(ip))

    def _run(self):
        logger.info(f"Capture starting iface={self.iface} bpf={self.bpf}")
        try:
            while not self._stop.is_set():
                sniff(
                    opened_socket=self._socket,
                    prn=self._on_packet,
                    store=False,
                    timeout=self.sniff_timeout,
                    started_callback=self._started.set,
                )
        except Exception as e:
            self.error = e
            logger.error(f"Capture failed: {e}")
        finally:
            self._started.set()
            logger.info(f"Capture stopped after {self.frames_captured} frames")
