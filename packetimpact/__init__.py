"""
packetimpact - packet-level conformance checks for TCP implementations.

A synthetic peer speaks raw IPv4/TCP to a device under test (DUT) whose
sockets are driven through a remote-control client. The package provides
the frame codec, the peer's bookkeeping, a capture of the wire, an engine
that waits for frames matching a pattern, and an oracle that checks the
DUT's retransmission timer backs off exponentially.
"""

from .segment import TCPSegment, TCPFlags, TCPOption, IPv4Header, ParsedSegment
from .fields import SegmentSpec, Payload
from .codec import encode, decode, build_frame
from .states import PeerPhase
from .peer import SyntheticPeer
from .clock import Clock, MonotonicClock, ManualClock
from .capture import CapturedFrame, FrameSource, QueueCapture, SniffCapture
from .injector import FrameInjector, ScapyInjector
from .engine import ExpectationEngine
from .connection import TCPIPv4Connection, live_bench
from .remote import RemoteControlClient, LocalSocketClient
from .config import ConformanceConfig, TolerancePolicy
from .oracle import RetransmissionOracle, RetransmitReport, TimingWindow, timing_window
from .errors import (
    ConformanceError, MalformedFrame, ExpectTimeout, HandshakeTimeout, CaptureError,
    RemoteControlError, TimingViolation,
)

__version__ = "1.0.0"

__all__ = [
    "TCPSegment",
    "TCPFlags",
    "TCPOption",
    "IPv4Header",
    "ParsedSegment",
    "SegmentSpec",
    "Payload",
    "encode",
    "decode",
    "build_frame",
    "PeerPhase",
    "SyntheticPeer",
    "Clock",
    "MonotonicClock",
    "ManualClock",
    "CapturedFrame",
    "FrameSource",
    "QueueCapture",
    "SniffCapture",
    "FrameInjector",
    "ScapyInjector",
    "ExpectationEngine",
    "TCPIPv4Connection",
    "live_bench",
    "RemoteControlClient",
    "LocalSocketClient",
    "ConformanceConfig",
    "TolerancePolicy",
    "RetransmissionOracle",
    "RetransmitReport",
    "TimingWindow",
    "timing_window",
    "ConformanceError",
    "MalformedFrame",
    "ExpectTimeout",
    "HandshakeTimeout",
    "CaptureError",
    "RemoteControlError",
    "TimingViolation",
]
