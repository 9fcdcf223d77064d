"""
Frame codec - SegmentSpec <-> raw IPv4/TCP bytes.

Pure functions only. encode() asks the peer for defaults but never changes
it; decode() turns bytes into typed headers or raises MalformedFrame.
"""

from typing import Optional

from .errors import MalformedFrame
from .fields import SegmentSpec
from .peer import SyntheticPeer
from .segment import IPPROTO_TCP, IPv4Header, ParsedSegment, TCPFlags, TCPSegment, tcp_checksum


_REQUIRED = ("src_ip", "dst_ip", "src_port", "dst_port", "seq_num", "ack_num")


def build_frame(spec: SegmentSpec, payload: bytes = b"", options: Optional[list] = None,
                identification: int = 0) -> bytes:
    """
    Serialize a fully specified segment.

    Raises:
        ValueError: if an address, port or sequence field is unset
    """
    missing = [name for name in _REQUIRED if getattr(spec, name) is None]
    if missing:
        raise ValueError(f"Cannot build a frame without {', '.join(missing)}")

    segment = TCPSegment(
        src_port=spec.src_port,
        dst_port=spec.dst_port,
        seq_num=spec.seq_num,
        ack_num=spec.ack_num,
        flags=TCPFlags(spec.flags or 0),
        window=spec.window if spec.window is not None else 0,
        payload=payload,
        urgent_ptr=spec.urgent_ptr or 0,
        options=options or [],
    )
    tcp_bytes = segment.serialize(spec.src_ip, spec.dst_ip)

    header = IPv4Header(
        src_ip=spec.src_ip,
        dst_ip=spec.dst_ip,
        ttl=spec.ttl if spec.ttl is not None else 64,
        identification=identification,
    )
    return header.serialize(len(tcp_bytes)) + tcp_bytes


def encode(peer: SyntheticPeer, spec: Optional[SegmentSpec] = None,
           payload: bytes = b"", options: Optional[list] = None) -> bytes:
    """Serialize ``spec`` with every unset field filled from ``peer``."""
    return build_frame(peer.next_outgoing(spec), payload, options)


def decode(frame: bytes, verify_checksums: bool = True,
           timestamp: Optional[float] = None) -> ParsedSegment:
    """
    Parse a raw IPv4 frame carrying TCP.

    Bytes past the IPv4 total length (link-layer padding) are ignored.

    Raises:
        MalformedFrame: on truncation, a non-TCP protocol or, when
            ``verify_checksums`` is set, a bad IPv4 or TCP checksum
    """
    ip = IPv4Header.parse(frame, verify_checksum=verify_checksums)
    if ip.protocol != IPPROTO_TCP:
        raise MalformedFrame(f"Not a TCP frame: protocol {ip.protocol}")

    tcp_bytes = frame[ip.header_length:ip.total_length]
    tcp = TCPSegment.parse(tcp_bytes)
    if verify_checksums and tcp_checksum(tcp_bytes, ip.src_ip, ip.dst_ip) != 0:
        raise MalformedFrame(f"Bad TCP checksum: {tcp.checksum:#06x}")

    return ParsedSegment(ip=ip, tcp=tcp, timestamp=timestamp)
