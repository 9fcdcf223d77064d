"""
Wire structures - the IPv4 header and the TCP segment it carries.

The synthetic peer never hands data to a TCP stack. It writes and reads
these two headers itself, so every field the DUT puts on the wire is
visible to the checks.

IPv4 Header Format (20 bytes, no options emitted):

     0                   1                   2                   3
     0 1 2 3 4 5 6 7 8 9 0 1 2 3 4 5 6 7 8 9 0 1 2 3 4 5 6 7 8 9 0 1
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    |Version|  IHL  |Type of Service|          Total Length         |
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    |         Identification        |Flags|      Fragment Offset    |
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    |  Time to Live |    Protocol   |         Header Checksum       |
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    |                       Source Address                          |
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    |                    Destination Address                        |
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+

The TCP header follows at offset IHL * 4. Its Data Offset field tells where
the payload begins, so options of any length can sit in between.
"""

import socket
import struct
from dataclasses import dataclass, field
from typing import Optional
from enum import IntFlag

from .errors import MalformedFrame


IPPROTO_TCP = 6


def internet_checksum(data: bytes) -> int:
    """
    One's complement of the one's complement sum of 16-bit words.

    Used by both the IPv4 header checksum and the TCP checksum. A buffer
    that already contains a correct checksum sums to zero.
    """
    if len(data) % 2:
        data += b'\x00'

    total = 0
    for i in range(0, len(data), 2):
        total += (data[i] << 8) + data[i + 1]
        total = (total & 0xFFFF) + (total >> 16)

    return ~total & 0xFFFF


class TCPFlags(IntFlag):
    """
    TCP control flags.

    The checks mostly care about four of them:

    - SYN: opens the connection and consumes one sequence number
    - ACK: the acknowledgment number is valid
    - FIN: sender is done and consumes one sequence number
    - RST: tears the connection down at once
    """
    NONE = 0x00
    FIN = 0x01
    SYN = 0x02
    RST = 0x04
    PSH = 0x08
    ACK = 0x10
    URG = 0x20
    ECE = 0x40
    CWR = 0x80

    def __str__(self) -> str:
        names = [flag.name for flag in (
            TCPFlags.FIN, TCPFlags.SYN, TCPFlags.RST, TCPFlags.PSH,
            TCPFlags.ACK, TCPFlags.URG, TCPFlags.ECE, TCPFlags.CWR,
        ) if self & flag]
        return "|".join(names) if names else "NONE"


@dataclass
class TCPOption:
    """
    A single TCP option.

    The DUT is free to put options on its SYN-ACK (MSS, window scale, SACK
    permitted, timestamps). We parse them so that decoding never trips over
    them, but matching ignores options entirely.
    """
    kind: int
    length: int = 0
    data: bytes = field(default_factory=bytes)

    END_OF_OPTIONS = 0
    NOP = 1
    MSS = 2
    WINDOW_SCALE = 3
    SACK_PERMITTED = 4
    SACK = 5
    TIMESTAMPS = 8

    def to_bytes(self) -> bytes:
        if self.kind in (TCPOption.END_OF_OPTIONS, TCPOption.NOP):
            return bytes([self.kind])
        return bytes([self.kind, 2 + len(self.data)]) + self.data

    @classmethod
    def mss(cls, value: int) -> "TCPOption":
        return cls(kind=cls.MSS, length=4, data=struct.pack("!H", value))


@dataclass
class IPv4Header:
    """The enclosing IPv4 header of a captured or constructed frame."""

    src_ip: str
    dst_ip: str
    ttl: int = 64
    protocol: int = IPPROTO_TCP
    identification: int = 0
    tos: int = 0
    flags_fragment: int = 0x4000  # Don't Fragment
    total_length: int = 0
    checksum: int = 0
    header_length: int = 20

    HEADER_FORMAT = "!BBHHHBBH4s4s"
    MIN_HEADER_SIZE = 20

    def __post_init__(self):
        if not 0 <= self.ttl <= 255:
            raise ValueError(f"Invalid TTL: {self.ttl}")
        if not 0 <= self.identification <= 0xFFFF:
            raise ValueError(f"Invalid IP identification: {self.identification}")

    def serialize(self, payload_length: int) -> bytes:
        """Pack the header for a payload of the given size, checksum included."""
        total_length = self.MIN_HEADER_SIZE + payload_length
        if total_length > 0xFFFF:
            raise ValueError(f"IPv4 datagram too large: {total_length} bytes")

        def pack(checksum: int) -> bytes:
            return struct.pack(
                self.HEADER_FORMAT,
                (4 << 4) | (self.MIN_HEADER_SIZE // 4),
                self.tos,
                total_length,
                self.identification,
                self.flags_fragment,
                self.ttl,
                self.protocol,
                checksum,
                socket.inet_aton(self.src_ip),
                socket.inet_aton(self.dst_ip),
            )

        return pack(internet_checksum(pack(0)))

    @classmethod
    def parse(cls, frame: bytes, verify_checksum: bool = True) -> "IPv4Header":
        """
        Parse the IPv4 header at the start of a frame.

        Raises:
            MalformedFrame: if the frame is too short for the header it
                declares, is not IPv4, or fails the header checksum
        """
        if len(frame) < cls.MIN_HEADER_SIZE:
            raise MalformedFrame(f"IPv4 header too short: {len(frame)} bytes")

        (
            version_ihl,
            tos,
            total_length,
            identification,
            flags_fragment,
            ttl,
            protocol,
            checksum,
            src,
            dst,
        ) = struct.unpack(cls.HEADER_FORMAT, frame[:cls.MIN_HEADER_SIZE])

        version = version_ihl >> 4
        if version != 4:
            raise MalformedFrame(f"Not an IPv4 frame: version {version}")

        header_length = (version_ihl & 0x0F) * 4
        if header_length < cls.MIN_HEADER_SIZE:
            raise MalformedFrame(f"Invalid IPv4 header length: {header_length}")
        if len(frame) < header_length:
            raise MalformedFrame(
                f"IPv4 header truncated: expected {header_length} bytes, got {len(frame)}"
            )
        if total_length < header_length or len(frame) < total_length:
            raise MalformedFrame(
                f"IPv4 total length {total_length} does not fit {len(frame)} bytes"
            )
        if verify_checksum and internet_checksum(frame[:header_length]) != 0:
            raise MalformedFrame(f"Bad IPv4 header checksum: {checksum:#06x}")

        return cls(
            src_ip=socket.inet_ntoa(src),
            dst_ip=socket.inet_ntoa(dst),
            ttl=ttl,
            protocol=protocol,
            identification=identification,
            tos=tos,
            flags_fragment=flags_fragment,
            total_length=total_length,
            checksum=checksum,
            header_length=header_length,
        )


@dataclass
class TCPSegment:
    """
    A TCP segment as it appears on the wire.

    The segment carries no IP addresses; those live in the IPv4 header and
    only enter the TCP checksum through the pseudo-header.
    """

    src_port: int
    dst_port: int
    seq_num: int
    ack_num: int
    flags: TCPFlags
    window: int

    payload: bytes = field(default_factory=bytes)
    urgent_ptr: int = 0
    options: list = field(default_factory=list)
    checksum: int = 0

    MIN_HEADER_SIZE = 20
    HEADER_FORMAT = "!HHIIBBHHH"

    def __post_init__(self):
        if not 0 <= self.src_port <= 65535:
            raise ValueError(f"Invalid source port: {self.src_port}")
        if not 0 <= self.dst_port <= 65535:
            raise ValueError(f"Invalid destination port: {self.dst_port}")
        if not 0 <= self.seq_num <= 0xFFFFFFFF:
            raise ValueError(f"Invalid sequence number: {self.seq_num}")
        if not 0 <= self.ack_num <= 0xFFFFFFFF:
            raise ValueError(f"Invalid acknowledgment number: {self.ack_num}")
        if not 0 <= self.window <= 65535:
            raise ValueError(f"Invalid window: {self.window}")

    @property
    def segment_length(self) -> int:
        """
        Sequence space consumed by this segment.

        SYN and FIN each take one sequence number on top of the payload.
        """
        length = len(self.payload)
        if self.flags & TCPFlags.SYN:
            length += 1
        if self.flags & TCPFlags.FIN:
            length += 1
        return length

    def _options_bytes(self) -> bytes:
        raw = b"".join(option.to_bytes() for option in self.options)
        return raw + bytes((4 - len(raw) % 4) % 4)

    def serialize(self, src_ip: str, dst_ip: str) -> bytes:
        """
        Serialize the segment, computing the checksum over the pseudo-header.

        Args:
            src_ip: Source address of the enclosing IPv4 header
            dst_ip: Destination address of the enclosing IPv4 header
        """
        options_bytes = self._options_bytes()
        data_offset = (self.MIN_HEADER_SIZE + len(options_bytes)) // 4

        def pack(checksum: int) -> bytes:
            return struct.pack(
                self.HEADER_FORMAT,
                self.src_port,
                self.dst_port,
                self.seq_num,
                self.ack_num,
                data_offset << 4,
                int(self.flags),
                self.window,
                checksum,
                self.urgent_ptr,
            ) + options_bytes + self.payload

        unsummed = pack(0)
        return pack(tcp_checksum(unsummed, src_ip, dst_ip))

    @classmethod
    def parse(cls, data: bytes) -> "TCPSegment":
        """
        Parse a TCP segment (header, options and payload).

        Raises:
            MalformedFrame: if the bytes cannot hold the declared header
        """
        if len(data) < cls.MIN_HEADER_SIZE:
            raise MalformedFrame(f"TCP segment too short: {len(data)} bytes")

        (
            src_port,
            dst_port,
            seq_num,
            ack_num,
            offset_reserved,
            flags,
            window,
            checksum,
            urgent_ptr,
        ) = struct.unpack(cls.HEADER_FORMAT, data[:cls.MIN_HEADER_SIZE])

        data_offset = (offset_reserved >> 4) * 4
        if data_offset < cls.MIN_HEADER_SIZE:
            raise MalformedFrame(f"Invalid TCP data offset: {data_offset}")
        if len(data) < data_offset:
            raise MalformedFrame(
                f"TCP segment truncated: expected {data_offset} header bytes"
            )

        return cls(
            src_port=src_port,
            dst_port=dst_port,
            seq_num=seq_num,
            ack_num=ack_num,
            flags=TCPFlags(flags),
            window=window,
            payload=data[data_offset:],
            urgent_ptr=urgent_ptr,
            options=cls._parse_options(data[cls.MIN_HEADER_SIZE:data_offset]),
            checksum=checksum,
        )

    @classmethod
    def _parse_options(cls, data: bytes) -> list:
        options = []
        i = 0

        while i < len(data):
            kind = data[i]
            if kind == TCPOption.END_OF_OPTIONS:
                options.append(TCPOption(kind=kind))
                break
            if kind == TCPOption.NOP:
                options.append(TCPOption(kind=kind))
                i += 1
                continue

            if i + 1 >= len(data):
                raise MalformedFrame(f"TCP option {kind} missing its length")
            length = data[i + 1]
            if length < 2 or i + length > len(data):
                raise MalformedFrame(f"TCP option {kind} has bad length {length}")
            options.append(TCPOption(kind=kind, length=length, data=data[i + 2:i + length]))
            i += length

        return options

    def __str__(self) -> str:
        return (
            f"TCP {self.src_port} -> {self.dst_port} "
            f"[{self.flags}] "
            f"seq={self.seq_num} ack={self.ack_num} "
            f"win={self.window} len={len(self.payload)}"
        )


def tcp_checksum(segment: bytes, src_ip: str, dst_ip: str) -> int:
    """Checksum of a TCP segment, including the IPv4 pseudo-header."""
    pseudo_header = struct.pack(
        "!4s4sBBH",
        socket.inet_aton(src_ip),
        socket.inet_aton(dst_ip),
        0,
        IPPROTO_TCP,
        len(segment),
    )
    return internet_checksum(pseudo_header + segment)


@dataclass
class ParsedSegment:
    """A decoded frame: IPv4 header, TCP segment and when it was captured."""

    ip: IPv4Header
    tcp: TCPSegment
    timestamp: Optional[float] = None

    @property
    def payload(self) -> bytes:
        return self.tcp.payload

    def __str__(self) -> str:
        return (
            f"{self.ip.src_ip}:{self.tcp.src_port} -> "
            f"{self.ip.dst_ip}:{self.tcp.dst_port} "
            f"[{self.tcp.flags}] seq={self.tcp.seq_num} ack={self.tcp.ack_num} "
            f"win={self.tcp.window} len={len(self.tcp.payload)}"
        )
