"""
Segment specifications - sparse patterns over IPv4/TCP header fields.

A SegmentSpec is used in two directions:

1. Building: the peer fills every unset field from its own state and the
   result is serialized.
2. Matching: every field that is set must equal the captured value; unset
   fields match anything.

Payload expectations are kept separate because they constrain the data, not
the header, and are optional on every expectation.
"""

from dataclasses import dataclass, fields, replace
from typing import Optional

from .segment import ParsedSegment, TCPFlags


@dataclass(frozen=True)
class SegmentSpec:
    """A partial IPv4/TCP header. None means "any value"."""

    src_ip: Optional[str] = None
    dst_ip: Optional[str] = None
    ttl: Optional[int] = None
    src_port: Optional[int] = None
    dst_port: Optional[int] = None
    seq_num: Optional[int] = None
    ack_num: Optional[int] = None
    flags: Optional[TCPFlags] = None
    window: Optional[int] = None
    urgent_ptr: Optional[int] = None

    _IP_FIELDS = ("src_ip", "dst_ip", "ttl")

    def set_fields(self) -> dict:
        """The constrained fields and their values."""
        return {f.name: getattr(self, f.name) for f in fields(self)
                if getattr(self, f.name) is not None}

    def is_empty(self) -> bool:
        return not self.set_fields()

    def merged(self, other: Optional["SegmentSpec"]) -> "SegmentSpec":
        """Return a copy with every field set in ``other`` overriding ours."""
        if other is None:
            return self
        return replace(self, **other.set_fields())

    def matches(self, parsed: ParsedSegment) -> bool:
        return not self.mismatches(parsed)

    def mismatches(self, parsed: ParsedSegment) -> list:
        """Names of the constrained fields the segment gets wrong."""
        wrong = []
        for name, expected in self.set_fields().items():
            layer = parsed.ip if name in self._IP_FIELDS else parsed.tcp
            actual = getattr(layer, name)
            if name == "flags":
                actual, expected = int(actual), int(expected)
            if actual != expected:
                wrong.append(name)
        return wrong

    def __str__(self) -> str:
        parts = []
        for name, value in self.set_fields().items():
            if name == "flags":
                value = TCPFlags(value)
            parts.append(f"{name}={value}")
        return "SegmentSpec(" + ", ".join(parts) + ")"


@dataclass(frozen=True)
class Payload:
    """Exact expectation over a segment's application data."""

    data: bytes

    def matches(self, payload: bytes) -> bool:
        return payload == self.data

    def __len__(self) -> int:
        return len(self.data)

    def __str__(self) -> str:
        return f"Payload({self.data!r})"
