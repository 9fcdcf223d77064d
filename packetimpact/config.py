"""Configuration for a conformance run."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class TolerancePolicy(Enum):
    """
    How far below the ideal backoff interval a retransmission may arrive.

    ADDITIVE:       lower bound = current - measured RTO
    MULTIPLICATIVE: lower bound = current * tolerance_factor
    """
    ADDITIVE = "additive"
    MULTIPLICATIVE = "multiplicative"


@dataclass
class ConformanceConfig:
    """Addresses, deadlines and timing knobs for the synthetic peer."""

    # Addressing
    local_ip: str = "192.168.0.1"
    remote_ip: str = "192.168.0.2"
    interface: Optional[str] = None
    local_port: Optional[int] = None  # random when unset

    # Window advertised by the synthetic peer
    window: int = 30000

    # Deadlines (seconds)
    handshake_timeout: float = 1.0
    expect_timeout: float = 1.0

    # Retransmission check
    start_rto: float = 1.0
    retransmits: int = 5
    backoff_multiplier: float = 2.0
    tolerance: TolerancePolicy = TolerancePolicy.ADDITIVE
    tolerance_factor: float = 0.5
    sample_data: bytes = b"Sample Data"

    # Wire
    verify_checksums: bool = True
    sniff_timeout: float = 1.0

    def __post_init__(self):
        if self.local_port is not None and not 0 < self.local_port <= 65535:
            raise ValueError(f"Invalid local port: {self.local_port}")
        if not 0 <= self.window <= 65535:
            raise ValueError(f"Invalid window: {self.window}")
        for name in ("handshake_timeout", "expect_timeout", "start_rto", "sniff_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if self.retransmits < 2:
            raise ValueError(f"Need at least 2 retransmits to measure backoff, got {self.retransmits}")
        if self.backoff_multiplier <= 1:
            raise ValueError(f"Invalid backoff multiplier: {self.backoff_multiplier}")
        if not 0 < self.tolerance_factor <= 1:
            raise ValueError(f"Invalid tolerance factor: {self.tolerance_factor}")
        if not self.sample_data:
            raise ValueError("sample_data must not be empty")
        if isinstance(self.tolerance, str):
            self.tolerance = TolerancePolicy(self.tolerance)
