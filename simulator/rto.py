"""
RTO estimation for the simulated DUT (RFC 6298).

The simulated DUT needs a real retransmission timer so that the oracle has
something honest to measure. This is the estimator only; the DUT arms and
fires timers on the wire's virtual clock.

    first sample R:   SRTT = R, RTTVAR = R/2
    later samples R:  RTTVAR = (1 - beta) * RTTVAR + beta * |SRTT - R|
                      SRTT   = (1 - alpha) * SRTT + alpha * R
    RTO = SRTT + K * RTTVAR, clamped to [MIN_RTO, MAX_RTO]

Each expiry multiplies the RTO by the backoff factor (2 for a conforming
stack). An ACK of new data undoes the backoff.
"""

from typing import Optional


class RTOEstimator:
    """Smoothed RTT, RTT variance and the resulting RTO, in seconds."""

    ALPHA = 1/8
    BETA = 1/4
    K = 4

    MIN_RTO = 1.0
    MAX_RTO = 60.0
    INITIAL_RTO = 1.0

    def __init__(self, initial_rto: Optional[float] = None,
                 min_rto: Optional[float] = None, max_rto: Optional[float] = None):
        self.min_rto = self.MIN_RTO if min_rto is None else min_rto
        self.max_rto = self.MAX_RTO if max_rto is None else max_rto
        self._srtt: Optional[float] = None
        self._rttvar: Optional[float] = None
        self._rto = self.INITIAL_RTO if initial_rto is None else initial_rto
        self._backoff_count = 0
        self._timeout_count = 0

    @property
    def srtt(self) -> Optional[float]:
        return self._srtt

    @property
    def rttvar(self) -> Optional[float]:
        return self._rttvar

    @property
    def rto(self) -> float:
        return self._rto

    def _clamped(self, rto: float) -> float:
        return max(self.min_rto, min(self.max_rto, rto))

    def update_rtt(self, measured_rtt: float, retransmitted: bool = False):
        """
        Fold in an RTT sample.

        Samples from retransmitted segments are ambiguous and ignored
        (Karn's algorithm).
        """
        if retransmitted:
            return

        if self._srtt is None:
            self._srtt = measured_rtt
            self._rttvar = measured_rtt / 2
        else:
            self._rttvar = (1 - self.BETA) * self._rttvar + \
                self.BETA * abs(self._srtt - measured_rtt)
            self._srtt = (1 - self.ALPHA) * self._srtt + self.ALPHA * measured_rtt

        self._rto = self._clamped(self._srtt + self.K * self._rttvar)
        self._backoff_count = 0

    def backoff(self, multiplier: float = 2.0):
        """The timer expired: grow the RTO for the next attempt."""
        self._timeout_count += 1
        self._backoff_count += 1
        self._rto = min(self._rto * multiplier, self.max_rto)

    def on_ack(self, acked_new_data: bool):
        """New data was acknowledged: drop any backoff."""
        if acked_new_data and self._backoff_count > 0:
            self._backoff_count = 0
            if self._srtt is not None:
                self._rto = self._clamped(self._srtt + self.K * self._rttvar)

    def get_statistics(self) -> dict:
        return {
            "srtt": self._srtt,
            "rttvar": self._rttvar,
            "rto": self._rto,
            "timeout_count": self._timeout_count,
            "backoff_count": self._backoff_count,
        }

    def __str__(self) -> str:
        srtt_str = f"{self._srtt*1000:.1f}ms" if self._srtt is not None else "N/A"
        return f"RTO(SRTT={srtt_str}, RTO={self._rto*1000:.1f}ms)"
