"""
Tests for the retransmission timing oracle.

Every scenario runs against the simulated DUT on virtual time: a DUT
latency of 10ms and an initial RTO of one second give a measured RTO of
about 1.01s and ideal backoff intervals of 2, 4, 8 and 16 seconds.
"""

import socket

import pytest
from packetimpact.config import ConformanceConfig, TolerancePolicy
from packetimpact.errors import (
    ConformanceError, ExpectTimeout, HandshakeTimeout, RemoteControlError, TimingViolation,
)
from packetimpact.oracle import (
    TCP_NODELAY, RetransmissionOracle, RetransmitReport, TimingWindow, timing_window,
)
from simulator import simulated_bench


def run_oracle(config=None, **dut_options):
    config = config or ConformanceConfig()
    dut, open_connection = simulated_bench(config, **dut_options)
    oracle = RetransmissionOracle(dut, open_connection, config)
    return dut, oracle


class TestConformanceConfig:
    """Test configuration validation."""

    def test_defaults(self):
        """Defaults match the classic check: five retransmits, doubling, additive."""
        config = ConformanceConfig()
        assert config.retransmits == 5
        assert config.backoff_multiplier == 2.0
        assert config.start_rto == 1.0
        assert config.tolerance == TolerancePolicy.ADDITIVE

    def test_tolerance_from_string(self):
        """The policy may be given by name."""
        assert ConformanceConfig(tolerance="multiplicative").tolerance == \
            TolerancePolicy.MULTIPLICATIVE

    @pytest.mark.parametrize("options", [
        {"retransmits": 1},
        {"backoff_multiplier": 1.0},
        {"tolerance_factor": 0.0},
        {"start_rto": 0},
        {"expect_timeout": -1},
        {"sample_data": b""},
        {"local_port": 70000},
    ])
    def test_invalid(self, options):
        """Nonsensical settings are rejected up front."""
        with pytest.raises(ValueError):
            ConformanceConfig(**options)


class TestTimingWindow:
    """Test the lower and upper bounds for one interval."""

    def test_additive(self):
        """The lower bound is one measured RTO below the ideal interval."""
        window = timing_window(4.0, 1.0)
        assert window == TimingWindow(lower=3.0, upper=8.0)

    def test_multiplicative(self):
        """The lower bound is a fraction of the ideal interval."""
        window = timing_window(4.0, 1.0, TolerancePolicy.MULTIPLICATIVE, factor=0.5)
        assert window == TimingWindow(lower=2.0, upper=8.0)

    def test_never_negative(self):
        """A measured RTO larger than the interval clamps to zero."""
        assert timing_window(1.0, 5.0).lower == 0.0

    def test_contains(self):
        """Both bounds are inclusive."""
        window = TimingWindow(lower=1.0, upper=2.0)
        assert window.contains(1.0)
        assert window.contains(2.0)
        assert not window.contains(0.99)
        assert not window.contains(2.01)


class TestConformingDUT:
    """Test a DUT that doubles its RTO on every expiry."""

    def test_passes(self):
        """Intervals double and the report says so."""
        _, oracle = run_oracle()
        report = oracle.run()

        assert isinstance(report, RetransmitReport)
        assert report.measured_rto == pytest.approx(1.01)
        assert report.intervals() == pytest.approx([2.0, 4.0, 8.0, 16.0])
        assert [probe.index for probe in report.probes] == [1, 2, 3, 4]
        for probe in report.probes:
            assert probe.window.contains(probe.interval)

    def test_windows(self):
        """The additive windows follow the measured RTO."""
        _, oracle = run_oracle()
        report = oracle.run()

        lowers = [probe.window.lower for probe in report.probes]
        uppers = [probe.window.upper for probe in report.probes]
        assert lowers == pytest.approx([1.01, 3.03, 7.07, 15.15])
        assert uppers == pytest.approx([4.04, 8.08, 16.16, 32.32])

    def test_multiplicative_policy(self):
        """The same DUT passes with the multiplicative policy."""
        config = ConformanceConfig(tolerance=TolerancePolicy.MULTIPLICATIVE)
        _, oracle = run_oracle(config)
        report = oracle.run()
        assert report.probes[0].window.lower == pytest.approx(1.01)
        assert report.probes[-1].window.lower == pytest.approx(8.08)

    def test_fewer_retransmits(self):
        """The number of timed retransmits is configurable."""
        _, oracle = run_oracle(ConformanceConfig(retransmits=3))
        assert len(oracle.run().probes) == 2

    def test_seq_is_the_unacked_segment(self):
        """Every timed retransmit carries the same sequence number."""
        _, oracle = run_oracle(isn=5000)
        report = oracle.run()
        # ISN + 1 + the warm-up data
        assert report.seq_num == 5001 + len(b"Sample Data")

    def test_cleans_up(self):
        """Every DUT handle is closed and TCP_NODELAY was set."""
        dut, oracle = run_oracle()
        seen = {}
        set_sockopt = dut.set_sockopt

        def spy(handle, level, name, value):
            seen[(level, name)] = value
            set_sockopt(handle, level, name, value)

        dut.set_sockopt = spy
        oracle.run()

        assert seen[(socket.IPPROTO_TCP, TCP_NODELAY)] == (1).to_bytes(4, "little")
        assert dut._sockets == {}

    def test_report_str(self):
        """The report lists every probe."""
        _, oracle = run_oracle()
        text = str(oracle.run())
        assert "measured RTO 1.010s" in text
        assert "probe 4" in text


class TestNonConformingDUT:
    """Test DUTs the oracle must reject."""

    def test_no_backoff(self):
        """With the DUT's latency on top, a fixed interval already falls short at probe 1."""
        _, oracle = run_oracle(backoff=1.0)

        with pytest.raises(TimingViolation) as excinfo:
            oracle.run()

        assert excinfo.value.probe == 1
        assert excinfo.value.interval == pytest.approx(1.0)
        assert "retransmit came sooner" in str(excinfo.value)

    def test_no_backoff_without_latency(self):
        """Without latency the first interval exactly meets its bound; probe 2 fails."""
        _, oracle = run_oracle(backoff=1.0, latency=0.0)

        with pytest.raises(TimingViolation) as excinfo:
            oracle.run()

        assert excinfo.value.probe == 2
        assert excinfo.value.interval == pytest.approx(1.0)

    def test_no_backoff_multiplicative(self):
        """The multiplicative policy rejects it too."""
        config = ConformanceConfig(tolerance=TolerancePolicy.MULTIPLICATIVE)
        _, oracle = run_oracle(config, backoff=1.0)
        with pytest.raises(TimingViolation):
            oracle.run()

    def test_gives_up(self):
        """A DUT that stops retransmitting times out with the loop index."""
        _, oracle = run_oracle(max_retransmits=1)

        with pytest.raises(ExpectTimeout) as excinfo:
            oracle.run()

        message = str(excinfo.value)
        assert message.startswith("expected a packet with payload Payload(b'Sample Data')")
        assert "(loop 1)" in message

    def test_never_retransmits(self):
        """No retransmission at all fails the calibration step."""
        _, oracle = run_oracle(max_retransmits=0)

        with pytest.raises(ExpectTimeout) as excinfo:
            oracle.run()
        assert "(loop 0)" in str(excinfo.value)

    def test_silent_dut(self):
        """No SYN-ACK means a handshake failure, not a timing verdict."""
        dut, oracle = run_oracle(respond_to_syn=False)

        with pytest.raises(HandshakeTimeout):
            oracle.run()
        assert dut._sockets == {}

    def test_remote_control_failure(self):
        """A DUT refusing a command aborts the check."""
        dut, oracle = run_oracle()

        def refuse(*args, **kwargs):
            raise RemoteControlError("socket", 97, "not supported")

        dut.create_listener = refuse
        with pytest.raises(RemoteControlError):
            oracle.run()

    def test_all_failures_are_conformance_errors(self):
        """Callers can catch every verdict with one exception type."""
        for options in ({"backoff": 1.0}, {"max_retransmits": 1}, {"respond_to_syn": False}):
            _, oracle = run_oracle(**options)
            with pytest.raises(ConformanceError):
                oracle.run()
