#!/usr/bin/env python3
"""
Retransmission Backoff Example

Runs the exponential-backoff check against simulated DUTs:

- a conforming stack that doubles its RTO on every expiry
- a broken stack that retransmits at a fixed interval
- a stack that never answers the handshake

Everything runs on virtual time, so the whole demo finishes instantly even
though the conforming run covers more than half a minute of wire time.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from packetimpact import ConformanceConfig, ConformanceError, RetransmissionOracle, TolerancePolicy
from simulator import simulated_bench
import logging

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


def check(name: str, config: ConformanceConfig, **dut_options) -> bool:
    """Run the oracle once and print the verdict."""
    print(f"\n== {name}")
    dut, open_connection = simulated_bench(config, **dut_options)
    oracle = RetransmissionOracle(dut, open_connection, config)
    try:
        report = oracle.run()
    except ConformanceError as e:
        print(f"FAIL: {e}")
        return False
    print(report)
    print("PASS")
    return True


def main(tolerance: str = "additive", latency: float = 0.01) -> int:
    config = ConformanceConfig(tolerance=TolerancePolicy(tolerance))

    results = [
        check("Conforming stack", config, latency=latency),
        not check("No backoff", config, latency=latency, backoff=1.0),
        not check("Silent stack", config, latency=latency, respond_to_syn=False),
    ]
    print(f"\n{sum(results)}/{len(results)} verdicts as expected")
    return 0 if all(results) else 1


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Retransmission backoff demo")
    parser.add_argument("--tolerance", choices=[p.value for p in TolerancePolicy],
                        default="additive", help="Lower-bound policy")
    parser.add_argument("--latency", type=float, default=0.01,
                        help="One-way DUT latency in seconds")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    sys.exit(main(args.tolerance, args.latency))
