# packetimpact - simulated wire and DUT
from .network import SimulatedWire, ScheduledEvent, WireStats
from .rto import RTOEstimator
from .dut import SimulatedDUT, simulated_bench

__all__ = ["SimulatedWire", "ScheduledEvent", "WireStats", "RTOEstimator",
           "SimulatedDUT", "simulated_bench"]
