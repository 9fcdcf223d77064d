"""
Peer phases - the slice of the TCP state machine the synthetic peer needs.

The peer only ever opens connections actively and only needs to know
whether a connection exists, so five phases are enough:

    CLOSED --send SYN--> SYN_SENT --recv SYN-ACK--> SYN_ACK_RECEIVED
    SYN_ACK_RECEIVED --send ACK--> ESTABLISHED --send FIN--> FIN_SENT
    FIN_SENT --recv FIN--> CLOSED

An RST in either direction, or a handshake that times out, drops the peer
back to CLOSED.
"""

from enum import Enum, auto
from dataclasses import dataclass
from typing import Optional, Tuple, Callable

from .segment import TCPFlags


class PeerPhase(Enum):
    """Connection phase as seen by the synthetic peer."""

    # No connection; also the state after RST or a completed close
    CLOSED = auto()

    # SYN injected, waiting for the DUT's SYN-ACK
    SYN_SENT = auto()

    # SYN-ACK seen, our ACK not yet injected
    SYN_ACK_RECEIVED = auto()

    # Handshake complete - data may flow
    ESTABLISHED = auto()

    # FIN injected, waiting for the DUT to finish
    FIN_SENT = auto()

    def is_established(self) -> bool:
        return self == PeerPhase.ESTABLISHED

    def is_synchronized(self) -> bool:
        """True once the remote sequence number is known."""
        return self in (
            PeerPhase.SYN_ACK_RECEIVED,
            PeerPhase.ESTABLISHED,
            PeerPhase.FIN_SENT,
        )


@dataclass
class PhaseTransition:
    """A single edge of the phase machine, kept for debugging."""
    from_phase: PeerPhase
    event: str
    to_phase: PeerPhase
    action: Optional[str] = None

    def __str__(self) -> str:
        action_str = f" / {self.action}" if self.action else ""
        return f"{self.from_phase.name} --[{self.event}]--> {self.to_phase.name}{action_str}"


class PeerStateMachine:
    """
    Event-driven phase machine for the synthetic peer.

    Events are plain strings: ``send_syn``, ``send_ack``, ``send_fin``,
    ``send_rst``, ``recv_syn_ack``, ``recv_fin``, ``recv_rst`` and
    ``timeout``. Unknown or illegal events leave the phase untouched and
    report failure, so the peer can keep observing stray segments.
    """

    _TABLE = {
        (PeerPhase.CLOSED, "send_syn"): (PeerPhase.SYN_SENT, "await_syn_ack"),
        (PeerPhase.SYN_SENT, "recv_syn_ack"): (PeerPhase.SYN_ACK_RECEIVED, "send_ack"),
        (PeerPhase.SYN_SENT, "timeout"): (PeerPhase.CLOSED, "delete_tcb"),
        (PeerPhase.SYN_ACK_RECEIVED, "send_ack"): (PeerPhase.ESTABLISHED, None),
        (PeerPhase.ESTABLISHED, "send_fin"): (PeerPhase.FIN_SENT, None),
        (PeerPhase.FIN_SENT, "recv_fin"): (PeerPhase.CLOSED, "send_ack"),
    }

    def __init__(self, initial_phase: PeerPhase = PeerPhase.CLOSED):
        self.phase = initial_phase
        self.history: list[PhaseTransition] = []
        self._transition_callbacks: list[Callable] = []

    def on_transition(self, callback: Callable[[PeerPhase, PeerPhase, str], None]):
        """Register a callback for phase changes."""
        self._transition_callbacks.append(callback)

    def transition(self, event: str) -> Tuple[bool, Optional[str]]:
        """
        Apply an event.

        Returns:
            Tuple of (success, action_to_take)
        """
        old_phase = self.phase

        if event in ("send_rst", "recv_rst"):
            if old_phase == PeerPhase.CLOSED:
                return (False, None)
            new_phase, action = PeerPhase.CLOSED, "delete_tcb"
        else:
            edge = self._TABLE.get((old_phase, event))
            if edge is None:
                return (False, None)
            new_phase, action = edge

        self.phase = new_phase
        self.history.append(PhaseTransition(old_phase, event, new_phase, action))
        for callback in self._transition_callbacks:
            callback(old_phase, new_phase, event)
        return (True, action)

    def __str__(self) -> str:
        return f"PeerStateMachine(phase={self.phase.name})"


def event_for_received(flags: TCPFlags) -> Optional[str]:
    """Map the flags of a segment from the DUT to a phase event."""
    if flags & TCPFlags.RST:
        return "recv_rst"
    if (flags & TCPFlags.SYN) and (flags & TCPFlags.ACK):
        return "recv_syn_ack"
    if flags & TCPFlags.FIN:
        return "recv_fin"
    return None


def event_for_sent(flags: TCPFlags) -> Optional[str]:
    """Map the flags of a segment we injected to a phase event."""
    if flags & TCPFlags.RST:
        return "send_rst"
    if flags & TCPFlags.SYN:
        return "send_syn"
    if flags & TCPFlags.FIN:
        return "send_fin"
    if flags & TCPFlags.ACK:
        return "send_ack"
    return None
