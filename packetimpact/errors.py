"""
Errors raised by the conformance engine.

Only MalformedFrame is ever absorbed (inside the expectation scan loop).
Everything else aborts the running check with a message that names what
was expected and where the check was when it gave up.
"""

from typing import Optional


class ConformanceError(Exception):
    """Base class for every failure the engine reports."""


class MalformedFrame(ConformanceError, ValueError):
    """Raw bytes could not be decoded as an IPv4/TCP frame."""


class ExpectTimeout(ConformanceError, TimeoutError):
    """
    No frame matching an expectation arrived before its deadline.

    Carries the unmet specification so the caller can report it verbatim.
    """

    def __init__(self, spec, payload=None, timeout: float = 0.0,
                 detail: str = "", context: str = ""):
        self.spec = spec
        self.payload = payload
        self.timeout = timeout
        self.detail = detail
        self.context = context
        message = f"no frame matching {spec}"
        if payload is not None:
            message += f" with {payload}"
        message += f" within {timeout:.3f}s"
        if detail:
            message += f"; {detail}"
        if context:
            message = f"{context}: {message}"
        super().__init__(message)


class HandshakeTimeout(ExpectTimeout):
    """The DUT never answered our SYN with a SYN-ACK."""


class RemoteControlError(ConformanceError):
    """A command issued to the DUT failed."""

    def __init__(self, operation: str, errno: Optional[int] = None,
                 message: str = ""):
        self.operation = operation
        self.errno = errno
        text = f"{operation} failed"
        if errno is not None:
            text += f" (errno {errno})"
        if message:
            text += f": {message}"
        super().__init__(text)


class TimingViolation(ConformanceError):
    """A retransmission arrived earlier than its timing window allows."""

    def __init__(self, probe: int, interval: float, window):
        self.probe = probe
        self.interval = interval
        self.window = window
        super().__init__(
            f"retransmit came sooner interval {interval:.3f}s probe {probe} "
            f"(expected at least {window.lower:.3f}s)"
        )


class CaptureError(ConformanceError):
    """The live capture could not be opened or died while running."""
