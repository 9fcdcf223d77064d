"""
Raw frame injection.

The peer builds complete IPv4 frames itself, so the injector only has to
put bytes on the wire. Anything that can do that (a raw socket, a tunnel,
the simulator) implements FrameInjector.
"""

import logging
from typing import Optional

from scapy.all import conf
from scapy.layers.inet import IP


logger = logging.getLogger(__name__)


class FrameInjector:
    """Sends complete IPv4 frames."""

    def send(self, frame: bytes):
        raise NotImplementedError

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class ScapyInjector(FrameInjector):
    """
    Injects frames through a scapy layer-3 socket.

    The frame is re-parsed by scapy only to be handed to the socket; the
    bytes on the wire are the ones we built, checksums included.
    """

    def __init__(self, iface: Optional[str] = None):
        self.iface = iface
        self._socket = None

    def _ensure_socket(self):
        if self._socket is None:
            self._socket = conf.L3socket(iface=self.iface)
        return self._socket

    def send(self, frame: bytes):
        self._ensure_socket().send(IP(frame))
        logger.debug(f"Injected {len(frame)} byte frame on {self.iface or 'default route'}")

    def close(self):
        if self._socket is not None:
            self._socket.close()
            self._socket = None
