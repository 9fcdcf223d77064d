"""
Remote control of the DUT's sockets.

The checks never touch the DUT's TCP stack directly; they ask it to
create listeners, accept, send and close through a RemoteControlClient.
How the commands travel (RPC, serial console, same process) is up to the
implementation. Every failure surfaces as RemoteControlError and ends the
running check.
"""

import logging
import socket
import threading
from typing import Dict, Tuple

from .errors import RemoteControlError


logger = logging.getLogger(__name__)


class RemoteControlClient:
    """
    Socket operations on the DUT.

    Handles are opaque integers chosen by the DUT.
    """

    def create_listener(self, sock_type: int = socket.SOCK_STREAM,
                        protocol: int = socket.IPPROTO_TCP, backlog: int = 1,
                        family: int = socket.AF_INET) -> Tuple[int, int]:
        """Create, bind and listen; return (handle, bound_port)."""
        raise NotImplementedError

    def accept(self, handle: int) -> int:
        raise NotImplementedError

    def send(self, handle: int, data: bytes, flags: int = 0) -> int:
        raise NotImplementedError

    def set_sockopt(self, handle: int, level: int, name: int, value: bytes):
        raise NotImplementedError

    def set_sockopt_int(self, handle: int, level: int, name: int, value: int):
        self.set_sockopt(handle, level, name, value.to_bytes(4, "little", signed=True))

    def close(self, handle: int):
        raise NotImplementedError

    def tear_down(self):
        """Release whatever the client holds on the DUT."""


class LocalSocketClient(RemoteControlClient):
    """
    Drives sockets of the local host through the socket module.

    Useful when the stack under test is the one this process runs on, and
    for checking the remote-control plumbing itself.
    """

    def __init__(self, bind_address: str = "0.0.0.0", accept_timeout: float = 5.0):
        self.bind_address = bind_address
        self.accept_timeout = accept_timeout
        self._sockets: Dict[int, socket.socket] = {}
        self._next_handle = 3
        self._lock = threading.Lock()

    def _register(self, sock: socket.socket) -> int:
        with self._lock:
            handle = self._next_handle
            self._next_handle += 1
            self._sockets[handle] = sock
        return handle

    def _lookup(self, operation: str, handle: int) -> socket.socket:
        with self._lock:
            sock = self._sockets.get(handle)
        if sock is None:
            raise RemoteControlError(operation, message=f"unknown handle {handle}")
        return sock

    def create_listener(self, sock_type: int = socket.SOCK_STREAM,
                        protocol: int = socket.IPPROTO_TCP, backlog: int = 1,
                        family: int = socket.AF_INET) -> Tuple[int, int]:
        try:
            sock = socket.socket(family, sock_type, protocol)
        except OSError as e:
            raise RemoteControlError("socket", e.errno, str(e)) from e

        try:
            sock.bind((self.bind_address, 0))
            sock.listen(backlog)
            sock.settimeout(self.accept_timeout)
        except OSError as e:
            sock.close()
            raise RemoteControlError("listen", e.errno, str(e)) from e

        handle = self._register(sock)
        port = sock.getsockname()[1]
        logger.debug(f"Listener {handle} bound to {self.bind_address}:{port}")
        return handle, port

    def accept(self, handle: int) -> int:
        sock = self._lookup("accept", handle)
        try:
            conn, addr = sock.accept()
        except socket.timeout as e:
            raise RemoteControlError("accept", message=f"timed out on handle {handle}") from e
        except OSError as e:
            raise RemoteControlError("accept", e.errno, str(e)) from e
        conn.settimeout(None)
        accepted = self._register(conn)
        logger.debug(f"Accepted {addr} on {handle} as {accepted}")
        return accepted

    def send(self, handle: int, data: bytes, flags: int = 0) -> int:
        sock = self._lookup("send", handle)
        try:
            return sock.send(data, flags)
        except OSError as e:
            raise RemoteControlError("send", e.errno, str(e)) from e

    def set_sockopt(self, handle: int, level: int, name: int, value: bytes):
        sock = self._lookup("setsockopt", handle)
        try:
            sock.setsockopt(level, name, value)
        except OSError as e:
            raise RemoteControlError("setsockopt", e.errno, str(e)) from e

    def set_sockopt_int(self, handle: int, level: int, name: int, value: int):
        sock = self._lookup("setsockopt", handle)
        try:
            sock.setsockopt(level, name, value)
        except OSError as e:
            raise RemoteControlError("setsockopt", e.errno, str(e)) from e

    def close(self, handle: int):
        with self._lock:
            sock = self._sockets.pop(handle, None)
        if sock is None:
            raise RemoteControlError("close", message=f"unknown handle {handle}")
        sock.close()

    def tear_down(self):
        with self._lock:
            sockets = list(self._sockets.values())
            self._sockets.clear()
        for sock in sockets:
            sock.close()
