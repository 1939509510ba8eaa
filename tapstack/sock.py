"""Protocol-independent sock: addressing, hashing and the receive queue."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

from .wait import Wait

DEFAULT_BACKLOG = 1
MAX_BACKLOG = 1024


class SocketError(OSError):
    """Raised when a socket operation cannot be carried out."""


class SockType(IntEnum):
    STREAM = 1
    DGRAM = 2
    RAW = 3


class SocketState(IntEnum):
    UNCONNECTED = 1
    BIND = 2
    LISTEN = 3
    CONNECTING = 4
    CONNECTED = 5


@dataclass
class SockAddr:
    """Local and remote endpoint of a sock; addresses and ports in host order."""

    src_addr: int = 0
    dst_addr: int = 0
    src_port: int = 0
    dst_port: int = 0


class Sock:
    """State shared by every transport: endpoints, hash bucket and queued packets."""

    def __init__(self, protocol: int = 0) -> None:
        self.protocol = protocol
        self.src_addr = 0
        self.dst_addr = 0
        self.src_port = 0
        self.dst_port = 0
        self.socket = None
        self.route = None
        self.recv_queue: deque = deque()
        self.recv_wait: Optional[Wait] = None
        self.hash_value = 0
        self._bucket: Optional[list] = None

    @property
    def addr(self) -> SockAddr:
        return SockAddr(self.src_addr, self.dst_addr, self.src_port, self.dst_port)

    @property
    def hashed(self) -> bool:
        """True while the sock sits in a lookup bucket."""
        return self._bucket is not None

    def add_hash(self, bucket: list) -> None:
        """Put the sock at the head of ``bucket``."""
        if self._bucket is not None:
            raise SocketError("sock is already hashed")
        bucket.insert(0, self)
        self._bucket = bucket

    def del_hash(self) -> None:
        """Take the sock out of its bucket; harmless when not hashed."""
        if self._bucket is not None:
            self._bucket.remove(self)
            self._bucket = None

    def hash(self) -> None:
        """Enter the sock into its protocol's lookup table.

        The generic sock keeps no table; protocols override this.
        """

    def unhash(self) -> None:
        """Stop the sock receiving packets."""
        self.del_hash()

    def set_port(self, port: int) -> None:
        """Bind a local port; 0 picks a free one."""
        raise SocketError("protocol does not assign ports")

    def deliver(self, packet) -> None:
        """Queue an incoming packet and wake a waiting reader."""
        self.recv_queue.append(packet)
        self.recv_notify()

    def recv_notify(self) -> None:
        if self.recv_queue and self.recv_wait is not None:
            self.recv_wait.wake_up()

    def recv(self):
        """Next queued packet, blocking on :attr:`recv_wait`.

        Returns None when there is nothing to wait on or the wait is closed.
        """
        while True:
            try:
                return self.recv_queue.popleft()
            except IndexError:
                pass
            wait = self.recv_wait
            if wait is None or not wait.sleep_on():
                return None

    def close(self) -> None:
        """Detach the reader, leave the lookup table and drop queued packets."""
        self.recv_wait = None
        self.unhash()
        self.recv_queue.clear()

    def autobind(self) -> None:
        """Bind an automatically chosen local port."""
        self.set_port(0)