"""User-facing sockets built on the internet family."""

from __future__ import annotations

from enum import IntEnum
from typing import Optional

from .inet import Inet
from .network import Packet
from .sock import SockAddr, SocketError, SocketState, SockType
from .wait import Wait


class AddressFamily(IntEnum):
    INET = 1


class Socket:
    """A socket of the internet family; usable as a context manager."""

    def __init__(self, inet: Inet, family: AddressFamily, sock_type: SockType) -> None:
        self.state = SocketState.UNCONNECTED
        self.family = family
        self.type = sock_type
        self.sleep = Wait()
        self.ops: Optional[Inet] = inet
        self.sk = None

    def _ops(self) -> Inet:
        if self.ops is None:
            raise SocketError("socket is closed")
        return self.ops

    def listen(self, backlog: int) -> None:
        if backlog < 0:
            raise SocketError("backlog must not be negative")
        self._ops().listen(self, backlog)

    def close(self) -> None:
        """Release any thread blocked on this socket, then close it."""
        self.sleep.close()
        ops, self.ops = self.ops, None
        if ops is not None:
            ops.close(self)

    def connect(self, addr: SockAddr) -> None:
        if addr is None:
            raise SocketError("connect needs an address")
        self._ops().connect(self, addr)

    def bind(self, addr: SockAddr) -> None:
        if addr is None:
            raise SocketError("bind needs an address")
        self._ops().bind(self, addr)

    def accept(self) -> tuple["Socket", SockAddr]:
        """Wait for a connection; return the new socket and the peer address."""
        ops = self._ops()
        newsock = Socket(ops, self.family, self.type)
        addr = ops.accept(self, newsock)
        return newsock, addr

    def send(self, data, addr: SockAddr) -> int:
        if not data or addr is None:
            raise SocketError("send needs data and an address")
        return self._ops().send(self, data, addr)

    def recv(self) -> Optional[Packet]:
        """Next received datagram; None when the socket is closed meanwhile."""
        return self._ops().recv(self)

    def write(self, data) -> int:
        if not data:
            raise SocketError("write needs data")
        return self._ops().write(self, data)

    def read(self, size: int) -> bytes:
        if size <= 0:
            raise SocketError("read size must be positive")
        return self._ops().read(self, size)

    def __enter__(self) -> "Socket":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def open_socket(inet: Inet, family, sock_type, protocol: int = 0) -> Socket:
    """Create a socket of ``family`` and ``sock_type`` on ``inet``."""
    if family != AddressFamily.INET:
        raise SocketError("only the internet family is supported")
    try:
        kind = SockType(sock_type)
    except ValueError as exc:
        raise SocketError(f"unsupported socket type {sock_type!r}") from exc
    sock = Socket(inet, AddressFamily.INET, kind)
    inet.create(sock, protocol)
    return sock