"""Internet family: routes socket calls to the raw, UDP and TCP socks."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from .headers import IP_P_IP, IP_P_TCP, IP_P_UDP, IPHeader
from .network import Network, Packet
from .raw import RawTable
from .sock import Sock, SockAddr, SocketError, SockType
from .tcp_in import receive as tcp_receive
from .tcp_sock import TcpTable
from .udp import UdpTable

log = logging.getLogger(__name__)


def _assigns_ports(sk: Sock) -> bool:
    """True when the sock's protocol chooses and checks its own ports."""
    return type(sk).set_port is not Sock.set_port


class Inet:
    """The AF_INET family: one table per transport and the calls sockets make.

    ``socket`` arguments are objects with ``type``, ``sleep`` (a wait) and
    ``sk`` attributes. When the network has no receiver yet, incoming local
    traffic is delivered to :meth:`deliver`.
    """

    def __init__(self, network: Network) -> None:
        self.network = network
        self.raw = RawTable(network)
        self.udp = UdpTable(network)
        self.tcp = TcpTable(network)
        self._types: dict[int, tuple[int, Callable[[int], Sock]]] = {
            SockType.STREAM: (IP_P_TCP, self.tcp.alloc_sock),
            SockType.DGRAM: (IP_P_UDP, self.udp.alloc_sock),
            SockType.RAW: (IP_P_IP, self.raw.alloc_sock),
        }
        if network.receiver is None:
            network.receiver = self.deliver

    @staticmethod
    def _sock(socket) -> Sock:
        sk = socket.sk
        if sk is None:
            raise SocketError("socket has no sock")
        return sk

    def create(self, socket, protocol: int) -> Sock:
        """Allocate the sock for ``socket`` according to its type."""
        entry = self._types.get(socket.type)
        if entry is None:
            raise SocketError(f"unsupported socket type {socket.type!r}")
        default_protocol, alloc = entry
        sk = alloc(protocol)
        sk.protocol = protocol or default_protocol
        sk.socket = socket
        socket.sk = sk
        # only raw socks know their hash before binding
        if sk.hash_value:
            sk.hash()
        return sk

    def close(self, socket) -> None:
        """Close the sock; closing twice does nothing."""
        sk = socket.sk
        if sk is None:
            return
        try:
            sk.close()
        finally:
            socket.sk = None

    def accept(self, socket, newsocket) -> SockAddr:
        """Attach the next established connection to ``newsocket``.

        Returns the peer address in ``src_addr`` and ``src_port``.
        """
        sk = self._sock(socket)
        accept = getattr(sk, "accept", None)
        if accept is None:
            raise SocketError("protocol does not accept connections")
        newsk = accept()
        newsk.socket = newsocket
        newsocket.sk = newsk
        return SockAddr(src_addr=newsk.dst_addr, src_port=newsk.dst_port)

    def listen(self, socket, backlog: int) -> None:
        if socket.type != SockType.STREAM:
            raise SocketError("only stream sockets listen")
        self._sock(socket).listen(backlog)

    def bind(self, socket, addr: SockAddr) -> None:
        """Bind a local address and port; a sock binds only once."""
        sk = self._sock(socket)
        if sk.src_port:
            raise SocketError("sock is already bound")
        if not self.network.is_local(addr.src_addr):
            raise SocketError("address is not local")
        sk.src_addr = addr.src_addr
        if _assigns_ports(sk):
            try:
                sk.set_port(addr.src_port)
            except SocketError:
                sk.src_addr = 0
                raise
        else:
            sk.src_port = addr.src_port
        sk.dst_addr = 0
        sk.dst_port = 0

    def connect(self, socket, addr: SockAddr) -> None:
        """Connect to ``addr``, binding a port first when none is bound."""
        if not addr.dst_port or not addr.dst_addr:
            raise SocketError("connect needs a destination address and port")
        sk = self._sock(socket)
        if sk.dst_port:
            raise SocketError("sock is already connected")
        if not sk.src_port:
            sk.autobind()
        route = self.network.lookup(addr.dst_addr)
        if route is None:
            raise SocketError("no route to destination")
        sk.route = route
        sk.src_addr = route.dev.ipaddr
        connect = getattr(sk, "connect", None)
        if connect is None:
            raise SocketError("protocol does not support connect")
        connect(addr)

    def read(self, socket, size: int) -> bytes:
        sk = self._sock(socket)
        recv_buf = getattr(sk, "recv_buf", None)
        if recv_buf is None:
            raise SocketError("protocol does not support stream reads")
        sk.recv_wait = socket.sleep
        try:
            return recv_buf(size)
        finally:
            sk.recv_wait = None

    def write(self, socket, data) -> int:
        return self._sock(socket).send_buf(data, None)

    def send(self, socket, data, addr: Optional[SockAddr]) -> int:
        return self._sock(socket).send_buf(data, addr)

    def recv(self, socket) -> Optional[Packet]:
        sk = self._sock(socket)
        sk.recv_wait = socket.sleep
        try:
            return sk.recv()
        finally:
            sk.recv_wait = None

    def deliver(self, packet: Packet) -> None:
        """Hand an incoming datagram to raw socks and its transport."""
        ip = packet.ip
        for sk in self.raw.lookup_iter(ip.src, ip.dst, ip.protocol):
            copy = Packet(IPHeader.unpack(ip.pack()), bytes(packet.payload), dev=packet.dev)
            sk.deliver(copy)
        if ip.protocol == IP_P_UDP:
            self.udp.receive(packet)
        elif ip.protocol == IP_P_TCP:
            tcp_receive(self.tcp, packet)
        else:
            log.debug("no transport for protocol %d", ip.protocol)