"""UDP: port table, datagram input and sending socks."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

from .headers import (
    ICMP_PORT_UNREACH,
    ICMP_T_DESTUNREACH,
    IP_HRD_SZ,
    IP_P_UDP,
    UDP_DEFAULT_TTL,
    UDP_HRD_SZ,
    UDP_MAX_BUFSZ,
    IPHeader,
    UDPHeader,
    ip_to_str,
    pseudo_header_checksum,
)
from .network import Network, Packet
from .sock import Sock, SockAddr, SocketError

UDP_PORTS = 0x10000
UDP_HASH_SIZE = 128
UDP_HASH_SLOTS = UDP_PORTS // UDP_HASH_SIZE
UDP_HASH_MASK = UDP_HASH_SIZE - 1
UDP_BEST_UPDATE = 10
UDP_PORT_MIN = 0x8000
UDP_PORT_MAX = 0xF000
BEST_PORT_MIN = UDP_PORT_MIN

log = logging.getLogger(__name__)


@dataclass
class _HashSlot:
    head: list = field(default_factory=list)
    used: int = 0


class UdpTable:
    """Bound UDP socks, hashed by local port, with automatic port selection."""

    def __init__(self, network: Network) -> None:
        self.network = network
        self.slots = [_HashSlot() for _ in range(UDP_HASH_SIZE)]
        self.best_slot = 0
        self.best_update = UDP_BEST_UPDATE
        self.udp_id = 0
        self._lock = threading.RLock()

    def alloc_sock(self, protocol: int) -> "UdpSock":
        if protocol and protocol != IP_P_UDP:
            raise SocketError("protocol is not UDP")
        sk = UdpSock(self, protocol or IP_P_UDP)
        self.udp_id = (self.udp_id + 1) & 0xFFFF
        return sk

    @staticmethod
    def _slot_used_by(port: int, slot: _HashSlot) -> bool:
        return any(sk.src_port == port for sk in slot.head)

    def port_used(self, port: int) -> bool:
        return self._slot_used_by(port, self.slots[port & UDP_HASH_MASK])

    def lookup(self, port: int) -> Optional["UdpSock"]:
        """Sock bound to local ``port``, or None."""
        return next((sk for sk in self.slots[port & UDP_HASH_MASK].head
                     if sk.src_port == port), None)

    def _get_best_port(self) -> int:
        port = self.best_slot + BEST_PORT_MIN
        best = self.slots[self.best_slot]
        if best.used:
            while port < UDP_PORT_MAX and self._slot_used_by(port, best):
                port += UDP_HASH_SIZE
            if port >= UDP_PORT_MAX:
                return 0
        best.used += 1
        return port

    def _update_best(self, hash_value: int) -> None:
        if (self.best_slot != hash_value
                and self.slots[hash_value].used < self.slots[self.best_slot].used):
            self.best_slot = hash_value

    def _get_port_slow(self) -> int:
        best_slot = self.best_slot
        best_used = self.slots[best_slot].used
        for index, slot in enumerate(self.slots):
            if slot.used < best_used:
                best_used = slot.used
                best_slot = index
        if best_slot == self.best_slot:
            return 0
        self.best_slot = best_slot
        self.best_update = UDP_BEST_UPDATE
        return self._get_best_port()

    def get_port(self) -> int:
        """Pick a free port from the least used slot."""
        with self._lock:
            best = self.slots[self.best_slot]
            port = self._get_best_port()
            if not port:
                port = self._get_port_slow()
                if not port:
                    raise SocketError("no free UDP port")
                return port
            self.best_update -= 1
            if self.best_update <= 0:
                self.best_update = UDP_BEST_UPDATE
                # the first slot better than the current best, not the minimum
                for index, slot in enumerate(self.slots):
                    if slot.used < best.used:
                        self.best_slot = index
                        break
            return port

    def set_port(self, sock: "UdpSock", port: int) -> None:
        """Bind ``sock`` to ``port`` (0 chooses one) and hash it."""
        with self._lock:
            if port and self.port_used(port):
                raise SocketError(f"UDP port {port} already in use")
            if not port:
                port = self.get_port()
            hash_value = port & UDP_HASH_MASK
            self._update_best(hash_value)
            sock.hash_value = hash_value
            sock.src_port = port
            sock.hash()

    def release_port(self, sock: "UdpSock") -> None:
        with self._lock:
            self.slots[sock.hash_value].used -= 1
            self._update_best(sock.hash_value)

    def receive(self, packet: Packet) -> Optional["UdpSock"]:
        """Validate an incoming datagram and queue it on its sock.

        Returns the receiving sock, or None when the datagram was dropped.
        """
        raw = bytes(packet.payload)
        udplen = min(packet.ip.data_length, len(raw))
        if udplen < UDP_HRD_SZ:
            log.debug("udp length is too small")
            return None
        header = UDPHeader.unpack(raw)
        if udplen < header.length:
            log.debug("udp length is too small")
            return None
        udplen = header.length
        if header.checksum and pseudo_header_checksum(
                packet.ip.src, packet.ip.dst, IP_P_UDP, raw[:udplen]) != 0:
            log.debug("udp packet checksum corrupts")
            return None
        log.debug("from %s:%d to %s:%d", ip_to_str(packet.ip.src), header.src_port,
                  ip_to_str(packet.ip.dst), header.dst_port)
        sk = self.lookup(header.dst_port)
        if sk is None:
            self.network.send_icmp(ICMP_T_DESTUNREACH, ICMP_PORT_UNREACH, 0, packet)
            return None
        sk.deliver(packet)
        return sk


class UdpSock(Sock):
    """Datagram sock."""

    def __init__(self, table: UdpTable, protocol: int = IP_P_UDP) -> None:
        super().__init__(protocol)
        self.table = table

    def hash(self) -> None:
        self.add_hash(self.table.slots[self.hash_value].head)

    def unhash(self) -> None:
        if self.hashed:
            self.table.release_port(self)
            self.del_hash()

    def set_port(self, port: int) -> None:
        self.table.set_port(self, port)

    def send_buf(self, data, addr: Optional[SockAddr]) -> int:
        """Send one datagram to ``addr`` or the connected peer; return its size."""
        payload = bytes(data)
        if not payload or len(payload) > UDP_MAX_BUFSZ:
            raise SocketError("bad UDP payload size")
        if addr is not None:
            dst_addr, dst_port = addr.dst_addr, addr.dst_port
        elif self.dst_port:
            dst_addr, dst_port = self.dst_addr, self.dst_port
        else:
            dst_addr = dst_port = 0
        if not dst_addr or not dst_port:
            raise SocketError("UDP send needs a destination")
        if not self.src_port:
            self.autobind()
        network = self.table.network
        header = IPHeader(
            dst=dst_addr,
            protocol=self.protocol,
            total_length=IP_HRD_SZ + UDP_HRD_SZ + len(payload),
            ident=self.table.udp_id,
            ttl=UDP_DEFAULT_TTL,
        )
        packet = Packet(header)
        try:
            network.route_output(packet)
        except LookupError as exc:
            raise SocketError(str(exc)) from exc
        udp = UDPHeader(self.src_port, dst_port, UDP_HRD_SZ + len(payload))
        checksum = pseudo_header_checksum(header.src, header.dst, IP_P_UDP,
                                          udp.pack() + payload)
        udp.checksum = checksum or 0xFFFF
        packet.payload = udp.pack() + payload
        log.debug("%s:%d->%s:%d(proto %d)", ip_to_str(header.src), udp.src_port,
                  ip_to_str(header.dst), udp.dst_port, header.protocol)
        network.send(packet)
        return len(payload)