"""Network devices, routing table and packet output."""

from __future__ import annotations

import struct
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional

from .headers import ICMP_HRD_SZ, IP_P_ICMP, IPHeader, internet_checksum, ip_to_str

NETDEV_ALEN = 6

RT_NONE = 0x00000000
RT_LOCALHOST = 0x00000001
RT_DEFAULT = 0x00000002

ICMP_DEFAULT_TTL = 64


@dataclass(eq=False)
class NetDevice:
    """A network interface with its address and traffic counters."""

    name: str
    ipaddr: int = 0
    netmask: int = 0
    hwaddr: bytes = bytes(NETDEV_ALEN)
    mtu: int = 1500
    rx_packets: int = 0
    tx_packets: int = 0
    rx_bytes: int = 0
    tx_bytes: int = 0

    @property
    def localnet(self) -> int:
        return self.ipaddr & self.netmask


@dataclass(eq=False)
class Route:
    """One routing table entry."""

    net: int
    netmask: int
    gw: int
    flags: int
    metric: int
    dev: NetDevice


@dataclass(eq=False)
class Packet:
    """An IP datagram: header, everything after it, and routing context."""

    ip: IPHeader
    payload: bytes = b""
    route: Optional[Route] = None
    dev: Optional[NetDevice] = None

    def __bytes__(self) -> bytes:
        return self.ip.pack() + bytes(self.payload)


class Network:
    """Routing table and output path shared by the transport protocols.

    Sent packets are kept in :attr:`sent` (bounded by ``history``). When a
    packet is addressed to one of the local devices and a ``receiver`` is set,
    a copy rebuilt from its wire bytes is handed to the receiver.
    """

    def __init__(self, devices=(), receiver: Optional[Callable[[Packet], None]] = None,
                 history: int = 256) -> None:
        self.devices: list[NetDevice] = list(devices)
        self.routes: list[Route] = []
        self.receiver = receiver
        self.sent: deque[Packet] = deque(maxlen=history)
        self._lock = threading.RLock()

    def add_route(self, net: int, netmask: int, gw: int, metric: int, flags: int,
                  dev: NetDevice) -> Route:
        """Add a route; more specific masks and lower metrics are preferred."""
        route = Route(net=net & netmask, netmask=netmask, gw=gw, flags=flags,
                      metric=metric, dev=dev)
        with self._lock:
            self.routes.append(route)
            self.routes.sort(key=lambda r: (-bin(r.netmask).count("1"), r.metric))
        return route

    def lookup(self, addr: int) -> Optional[Route]:
        """Best route for ``addr``, or None."""
        with self._lock:
            return next((r for r in self.routes if addr & r.netmask == r.net), None)

    def is_local(self, addr: int) -> bool:
        return any(dev.ipaddr == addr for dev in self.devices)

    def route_output(self, packet: Packet) -> Route:
        """Attach a route to ``packet`` and set its source address."""
        route = self.lookup(packet.ip.dst)
        if route is None:
            raise LookupError(f"no route to {ip_to_str(packet.ip.dst)}")
        packet.route = route
        packet.ip.src = route.dev.ipaddr
        return route

    def send(self, packet: Packet) -> None:
        """Transmit ``packet``, routing it first if needed."""
        if packet.route is None:
            self.route_output(packet)
        dev = packet.route.dev
        raw = bytes(packet)
        with self._lock:
            dev.tx_packets += 1
            dev.tx_bytes += len(raw)
            self.sent.append(packet)
        if self.receiver is not None and self.is_local(packet.ip.dst):
            header = IPHeader.unpack(raw)
            end = max(header.total_length, header.header_length)
            copy = Packet(header, raw[header.header_length:end], dev=dev)
            with self._lock:
                dev.rx_packets += 1
                dev.rx_bytes += len(raw)
            self.receiver(copy)

    def send_icmp(self, icmp_type: int, code: int, data: int, packet: Packet) -> Packet:
        """Send an ICMP error about ``packet`` back to its sender."""
        quote = packet.ip.pack() + bytes(packet.payload)[:8]
        body = struct.pack("!BBHI", icmp_type, code, 0, data & 0xFFFFFFFF) + quote
        checksum = internet_checksum(body)
        body = body[:2] + checksum.to_bytes(2, "big") + body[4:]
        header = IPHeader(
            dst=packet.ip.src,
            protocol=IP_P_ICMP,
            total_length=IPHeader().header_length + len(body),
            ttl=ICMP_DEFAULT_TTL,
        )
        reply = Packet(header, body)
        self.route_output(reply)
        self.send(reply)
        return reply


__all__ = [
    "ICMP_HRD_SZ",
    "NETDEV_ALEN",
    "RT_DEFAULT",
    "RT_LOCALHOST",
    "RT_NONE",
    "NetDevice",
    "Network",
    "Packet",
    "Route",
]