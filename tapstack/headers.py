"""Wire formats and helpers for Ethernet, IPv4, ICMP, UDP and TCP.

Addresses and ports are plain host-order integers; packing converts them to
network byte order.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum

# Ethernet
ETH_ALEN = 6
ETH_HRD_SZ = 14
ETH_P_IP = 0x0800
ETH_P_ARP = 0x0806
ETH_P_RARP = 0x8035

# IPv4
IP_ALEN = 4
IP_VERSION_4 = 4
IP_HRD_SZ = 20
IP_FRAG_RS = 0x8000
IP_FRAG_DF = 0x4000
IP_FRAG_MF = 0x2000
IP_FRAG_OFF = 0x1FFF
IP_FRAG_MASK = IP_FRAG_OFF | IP_FRAG_MF

IP_P_IP = 0
IP_P_ICMP = 1
IP_P_IGMP = 2
IP_P_TCP = 6
IP_P_EGP = 8
IP_P_UDP = 17
IP_P_OSPF = 89
IP_P_RAW = 255
IP_P_MAX = 256

FRAG_TIME = 30

# ICMP
ICMP_HRD_SZ = 8
ICMP_T_ECHORLY = 0
ICMP_T_DESTUNREACH = 3
ICMP_T_SOURCEQUENCH = 4
ICMP_T_REDIRECT = 5
ICMP_T_ECHOREQ = 8
ICMP_T_TIMEEXCEED = 11
ICMP_T_PARAMPROBLEM = 12
ICMP_T_TIMESTAMPREQ = 13
ICMP_T_TIMESTAMPRLY = 14
ICMP_T_INFOREQ = 15
ICMP_T_INFORLY = 16
ICMP_T_ADDRMASKREQ = 17
ICMP_T_ADDRMASKRLY = 18
ICMP_T_MAXNUM = 18

ICMP_NET_UNREACH = 0
ICMP_HOST_UNREACH = 1
ICMP_PROTO_UNREACH = 2
ICMP_PORT_UNREACH = 3
ICMP_FRAG_NEEDED = 4
ICMP_SROUTE_FAILED = 5
ICMP_NET_UNKNOWN = 6
ICMP_HOST_UNKNOWN = 7
ICMP_SHOST_ISOLATED = 8
ICMP_NET_ADMINPRO = 9
ICMP_HOST_ADMINPRO = 10
ICMP_NET_UNREACHTOS = 11
ICMP_HOST_UNREACHTOS = 12
ICMP_ADMINPRO = 13
ICMP_PREC_VIOLATION = 14
ICMP_PREC_CUTOFF = 15

ICMP_REDIRECT_NET = 0
ICMP_REDIRECT_HOST = 1
ICMP_REDIRECT_TOSNET = 2
ICMP_REDIRECT_TOSHOST = 3

ICMP_EXC_TTL = 0
ICMP_EXC_FRAGTIME = 1

# UDP
UDP_HRD_SZ = 8
UDP_MAX_BUFSZ = 0xFFFF - UDP_HRD_SZ
UDP_DEFAULT_TTL = 64

# TCP
TCP_HRD_SZ = 20
TCP_HRD_DOFF = TCP_HRD_SZ >> 2
TCP_DEFAULT_WINDOW = 4096
TCP_DEFAULT_TTL = 64
TCP_MAX_BACKLOG = 128

TCP_F_PUSH = 0x00000001
TCP_F_ACKNOW = 0x00000002
TCP_F_ACKDELAY = 0x00000004

_IP_FMT = struct.Struct("!BBHHHBBHII")
_UDP_FMT = struct.Struct("!HHHH")
_TCP_FMT = struct.Struct("!HHIIBBHHH")

_TCP_FLAG_BITS = (
    ("fin", 0x01),
    ("syn", 0x02),
    ("rst", 0x04),
    ("psh", 0x08),
    ("ack", 0x10),
    ("urg", 0x20),
    ("ece", 0x40),
    ("cwr", 0x80),
)
_TCP_SHOWN_FLAGS = ("fin", "syn", "rst", "psh", "ack", "urg")


def internet_checksum(data) -> int:
    """One's complement checksum of ``data``; 0 when verifying a valid block."""
    raw = bytes(data)
    if len(raw) % 2:
        raw += b"\0"
    total = sum(struct.unpack(f"!{len(raw) // 2}H", raw))
    while total >> 16:
        total = (total & 0xFFFF) + (total >> 16)
    return ~total & 0xFFFF


def pseudo_header_checksum(src: int, dst: int, proto: int, data) -> int:
    """Checksum of ``data`` preceded by the IPv4 pseudo header."""
    raw = bytes(data)
    pseudo = struct.pack("!IIBBH", src, dst, 0, proto, len(raw))
    return internet_checksum(pseudo + raw)


def ip_to_str(addr: int) -> str:
    """Dotted-quad text of a host-order IPv4 address."""
    return ".".join(str((addr >> shift) & 0xFF) for shift in (24, 16, 8, 0))


def mac_to_str(hwaddr) -> str:
    """Colon-separated hex text of a six-byte hardware address."""
    raw = bytes(hwaddr)
    if len(raw) != ETH_ALEN:
        raise ValueError("hardware address must be 6 bytes")
    return ":".join(f"{octet:02x}" for octet in raw)


def eth_protocol_name(proto: int) -> str:
    """Short name of an Ethernet type field."""
    return {ETH_P_IP: "IP", ETH_P_ARP: "ARP", ETH_P_RARP: "RARP"}.get(proto, "unknown")


def is_eth_multicast(hwaddr) -> bool:
    return bool(bytes(hwaddr)[0] & 0x01)


def is_eth_broadcast(hwaddr) -> bool:
    raw = bytes(hwaddr)[:ETH_ALEN]
    return len(raw) == ETH_ALEN and all(octet == 0xFF for octet in raw)


def is_multicast(addr: int) -> bool:
    """True for class D (224.0.0.0/4) addresses."""
    return ((addr >> 24) & 0xF0) == 0xE0


def is_broadcast(addr: int) -> bool:
    """True when the host octet is all ones or all zeros."""
    return (addr & 0xFF) in (0x00, 0xFF)


def same_subnet(mask: int, ip1: int, ip2: int) -> bool:
    return (mask & ip1) == (mask & ip2)


@dataclass
class IPHeader:
    """IPv4 header."""

    src: int = 0
    dst: int = 0
    protocol: int = 0
    total_length: int = IP_HRD_SZ
    ident: int = 0
    frag_off: int = 0
    ttl: int = 64
    tos: int = 0
    version: int = IP_VERSION_4
    hlen: int = IP_HRD_SZ >> 2
    checksum: int = 0
    options: bytes = b""

    @property
    def header_length(self) -> int:
        return self.hlen << 2

    @property
    def data_length(self) -> int:
        return self.total_length - self.header_length

    @property
    def fragment_offset(self) -> int:
        return (self.frag_off & IP_FRAG_OFF) * 8

    def pack(self) -> bytes:
        """Header bytes with a freshly computed checksum."""
        raw = _IP_FMT.pack(
            ((self.version & 0xF) << 4) | (self.hlen & 0xF),
            self.tos,
            self.total_length,
            self.ident,
            self.frag_off,
            self.ttl,
            self.protocol,
            0,
            self.src,
            self.dst,
        ) + bytes(self.options)
        checksum = internet_checksum(raw)
        return raw[:10] + checksum.to_bytes(2, "big") + raw[12:]

    @classmethod
    def unpack(cls, data) -> "IPHeader":
        raw = bytes(data)
        if len(raw) < IP_HRD_SZ:
            raise ValueError("IP header too short")
        (vh, tos, total_length, ident, frag_off, ttl, protocol, checksum,
         src, dst) = _IP_FMT.unpack_from(raw)
        hlen = vh & 0xF
        if hlen < IP_HRD_SZ >> 2 or len(raw) < hlen << 2:
            raise ValueError("bad IP header length")
        return cls(
            src=src,
            dst=dst,
            protocol=protocol,
            total_length=total_length,
            ident=ident,
            frag_off=frag_off,
            ttl=ttl,
            tos=tos,
            version=vh >> 4,
            hlen=hlen,
            checksum=checksum,
            options=raw[IP_HRD_SZ:hlen << 2],
        )


@dataclass
class UDPHeader:
    """UDP header."""

    src_port: int = 0
    dst_port: int = 0
    length: int = UDP_HRD_SZ
    checksum: int = 0

    def pack(self) -> bytes:
        return _UDP_FMT.pack(self.src_port, self.dst_port, self.length, self.checksum)

    @classmethod
    def unpack(cls, data) -> "UDPHeader":
        raw = bytes(data)
        if len(raw) < UDP_HRD_SZ:
            raise ValueError("UDP header too short")
        return cls(*_UDP_FMT.unpack_from(raw))


@dataclass
class TCPHeader:
    """TCP header; ``ack`` is the flag, ``ack_seq`` the acknowledgment number."""

    src_port: int = 0
    dst_port: int = 0
    seq: int = 0
    ack_seq: int = 0
    doff: int = TCP_HRD_DOFF
    fin: bool = False
    syn: bool = False
    rst: bool = False
    psh: bool = False
    ack: bool = False
    urg: bool = False
    ece: bool = False
    cwr: bool = False
    window: int = 0
    checksum: int = 0
    urgptr: int = 0
    options: bytes = b""

    @property
    def header_length(self) -> int:
        return self.doff << 2

    def pack(self) -> bytes:
        flags = 0
        for name, bit in _TCP_FLAG_BITS:
            if getattr(self, name):
                flags |= bit
        return _TCP_FMT.pack(
            self.src_port,
            self.dst_port,
            self.seq & 0xFFFFFFFF,
            self.ack_seq & 0xFFFFFFFF,
            (self.doff & 0xF) << 4,
            flags,
            self.window,
            self.checksum,
            self.urgptr,
        ) + bytes(self.options)

    @classmethod
    def unpack(cls, data) -> "TCPHeader":
        raw = bytes(data)
        if len(raw) < TCP_HRD_SZ:
            raise ValueError("TCP header too short")
        (src_port, dst_port, seq, ack_seq, off, flags, window, checksum,
         urgptr) = _TCP_FMT.unpack_from(raw)
        doff = off >> 4
        if doff < TCP_HRD_DOFF or len(raw) < doff << 2:
            raise ValueError("bad TCP data offset")
        bits = {name: bool(flags & bit) for name, bit in _TCP_FLAG_BITS}
        return cls(
            src_port=src_port,
            dst_port=dst_port,
            seq=seq,
            ack_seq=ack_seq,
            doff=doff,
            window=window,
            checksum=checksum,
            urgptr=urgptr,
            options=raw[TCP_HRD_SZ:doff << 2],
            **bits,
        )

    def flags_string(self) -> str:
        """Control bits as text, e.g. ``SYN|ACK``."""
        return "|".join(name.upper() for name in _TCP_SHOWN_FLAGS if getattr(self, name))


class TcpState(IntEnum):
    CLOSED = 1
    LISTEN = 2
    SYN_RECV = 3
    SYN_SENT = 4
    ESTABLISHED = 5
    CLOSE_WAIT = 6
    LAST_ACK = 7
    FIN_WAIT1 = 8
    FIN_WAIT2 = 9
    CLOSING = 10
    TIME_WAIT = 11

    def label(self) -> str:
        """Conventional RFC 793 name of the state."""
        return _TCP_STATE_LABELS[self]


_TCP_STATE_LABELS = {
    TcpState.CLOSED: "CLOSED",
    TcpState.LISTEN: "LISTEN",
    TcpState.SYN_RECV: "SYN-RECV",
    TcpState.SYN_SENT: "SYN-SENT",
    TcpState.ESTABLISHED: "ESTABLISHED",
    TcpState.CLOSE_WAIT: "CLOSE-WAIT",
    TcpState.LAST_ACK: "LAST-ACK",
    TcpState.FIN_WAIT1: "FIN-WAIT-1",
    TcpState.FIN_WAIT2: "FIN-WAIT-2",
    TcpState.CLOSING: "CLOSING",
    TcpState.TIME_WAIT: "TIME-WAIT",
}