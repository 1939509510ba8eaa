"""Raw IP socks: deliver whole datagrams of one IP protocol."""

from __future__ import annotations

import logging
from typing import Iterator, Optional

from .headers import IP_HRD_SZ, IP_P_IP, IP_P_MAX, IP_P_RAW, IPHeader
from .network import Network, Packet
from .sock import Sock, SockAddr, SocketError

RAW_DEFAULT_TTL = 64
RAW_MAX_BUFSZ = 65536

log = logging.getLogger(__name__)


class RawTable:
    """Raw socks hashed by IP protocol number."""

    def __init__(self, network: Network) -> None:
        self.network = network
        self._buckets: list[list[Sock]] = [[] for _ in range(IP_P_MAX)]
        self.raw_id = 0
        log.debug("raw ip init")

    def _bucket(self, protocol: int) -> list:
        return self._buckets[protocol & IP_P_RAW]

    def alloc_sock(self, protocol: int) -> "RawSock":
        """New raw sock for ``protocol``; the wildcard protocol is refused."""
        if protocol == IP_P_IP:
            raise SocketError("raw sock needs a specific protocol")
        sk = RawSock(self, protocol)
        self.raw_id = (self.raw_id + 1) & 0xFFFF
        return sk

    def lookup_iter(self, src: int, dst: int, proto: int) -> Iterator["RawSock"]:
        """Every raw sock that accepts a datagram with these addresses."""
        for sk in list(self._bucket(proto)):
            if (sk.protocol == proto
                    and (not sk.src_addr or sk.src_addr == src)
                    and (not sk.dst_addr or sk.dst_addr == dst)):
                yield sk

    def lookup(self, src: int, dst: int, proto: int) -> Optional["RawSock"]:
        """First matching raw sock, or None."""
        return next(self.lookup_iter(src, dst, proto), None)


class RawSock(Sock):
    """Sock that sends and receives bare IP payloads."""

    def __init__(self, table: RawTable, protocol: int) -> None:
        super().__init__(protocol)
        self.table = table
        self.hash_value = protocol

    def hash(self) -> None:
        self.add_hash(self.table._bucket(self.protocol))

    def unhash(self) -> None:
        self.del_hash()

    def send_buf(self, data, addr: Optional[SockAddr]) -> int:
        """Send ``data`` as the payload of one IP datagram; return its length."""
        payload = bytes(data)
        if len(payload) > RAW_MAX_BUFSZ:
            raise SocketError("raw payload too large")
        if addr is None:
            raise SocketError("raw send needs a destination")
        header = IPHeader(
            src=self.src_addr,
            dst=addr.dst_addr,
            protocol=self.protocol,
            total_length=IP_HRD_SZ + len(payload),
            ident=self.table.raw_id,
            ttl=RAW_DEFAULT_TTL,
        )
        try:
            self.table.network.send(Packet(header, payload))
        except LookupError as exc:
            raise SocketError(str(exc)) from exc
        return len(payload)