"""Entry point for TCP segments handed up by the IP layer."""

from __future__ import annotations

import logging

from .headers import IP_P_TCP, TCP_HRD_SZ, TCPHeader, pseudo_header_checksum
from .network import Packet
from .tcp_output import TcpSegment
from .tcp_sock import TcpTable
from .tcp_state import process

log = logging.getLogger(__name__)


def receive(table: TcpTable, packet: Packet) -> bool:
    """Validate a TCP datagram and process it.

    Returns True when the segment reached the state machine, False when it
    was dropped for its length, data offset or checksum.
    """
    raw = bytes(packet.payload)
    tcplen = packet.ip.data_length
    if tcplen < TCP_HRD_SZ or len(raw) < tcplen:
        log.debug("tcp length is too small")
        return False
    try:
        header = TCPHeader.unpack(raw[:tcplen])
    except ValueError:
        log.debug("tcp length is too small")
        return False
    if pseudo_header_checksum(packet.ip.src, packet.ip.dst, IP_P_TCP, raw[:tcplen]) != 0:
        log.debug("tcp packet checksum corrupts")
        return False
    seg = TcpSegment.from_packet(packet)
    tsk = table.lookup(packet.ip.src, packet.ip.dst, header.src_port, header.dst_port)
    process(table, seg, tsk)
    return True