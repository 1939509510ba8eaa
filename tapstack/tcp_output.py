"""Parsing incoming TCP segments and building the segments a connection sends.

The ``tsk`` arguments are TCP socks. They must provide ``src_addr``,
``dst_addr``, ``src_port``, ``dst_port``, ``route``, ``ip_id``, ``iss``,
``snd_nxt``, ``snd_wnd``, ``rcv_nxt`` and ``rcv_wnd``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .headers import (
    IP_HRD_SZ,
    IP_P_TCP,
    TCP_DEFAULT_TTL,
    TCP_HRD_SZ,
    IPHeader,
    TCPHeader,
    ip_to_str,
    pseudo_header_checksum,
)
from .network import Network, Packet
from .sock import SocketError

SEQ_MASK = 0xFFFFFFFF

log = logging.getLogger(__name__)


@dataclass
class TcpSegment:
    """Host-order view of one received segment (RFC 793 SEG.* variables)."""

    seq: int
    ack: int
    lastseq: int
    length: int
    dlen: int
    wnd: int
    up: int
    text: bytes
    ip: IPHeader
    tcp: TCPHeader
    prc: int = 0

    @classmethod
    def from_packet(cls, packet: Packet) -> "TcpSegment":
        """Parse the TCP header and text carried by ``packet``."""
        raw = bytes(packet.payload)
        tcp = TCPHeader.unpack(raw)
        hlen = tcp.header_length
        dlen = packet.ip.data_length - hlen
        if dlen < 0:
            raise ValueError("TCP segment shorter than its header")
        text = raw[hlen:hlen + dlen]
        dlen = len(text)
        length = dlen + int(tcp.syn) + int(tcp.fin)
        lastseq = (tcp.seq + length - 1) & SEQ_MASK if length else tcp.seq
        seg = cls(
            seq=tcp.seq,
            ack=tcp.ack_seq if tcp.ack else 0,
            lastseq=lastseq,
            length=length,
            dlen=dlen,
            wnd=tcp.window,
            up=tcp.urgptr,
            text=text,
            ip=packet.ip,
            tcp=tcp,
        )
        log.debug("from %s:%d to %s:%d\tseq:%u(%d:%d) ack:%u %s",
                  ip_to_str(packet.ip.src), tcp.src_port,
                  ip_to_str(packet.ip.dst), tcp.dst_port,
                  tcp.seq, dlen, length, tcp.ack_seq, tcp.flags_string())
        return seg


def _window(tsk) -> int:
    return max(0, min(tsk.rcv_wnd, 0xFFFF))


def send_out(net: Network, tsk, header: TCPHeader, payload,
             seg: Optional[TcpSegment]) -> Optional[Packet]:
    """Wrap ``header`` and ``payload`` in an IP datagram and send it.

    Replies to ``seg`` go back to its sender; otherwise the connection's
    peer is used. Returns the sent packet, or None when there is no route.
    """
    if seg is not None:
        daddr, saddr = seg.ip.src, seg.ip.dst
    elif tsk is not None:
        daddr, saddr = tsk.dst_addr, tsk.src_addr
    else:
        raise ValueError("a segment needs a connection or an incoming segment")
    body = bytes(payload)
    header.checksum = 0
    ip = IPHeader(
        dst=daddr,
        protocol=IP_P_TCP,
        total_length=IP_HRD_SZ + len(header.pack()) + len(body),
        ident=tsk.ip_id & 0xFFFF if tsk is not None else 0,
        ttl=TCP_DEFAULT_TTL,
    )
    packet = Packet(ip)
    if tsk is not None and tsk.route is not None:
        packet.route = tsk.route
    else:
        try:
            net.route_output(packet)
        except LookupError as exc:
            log.debug("drop segment: %s", exc)
            return None
        if tsk is not None:
            tsk.route = packet.route
    ip.src = saddr
    header.checksum = pseudo_header_checksum(saddr, daddr, IP_P_TCP, header.pack() + body)
    packet.payload = header.pack() + body
    net.send(packet)
    return packet


def _reply_header(seg: TcpSegment) -> TCPHeader:
    return TCPHeader(src_port=seg.tcp.dst_port, dst_port=seg.tcp.src_port)


def send_reset(net: Network, tsk, seg: TcpSegment) -> Optional[Packet]:
    """Answer ``seg`` with a reset; never answers a reset. ``tsk`` may be None."""
    if seg.tcp.rst:
        return None
    header = _reply_header(seg)
    if seg.tcp.ack:
        header.seq = seg.tcp.ack_seq
    else:
        header.ack_seq = (seg.seq + seg.length) & SEQ_MASK
        header.ack = True
    header.rst = True
    log.debug("send RESET from %s:%d to %s:%d", ip_to_str(seg.ip.dst),
              header.src_port, ip_to_str(seg.ip.src), header.dst_port)
    return send_out(net, None, header, b"", seg)


def send_ack(net: Network, tsk, seg: Optional[TcpSegment]) -> Optional[Packet]:
    """Send <SEQ=SND.NXT><ACK=RCV.NXT><CTL=ACK>."""
    if seg is not None:
        if seg.tcp.rst:
            return None
        header = _reply_header(seg)
    else:
        header = TCPHeader(src_port=tsk.src_port, dst_port=tsk.dst_port)
    header.seq = tsk.snd_nxt & SEQ_MASK
    header.ack_seq = tsk.rcv_nxt & SEQ_MASK
    header.ack = True
    header.window = _window(tsk)
    log.debug("send ACK(%u) [WIN %d] to port %d", header.ack_seq, header.window,
              header.dst_port)
    return send_out(net, tsk, header, b"", seg)


def send_synack(net: Network, tsk, seg: TcpSegment) -> Optional[Packet]:
    """Send <SEQ=ISS><ACK=RCV.NXT><CTL=SYN,ACK> in reply to ``seg``."""
    if seg.tcp.rst:
        return None
    header = _reply_header(seg)
    header.seq = tsk.iss & SEQ_MASK
    header.ack_seq = tsk.rcv_nxt & SEQ_MASK
    header.syn = True
    header.ack = True
    header.window = _window(tsk)
    log.debug("send SYN(%u)/ACK(%u) [WIN %d] to %s:%d", header.seq, header.ack_seq,
              header.window, ip_to_str(seg.ip.src), header.dst_port)
    return send_out(net, tsk, header, b"", seg)


def send_syn(net: Network, tsk) -> Optional[Packet]:
    """Send the opening <SEQ=ISS><CTL=SYN> of an active open."""
    header = TCPHeader(
        src_port=tsk.src_port,
        dst_port=tsk.dst_port,
        seq=tsk.iss & SEQ_MASK,
        syn=True,
        window=_window(tsk),
    )
    log.debug("send SYN(%u) [WIN %d] to %s:%d", header.seq, header.window,
              ip_to_str(tsk.dst_addr), header.dst_port)
    return send_out(net, tsk, header, b"", None)


def send_fin(net: Network, tsk) -> Optional[Packet]:
    """Send <SEQ=SND.NXT><ACK=RCV.NXT><CTL=FIN,ACK>."""
    header = TCPHeader(
        src_port=tsk.src_port,
        dst_port=tsk.dst_port,
        seq=tsk.snd_nxt & SEQ_MASK,
        ack_seq=tsk.rcv_nxt & SEQ_MASK,
        fin=True,
        ack=True,
        window=_window(tsk),
    )
    log.debug("send FIN(%u)/ACK(%u) [WIN %d] to %s:%d", header.seq, header.ack_seq,
              header.window, ip_to_str(tsk.dst_addr), header.dst_port)
    return send_out(net, tsk, header, b"", None)


def send_text(net: Network, tsk, data) -> int:
    """Send as much of ``data`` as the send window allows; return the count.

    Segments are cut to fit the device MTU and the last one carries PSH.
    With a closed window an ACK asking for a window update is sent and
    :class:`SocketError` is raised.
    """
    payload = bytes(data)
    if tsk.route is None:
        raise SocketError("connection has no route")
    segsize = tsk.route.dev.mtu - IP_HRD_SZ - TCP_HRD_SZ
    if segsize <= 0:
        raise SocketError("device MTU too small for TCP")
    total = max(0, min(len(payload), tsk.snd_wnd))
    for start in range(0, total, segsize):
        chunk = payload[start:min(start + segsize, total)]
        header = TCPHeader(
            src_port=tsk.src_port,
            dst_port=tsk.dst_port,
            seq=tsk.snd_nxt & SEQ_MASK,
            ack_seq=tsk.rcv_nxt & SEQ_MASK,
            ack=True,
            psh=start + len(chunk) >= total,
            window=_window(tsk),
        )
        tsk.snd_nxt = (tsk.snd_nxt + len(chunk)) & SEQ_MASK
        tsk.snd_wnd -= len(chunk)
        log.debug("send TEXT(%u:%d) [WIN %d] to %s:%d", header.seq, len(chunk),
                  header.window, ip_to_str(tsk.dst_addr), header.dst_port)
        send_out(net, tsk, header, chunk, None)
    if not total:
        send_ack(net, tsk, None)
        raise SocketError("send window is closed")
    return total