"""TCP state machine for arriving segments (RFC 793, SEGMENT ARRIVES)."""

from __future__ import annotations

import logging
from typing import Optional

from .headers import TCP_F_ACKDELAY, TCP_F_ACKNOW, TCP_F_PUSH, TcpState
from .network import Network
from .sock import SocketError
from .tcp_output import SEQ_MASK, TcpSegment, send_ack, send_reset, send_synack
from .tcp_reass import TCP_TIMEWAIT_TIMEOUT, recv_text
from .tcp_sock import TcpSock, TcpTable

log = logging.getLogger(__name__)

_ACK_PROCESSING_STATES = (
    TcpState.ESTABLISHED,
    TcpState.CLOSE_WAIT,
    TcpState.LAST_ACK,
    TcpState.FIN_WAIT1,
    TcpState.CLOSING,
)
_TEXT_STATES = (TcpState.ESTABLISHED, TcpState.FIN_WAIT1, TcpState.FIN_WAIT2)


def seq_check(seg, tsk) -> bool:
    """True when the segment falls inside the receive window."""
    rcv_end = tsk.rcv_nxt + (tsk.rcv_wnd or 1)
    if seg.seq < rcv_end and tsk.rcv_nxt <= seg.lastseq:
        return True
    log.debug("rcvnxt:%u <= seq:%u < rcv_end:%u", tsk.rcv_nxt, seg.seq, rcv_end)
    return False


def _set_window(tsk, seg) -> None:
    tsk.snd_wnd = seg.wnd
    tsk.snd_wl1 = seg.seq
    tsk.snd_wl2 = seg.ack


def update_window(tsk, seg) -> None:
    """Take the segment's window if it is newer than the last update."""
    if (tsk.snd_una <= seg.ack <= tsk.snd_nxt
            and (tsk.snd_wl1 < seg.seq
                 or (tsk.snd_wl1 == seg.seq and tsk.snd_wl2 <= seg.ack))):
        _set_window(tsk, seg)


def _closed(net: Network, tsk: Optional[TcpSock], seg: TcpSegment) -> None:
    # a sock that exists but is closed drops silently
    if tsk is None:
        send_reset(net, None, seg)


def _listen_child(table: TcpTable, tsk: TcpSock, seg: TcpSegment) -> Optional[TcpSock]:
    child = table.alloc_sock(tsk.protocol)
    child.set_state(TcpState.SYN_RECV)
    child.src_addr = seg.ip.dst
    child.dst_addr = seg.ip.src
    child.src_port = seg.tcp.dst_port
    child.dst_port = seg.tcp.src_port
    try:
        table.hash(child)
    except SocketError:
        return None
    child.parent = tsk
    tsk.listen_queue.insert(0, child)
    return child


def _listen(table: TcpTable, seg: TcpSegment, tsk: TcpSock) -> None:
    tcp = seg.tcp
    if tcp.rst:
        return
    if tcp.ack:
        send_reset(table.network, tsk, seg)
        return
    if not tcp.syn:
        return
    child = _listen_child(table, tsk, seg)
    if child is None:
        log.debug("cannot alloc new sock")
        return
    child.irs = seg.seq
    child.iss = table.new_iss()
    child.rcv_nxt = (seg.seq + 1) & SEQ_MASK
    send_synack(table.network, child, seg)
    child.snd_nxt = (child.iss + 1) & SEQ_MASK
    child.snd_una = child.iss


def _synsent(table: TcpTable, seg: TcpSegment, tsk: TcpSock) -> None:
    net = table.network
    tcp = seg.tcp
    if tcp.ack and (seg.ack <= tsk.iss or seg.ack > tsk.snd_nxt):
        send_reset(net, tsk, seg)
        return
    if tcp.rst:
        if tcp.ack:
            log.debug("connection reset")
            tsk.set_state(TcpState.CLOSED)
            if tsk.wait_connect is not None:
                tsk.wait_connect.wake_up()
        return
    if not tcp.syn:
        return
    tsk.irs = seg.seq
    tsk.rcv_nxt = (seg.seq + 1) & SEQ_MASK
    if tcp.ack:
        tsk.snd_una = seg.ack
    if tsk.snd_una > tsk.iss:
        tsk.set_state(TcpState.ESTABLISHED)
        _set_window(tsk, seg)
        send_ack(net, tsk, seg)
        if tsk.wait_connect is not None:
            tsk.wait_connect.wake_up()
    else:
        # simultaneous open
        tsk.set_state(TcpState.SYN_RECV)
        send_synack(net, tsk, seg)


def _synrecv_ack(tsk: TcpSock) -> bool:
    parent = tsk.parent
    if parent is None:
        return True
    if getattr(parent, "state", None) != TcpState.LISTEN:
        return False
    if parent.accept_queue_full():
        return False
    tsk.accept_enqueue()
    log.debug("Passive three-way handshake successes!")
    if parent.wait_accept is not None:
        parent.wait_accept.wake_up()
    return True


def _synchronized(table: TcpTable, seg: TcpSegment, tsk: TcpSock) -> None:
    net = table.network
    tcp = seg.tcp

    if not seq_check(seg, tsk):
        if not tcp.rst:
            tsk.flags |= TCP_F_ACKNOW
        return

    if tcp.rst:
        if tsk.state == TcpState.SYN_RECV:
            if tsk.parent is not None:
                table.unhash(tsk)
            elif tsk.wait_connect is not None:
                tsk.wait_connect.wake_up()
        tsk.set_state(TcpState.CLOSED)
        table.unhash(tsk)
        table.unbhash(tsk)
        return

    if tcp.syn:
        send_reset(net, tsk, seg)
        if tsk.state == TcpState.SYN_RECV and tsk.parent is not None:
            table.unhash(tsk)
        tsk.set_state(TcpState.CLOSED)

    if not tcp.ack:
        return

    if tsk.state == TcpState.SYN_RECV:
        if tsk.snd_una <= seg.ack <= tsk.snd_nxt:
            if not _synrecv_ack(tsk):
                return
            tsk.snd_una = seg.ack
            _set_window(tsk, seg)
            tsk.set_state(TcpState.ESTABLISHED)
            if tsk.parent is None and tsk.wait_connect is not None:
                tsk.wait_connect.wake_up()
        else:
            send_reset(net, tsk, seg)
            return
    elif tsk.state in _ACK_PROCESSING_STATES:
        if tsk.snd_una < seg.ack <= tsk.snd_nxt:
            tsk.snd_una = seg.ack
            if tsk.state == TcpState.FIN_WAIT1:
                tsk.set_state(TcpState.FIN_WAIT2)
            elif tsk.state == TcpState.CLOSING:
                table.set_timewait_timer(tsk)
                return
            elif tsk.state == TcpState.LAST_ACK:
                tsk.set_state(TcpState.CLOSED)
                table.unhash(tsk)
                table.unbhash(tsk)
                return
        elif seg.ack > tsk.snd_nxt:
            return
        # a duplicate ACK is ignored and processing goes on
        update_window(tsk, seg)

    if tsk.state in _TEXT_STATES and (tcp.psh or seg.dlen > 0):
        recv_text(tsk, seg)

    if tcp.fin:
        if tsk.state in (TcpState.SYN_RECV, TcpState.ESTABLISHED):
            tsk.set_state(TcpState.CLOSE_WAIT)
            tsk.flags |= TCP_F_PUSH
            tsk.recv_notify()
        elif tsk.state == TcpState.FIN_WAIT1:
            tsk.set_state(TcpState.CLOSING)
        elif tsk.state == TcpState.TIME_WAIT:
            tsk.timewait_timeout = TCP_TIMEWAIT_TIMEOUT
        elif tsk.state == TcpState.FIN_WAIT2:
            table.set_timewait_timer(tsk)
        tsk.rcv_nxt = (seg.seq + 1) & SEQ_MASK
        tsk.flags |= TCP_F_ACKNOW


def process(table: TcpTable, seg: TcpSegment, tsk: Optional[TcpSock]) -> None:
    """Run one arriving segment through the state machine of ``tsk``."""
    if tsk is None or tsk.state == TcpState.CLOSED:
        _closed(table.network, tsk, seg)
        return
    log.debug("%s", TcpState(tsk.state).label())
    if tsk.state == TcpState.LISTEN:
        _listen(table, seg, tsk)
        return
    if tsk.state == TcpState.SYN_SENT:
        _synsent(table, seg, tsk)
        return
    _synchronized(table, seg, tsk)
    if tsk.flags & (TCP_F_ACKNOW | TCP_F_ACKDELAY):
        send_ack(table.network, tsk, seg)