"""TCP socks: lookup tables, port binding, user calls and the TIME-WAIT timer."""

from __future__ import annotations

import logging
import threading
from typing import Optional

from .headers import (
    IP_P_TCP,
    TCP_DEFAULT_WINDOW,
    TCP_F_PUSH,
    TCP_MAX_BACKLOG,
    TcpState,
)
from .network import Network
from .sock import Sock, SockAddr, SocketError
from .tcp_output import SEQ_MASK, send_fin, send_syn, send_text
from .tcp_reass import TCP_TIMEWAIT_TIMEOUT, free_buf, free_reass
from .wait import Wait

TCP_EHASH_SIZE = 0x40
TCP_EHASH_MASK = TCP_EHASH_SIZE - 1
TCP_LHASH_SIZE = 0x20
TCP_LHASH_MASK = TCP_LHASH_SIZE - 1
TCP_BHASH_SIZE = 0x100
TCP_BHASH_MASK = TCP_BHASH_SIZE - 1
TCP_BPORT_MIN = 0x8000
TCP_BPORT_MAX = 0xF000

ISS_START = 12345678

log = logging.getLogger(__name__)


class _DeadParent:
    """Marks a child that has been accepted and no longer belongs to a listener."""

    def __repr__(self) -> str:
        return "DEAD_PARENT"


DEAD_PARENT = _DeadParent()


def _ehashfn(src: int, dst: int, src_port: int, dst_port: int) -> int:
    value = (src ^ src_port) ^ (dst ^ dst_port)
    value ^= value >> 16
    value ^= value >> 8
    return value & TCP_EHASH_MASK


class TcpTable:
    """Established, listening and bound TCP socks plus the TIME-WAIT list."""

    def __init__(self, network: Network) -> None:
        self.network = network
        self.etable: list[list[TcpSock]] = [[] for _ in range(TCP_EHASH_SIZE)]
        self.ltable: list[list[TcpSock]] = [[] for _ in range(TCP_LHASH_SIZE)]
        self.btable: list[list[TcpSock]] = [[] for _ in range(TCP_BHASH_SIZE)]
        self.bfree = TCP_BPORT_MAX - TCP_BPORT_MIN + 1
        self.tcp_id = 0
        self.timewait: list[TcpSock] = []
        self._defport = TCP_BPORT_MIN
        self._iss = ISS_START
        self._lock = threading.RLock()

    def alloc_sock(self, protocol: int) -> "TcpSock":
        """New closed TCP sock; any protocol other than TCP or 0 is refused."""
        if protocol and protocol != IP_P_TCP:
            raise SocketError("protocol is not TCP")
        tsk = TcpSock(self, protocol or IP_P_TCP)
        self.tcp_id = (self.tcp_id + 1) & 0xFFFF
        return tsk

    def _lookup_established(self, src, dst, src_port, dst_port) -> Optional["TcpSock"]:
        bucket = self.etable[_ehashfn(src, dst, src_port, dst_port)]
        return next((sk for sk in bucket
                     if sk.src_addr == dst and sk.dst_addr == src
                     and sk.src_port == dst_port and sk.dst_port == src_port), None)

    def _lookup_listen(self, addr: int, port: int) -> Optional["TcpSock"]:
        bucket = self.ltable[port & TCP_LHASH_MASK]
        return next((sk for sk in bucket
                     if (not sk.src_addr or sk.src_addr == addr)
                     and sk.src_port == port), None)

    def lookup(self, src: int, dst: int, src_port: int, dst_port: int) -> Optional["TcpSock"]:
        """Sock for a segment from ``src:src_port`` to ``dst:dst_port``.

        A connection matching all four values wins over a listener.
        """
        with self._lock:
            sk = self._lookup_established(src, dst, src_port, dst_port)
            if sk is None:
                sk = self._lookup_listen(dst, dst_port)
            return sk

    def port_used(self, port: int) -> bool:
        with self._lock:
            return any(tsk.src_port == port for tsk in self.btable[port & TCP_BHASH_MASK])

    def get_port(self) -> int:
        """Next free port from the automatic range."""
        with self._lock:
            if self.bfree <= 0:
                raise SocketError("no free TCP port")
            while self.port_used(self._defport):
                self._defport += 1
                if self._defport > TCP_BPORT_MAX:
                    self._defport = TCP_BPORT_MIN
            port = self._defport
            self._defport += 1
            if self._defport > TCP_BPORT_MAX:
                self._defport = TCP_BPORT_MIN
            return port

    def _bind(self, tsk: "TcpSock", port: int) -> None:
        with self._lock:
            if port and self.port_used(port):
                raise SocketError(f"TCP port {port} already in use")
            if not port:
                port = self.get_port()
            self.bfree -= 1
            tsk.src_port = port
            tsk.bhash = port & TCP_BHASH_MASK
            bucket = self.btable[tsk.bhash]
            bucket.insert(0, tsk)
            tsk._bbucket = bucket

    def hash(self, tsk: "TcpSock") -> None:
        """Enter ``tsk`` into the listen or established table."""
        with self._lock:
            if tsk.state == TcpState.CLOSED:
                raise SocketError("closed sock cannot be hashed")
            if tsk.state == TcpState.LISTEN:
                tsk.hash_value = tsk.src_port & TCP_LHASH_MASK
                bucket = self.ltable[tsk.hash_value]
            else:
                value = _ehashfn(tsk.src_addr, tsk.dst_addr, tsk.src_port, tsk.dst_port)
                bucket = self.etable[value]
                if any(sk.src_addr == tsk.src_addr and sk.dst_addr == tsk.dst_addr
                       and sk.src_port == tsk.src_port and sk.dst_port == tsk.dst_port
                       for sk in bucket):
                    raise SocketError("connection already exists")
                tsk.hash_value = value
            tsk.add_hash(bucket)

    def unhash(self, tsk: "TcpSock") -> None:
        with self._lock:
            tsk.del_hash()
            tsk.hash_value = 0

    def unbhash(self, tsk: "TcpSock") -> None:
        """Release the bound port of ``tsk``; harmless when not bound."""
        with self._lock:
            if tsk._bbucket is not None:
                self.bfree += 1
                tsk._bbucket.remove(tsk)
                tsk._bbucket = None

    def new_iss(self) -> int:
        """Next initial send sequence number."""
        with self._lock:
            self._iss += 1
            if self._iss >= 0xFFFFFFFF:
                self._iss = ISS_START
            return self._iss

    def set_timewait_timer(self, tsk: "TcpSock") -> None:
        """Enter TIME-WAIT and start the 2MSL timer."""
        tsk.set_state(TcpState.TIME_WAIT)
        with self._lock:
            tsk.timewait_timeout = TCP_TIMEWAIT_TIMEOUT
            if tsk not in self.timewait:
                self.timewait.insert(0, tsk)

    def timewait_tick(self, delta: int) -> list:
        """Age TIME-WAIT timers by ``delta`` microseconds; return the socks closed."""
        expired = []
        with self._lock:
            for tsk in list(self.timewait):
                tsk.timewait_timeout -= delta
                if tsk.timewait_timeout > 0:
                    continue
                self.timewait.remove(tsk)
                if tsk.parent is None:
                    self.unbhash(tsk)
                self.unhash(tsk)
                tsk.set_state(TcpState.CLOSED)
                expired.append(tsk)
        return expired


class TcpSock(Sock):
    """A TCP connection endpoint with its transmission control block."""

    def __init__(self, table: TcpTable, protocol: int = IP_P_TCP) -> None:
        super().__init__(protocol)
        self.table = table
        self.state = TcpState.CLOSED
        self.bhash = 0
        self._bbucket: Optional[list] = None
        self.accept_backlog = 0
        self.backlog = 0
        self.listen_queue: list[TcpSock] = []
        self.accept_queue: list[TcpSock] = []
        self.timewait_timeout = 0
        self.wait_accept: Optional[Wait] = None
        self.wait_connect: Optional[Wait] = None
        self.parent = None
        self.flags = 0
        self.rcv_buf = None
        self.rcv_reass: list = []
        self.snd_una = 0
        self.snd_nxt = 0
        self.snd_wnd = 0
        self.snd_up = 0
        self.snd_wl1 = 0
        self.snd_wl2 = 0
        self.iss = 0
        self.rcv_nxt = 0
        self.rcv_wnd = TCP_DEFAULT_WINDOW
        self.rcv_up = 0
        self.irs = 0
        self._own_wait = Wait()

    @property
    def ip_id(self) -> int:
        return self.table.tcp_id

    @property
    def network(self) -> Network:
        return self.table.network

    def _user_wait(self) -> Wait:
        wait = getattr(self.socket, "sleep", None)
        return wait if wait is not None else self._own_wait

    def set_state(self, state) -> None:
        state = TcpState(state)
        log.debug("State from %s to %s", TcpState(self.state).label(), state.label())
        self.state = state

    def set_port(self, port: int) -> None:
        self.table._bind(self, port)

    def hash(self) -> None:
        self.table.hash(self)

    def unhash(self) -> None:
        self.table.unhash(self)

    def connect(self, addr: SockAddr) -> None:
        """Active open: send SYN and block until established or refused."""
        if self.state != TcpState.CLOSED:
            raise SocketError("connection already in progress")
        self.dst_addr = addr.dst_addr
        self.dst_port = addr.dst_port
        self.set_state(TcpState.SYN_SENT)
        self.iss = self.table.new_iss()
        self.snd_una = self.iss
        self.snd_nxt = (self.iss + 1) & SEQ_MASK
        try:
            self.table.hash(self)
        except SocketError:
            self.set_state(TcpState.CLOSED)
            raise
        # set before sending: a local peer may answer at once
        self.wait_connect = self._user_wait()
        send_syn(self.network, self)
        woken = self.wait_connect.sleep_on()
        self.wait_connect = None
        if not woken or self.state != TcpState.ESTABLISHED:
            self.table.unhash(self)
            self.table.unbhash(self)
            self.set_state(TcpState.CLOSED)
            raise SocketError("connection failed")

    def listen(self, backlog: int) -> None:
        if not self.src_port:
            raise SocketError("listen needs a bound port")
        if backlog > TCP_MAX_BACKLOG:
            raise SocketError("backlog too large")
        oldstate = self.state
        if oldstate not in (TcpState.CLOSED, TcpState.LISTEN):
            raise SocketError("sock cannot listen in this state")
        self.backlog = backlog
        self.set_state(TcpState.LISTEN)
        if oldstate != TcpState.LISTEN:
            self.hash()

    def accept_queue_full(self) -> bool:
        return self.accept_backlog >= self.backlog

    def accept_enqueue(self) -> None:
        """Move this child from its parent's listen queue to the accept queue."""
        parent = self.parent
        for queue in (parent.listen_queue, parent.accept_queue):
            if self in queue:
                queue.remove(self)
        parent.accept_queue.insert(0, self)
        parent.accept_backlog += 1

    def accept_dequeue(self) -> "TcpSock":
        if not self.accept_queue:
            raise SocketError("accept queue is empty")
        child = self.accept_queue.pop(0)
        self.accept_backlog -= 1
        return child

    def accept(self) -> "TcpSock":
        """Next established child, blocking until one arrives."""
        while not self.accept_queue:
            self.wait_accept = self._user_wait()
            woken = self.wait_accept.sleep_on()
            self.wait_accept = None
            if not woken:
                raise SocketError("accept interrupted")
        child = self.accept_dequeue()
        child.parent = DEAD_PARENT
        return child

    def _clear_listen_queue(self) -> None:
        while self.listen_queue:
            child = self.listen_queue.pop(0)
            if child.state == TcpState.SYN_RECV:
                child.parent = None
                self.table.unhash(child)

    def close(self) -> None:
        """User CLOSE call (RFC 793)."""
        if self.state == TcpState.LISTEN:
            self._clear_listen_queue()
            self.unhash()
            self.table.unbhash(self)
            self.set_state(TcpState.CLOSED)
        elif self.state == TcpState.ESTABLISHED:
            self.set_state(TcpState.FIN_WAIT1)
            send_fin(self.network, self)
            self.snd_nxt = (self.snd_nxt + 1) & SEQ_MASK
        elif self.state == TcpState.CLOSE_WAIT:
            self.set_state(TcpState.LAST_ACK)
            send_fin(self.network, self)
            self.snd_nxt = (self.snd_nxt + 1) & SEQ_MASK
        free_buf(self)
        free_reass(self)

    def send_buf(self, data, addr: Optional[SockAddr] = None) -> int:
        if self.state not in (TcpState.ESTABLISHED, TcpState.CLOSE_WAIT):
            raise SocketError("connection cannot send in this state")
        return send_text(self.network, self, data)

    def _buffered(self) -> bool:
        return self.rcv_buf is not None and self.rcv_buf.used() > 0

    def recv_buf(self, size: int) -> bytes:
        """Read up to ``size`` bytes, returning early on PUSH.

        Returns ``b""`` at end of stream in CLOSE-WAIT.
        """
        if self.state == TcpState.CLOSE_WAIT:
            if not self._buffered():
                return b""
        elif self.state not in (TcpState.ESTABLISHED, TcpState.FIN_WAIT1,
                                TcpState.FIN_WAIT2):
            raise SocketError("connection cannot receive in this state")

        out = bytearray()
        while len(out) < size:
            chunk = self.rcv_buf.read(size - len(out)) if self.rcv_buf is not None else b""
            self.rcv_wnd += len(chunk)
            out += chunk
            while not ((self.flags & TCP_F_PUSH) or self._buffered() or len(out) >= size):
                wait = self.recv_wait
                if wait is None or not wait.sleep_on():
                    if out:
                        return bytes(out)
                    raise SocketError("receive interrupted")
            if (self.flags & TCP_F_PUSH) and not self._buffered():
                self.flags &= ~TCP_F_PUSH
                break
        return bytes(out)

    def recv_notify(self) -> None:
        if self.recv_wait is not None:
            self.recv_wait.wake_up()