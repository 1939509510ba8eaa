import types

import pytest

from tapstack.headers import IP_P_UDP, TCP_DEFAULT_WINDOW, TCP_F_PUSH, TCPHeader, TcpState
from tapstack.network import RT_NONE, NetDevice, Network
from tapstack.sock import SockAddr, SocketError
from tapstack.tcp_reass import TCP_TIMEWAIT_TIMEOUT, write_buf
from tapstack.tcp_sock import (
    DEAD_PARENT,
    ISS_START,
    TCP_BPORT_MAX,
    TCP_BPORT_MIN,
    TcpTable,
)
from tapstack.wait import Wait

LOCAL = 0x0A000001
REMOTE = 0x0A000002
MASK = 0xFFFFFF00


@pytest.fixture
def table():
    dev = NetDevice("tap0", ipaddr=LOCAL, netmask=MASK)
    net = Network([dev])
    net.add_route(LOCAL, MASK, 0, 0, RT_NONE, dev)
    return TcpTable(net)


def established(table, lport, rport, bind=True):
    tsk = table.alloc_sock(0)
    if bind:
        tsk.set_port(lport)
    else:
        tsk.src_port = lport
    tsk.src_addr = LOCAL
    tsk.dst_addr = REMOTE
    tsk.dst_port = rport
    tsk.state = TcpState.ESTABLISHED
    tsk.hash()
    return tsk


def closed_wait_socket():
    wait = Wait()
    wait.close()
    return types.SimpleNamespace(sleep=wait)


def test_alloc_rejects_other_protocol(table):
    with pytest.raises(SocketError):
        table.alloc_sock(IP_P_UDP)


def test_alloc_defaults(table):
    tsk = table.alloc_sock(0)
    assert tsk.state == TcpState.CLOSED
    assert tsk.rcv_wnd == TCP_DEFAULT_WINDOW
    assert tsk.ip_id == table.tcp_id


def test_explicit_port_bind_and_release(table):
    tsk = table.alloc_sock(0)
    free_before = table.bfree
    tsk.set_port(80)
    assert table.port_used(80)
    assert table.bfree == free_before - 1
    other = table.alloc_sock(0)
    with pytest.raises(SocketError):
        other.set_port(80)
    table.unbhash(tsk)
    assert not table.port_used(80)
    assert table.bfree == free_before


def test_auto_port_starts_at_range_and_skips_used(table):
    first = table.alloc_sock(0)
    first.set_port(0)
    assert first.src_port == TCP_BPORT_MIN
    second = table.alloc_sock(0)
    second.set_port(0)
    assert second.src_port != first.src_port
    assert TCP_BPORT_MIN <= second.src_port <= TCP_BPORT_MAX


def test_no_free_port(table):
    table.bfree = 0
    with pytest.raises(SocketError):
        table.get_port()


def test_listen_requires_bind_and_valid_backlog(table):
    tsk = table.alloc_sock(0)
    with pytest.raises(SocketError):
        tsk.listen(1)
    tsk.set_port(80)
    with pytest.raises(SocketError):
        tsk.listen(1000)
    tsk.listen(5)
    assert tsk.state == TcpState.LISTEN
    assert table.lookup(REMOTE, LOCAL, 4000, 80) is tsk


def test_listen_from_established_fails(table):
    tsk = established(table, 80, 5000)
    with pytest.raises(SocketError):
        tsk.listen(1)


def test_established_lookup_and_conflict(table):
    listener = table.alloc_sock(0)
    listener.set_port(80)
    listener.listen(1)
    conn = established(table, 80, 5000, bind=False)
    assert table.lookup(REMOTE, LOCAL, 5000, 80) is conn
    assert table.lookup(REMOTE, LOCAL, 5001, 80) is listener
    dup = table.alloc_sock(0)
    dup.src_addr, dup.dst_addr, dup.src_port, dup.dst_port = LOCAL, REMOTE, 80, 5000
    dup.state = TcpState.ESTABLISHED
    with pytest.raises(SocketError):
        table.hash(dup)


def test_hash_closed_fails(table):
    tsk = table.alloc_sock(0)
    with pytest.raises(SocketError):
        table.hash(tsk)


def test_unhash_removes_from_lookup(table):
    conn = established(table, 80, 5000)
    table.unhash(conn)
    assert table.lookup(REMOTE, LOCAL, 5000, 80) is None
    assert conn.hash_value == 0


def test_new_iss_increments(table):
    first = table.new_iss()
    assert first == ISS_START + 1
    assert table.new_iss() == first + 1


def test_accept_queue_is_lifo(table):
    parent = table.alloc_sock(0)
    parent.set_port(80)
    parent.listen(2)
    kids = [table.alloc_sock(0) for _ in range(2)]
    for kid in kids:
        kid.parent = parent
        parent.listen_queue.insert(0, kid)
    for kid in kids:
        kid.accept_enqueue()
    assert parent.listen_queue == []
    assert parent.accept_queue_full()
    assert parent.accept_dequeue() is kids[1]
    assert not parent.accept_queue_full()
    child = parent.accept()
    assert child is kids[0]
    assert child.parent is DEAD_PARENT
    assert parent.accept_backlog == 0


def test_accept_dequeue_empty(table):
    with pytest.raises(SocketError):
        table.alloc_sock(0).accept_dequeue()


def test_accept_interrupted(table):
    parent = table.alloc_sock(0)
    parent.set_port(80)
    parent.listen(1)
    parent.socket = closed_wait_socket()
    with pytest.raises(SocketError):
        parent.accept()


def test_connect_failure_sends_syn_and_cleans_up(table):
    tsk = table.alloc_sock(0)
    tsk.set_port(1234)
    tsk.src_addr = LOCAL
    tsk.socket = closed_wait_socket()
    with pytest.raises(SocketError):
        tsk.connect(SockAddr(dst_addr=REMOTE, dst_port=80))
    assert tsk.state == TcpState.CLOSED
    assert not tsk.hashed
    assert not table.port_used(1234)
    header = TCPHeader.unpack(table.network.sent[-1].payload)
    assert header.syn and not header.ack
    assert header.seq == tsk.iss
    assert header.dst_port == 80


def test_connect_when_not_closed(table):
    tsk = established(table, 80, 5000)
    with pytest.raises(SocketError):
        tsk.connect(SockAddr(dst_addr=REMOTE, dst_port=81))


def test_close_established_sends_fin(table):
    tsk = established(table, 80, 5000)
    tsk.snd_nxt = 100
    tsk.rcv_nxt = 200
    tsk.close()
    assert tsk.state == TcpState.FIN_WAIT1
    assert tsk.snd_nxt == 101
    header = TCPHeader.unpack(table.network.sent[-1].payload)
    assert header.fin and header.ack
    assert header.seq == 100
    assert header.ack_seq == 200


def test_close_wait_goes_to_last_ack(table):
    tsk = established(table, 80, 5000)
    tsk.state = TcpState.CLOSE_WAIT
    tsk.close()
    assert tsk.state == TcpState.LAST_ACK


def test_close_listener_drops_half_open_children(table):
    parent = table.alloc_sock(0)
    parent.set_port(80)
    parent.listen(1)
    child = table.alloc_sock(0)
    child.src_addr, child.dst_addr, child.src_port, child.dst_port = LOCAL, REMOTE, 80, 6000
    child.state = TcpState.SYN_RECV
    table.hash(child)
    child.parent = parent
    parent.listen_queue.insert(0, child)
    parent.close()
    assert parent.state == TcpState.CLOSED
    assert child.parent is None
    assert not child.hashed
    assert not table.port_used(80)
    assert table.lookup(REMOTE, LOCAL, 7000, 80) is None


def test_send_buf_state_and_data(table):
    tsk = table.alloc_sock(0)
    with pytest.raises(SocketError):
        tsk.send_buf(b"data")
    conn = established(table, 80, 5000)
    conn.route = table.network.lookup(REMOTE)
    conn.snd_wnd = 1000
    assert conn.send_buf(b"hello") == 5
    packet = table.network.sent[-1]
    assert bytes(packet.payload).endswith(b"hello")
    assert TCPHeader.unpack(packet.payload).psh


def test_recv_buf_returns_pushed_data(table):
    tsk = established(table, 80, 5000)
    tsk.recv_wait = Wait()
    write_buf(tsk, b"hello")
    tsk.flags |= TCP_F_PUSH
    assert tsk.recv_buf(100) == b"hello"
    assert tsk.rcv_wnd == TCP_DEFAULT_WINDOW
    assert not tsk.flags & TCP_F_PUSH


def test_recv_buf_partial_read(table):
    tsk = established(table, 80, 5000)
    tsk.recv_wait = Wait()
    write_buf(tsk, b"hello")
    tsk.flags |= TCP_F_PUSH
    assert tsk.recv_buf(3) == b"hel"
    assert tsk.recv_buf(10) == b"lo"


def test_recv_buf_errors_and_eof(table):
    tsk = table.alloc_sock(0)
    with pytest.raises(SocketError):
        tsk.recv_buf(10)
    conn = established(table, 80, 5000)
    conn.state = TcpState.CLOSE_WAIT
    assert conn.recv_buf(10) == b""
    conn.state = TcpState.ESTABLISHED
    wait = Wait()
    wait.close()
    conn.recv_wait = wait
    with pytest.raises(SocketError):
        conn.recv_buf(10)


def test_recv_notify_wakes_reader(table):
    tsk = table.alloc_sock(0)
    wait = Wait()
    tsk.recv_wait = wait
    tsk.recv_notify()
    assert wait.sleep_on() is True


def test_timewait_expires_after_two_msl(table):
    tsk = established(table, 80, 5000)
    table.set_timewait_timer(tsk)
    assert tsk.state == TcpState.TIME_WAIT
    assert table.timewait_tick(TCP_TIMEWAIT_TIMEOUT // 2) == []
    assert tsk.state == TcpState.TIME_WAIT
    assert table.timewait_tick(TCP_TIMEWAIT_TIMEOUT // 2) == [tsk]
    assert tsk.state == TcpState.CLOSED
    assert not tsk.hashed
    assert not table.port_used(80)
    assert table.timewait == []


def test_timewait_child_keeps_no_bind(table):
    parent = table.alloc_sock(0)
    parent.set_port(80)
    child = established(table, 80, 5000, bind=False)
    child.parent = DEAD_PARENT
    table.set_timewait_timer(child)
    table.timewait_tick(TCP_TIMEWAIT_TIMEOUT)
    assert child.state == TcpState.CLOSED
    assert table.port_used(80)