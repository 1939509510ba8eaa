from types import SimpleNamespace

from tapstack.headers import IP_HRD_SZ, IP_P_TCP, IPHeader, TCPHeader, TcpState, pseudo_header_checksum
from tapstack.network import RT_NONE, NetDevice, Network, Packet
from tapstack.tcp_output import TcpSegment
from tapstack.tcp_sock import TcpTable
from tapstack.tcp_state import process, seq_check, update_window
from tapstack.wait import Wait

LOCAL = 0x0A000001
REMOTE = 0x0A000002
MASK = 0xFFFFFF00


def make_table():
    dev = NetDevice("veth", ipaddr=LOCAL, netmask=MASK)
    net = Network([dev])
    net.add_route(LOCAL, MASK, 0, 0, RT_NONE, dev)
    return TcpTable(net)


def segment(seq=0, ack_seq=0, text=b"", sport=4000, dport=80, **flags):
    header = TCPHeader(src_port=sport, dst_port=dport, seq=seq, ack_seq=ack_seq,
                       window=1000, **flags)
    header.checksum = pseudo_header_checksum(REMOTE, LOCAL, IP_P_TCP, header.pack() + text)
    raw = header.pack() + text
    ip = IPHeader(src=REMOTE, dst=LOCAL, protocol=IP_P_TCP, total_length=IP_HRD_SZ + len(raw))
    return TcpSegment.from_packet(Packet(ip, raw))


def last_sent(table):
    return TCPHeader.unpack(table.network.sent[-1].payload)


def listener(table):
    tsk = table.alloc_sock(0)
    tsk.set_port(80)
    tsk.listen(5)
    return tsk


def established(table, iss=500, irs=100):
    tsk = table.alloc_sock(0)
    tsk.src_addr = LOCAL
    tsk.set_port(80)
    tsk.dst_addr = REMOTE
    tsk.dst_port = 4000
    tsk.state = TcpState.ESTABLISHED
    tsk.iss = iss
    tsk.snd_una = tsk.snd_nxt = iss + 1
    tsk.irs = irs
    tsk.rcv_nxt = irs + 1
    tsk.snd_wnd = 1000
    table.hash(tsk)
    return tsk


def test_seq_check_window():
    tsk = SimpleNamespace(rcv_nxt=100, rcv_wnd=10)
    assert seq_check(SimpleNamespace(seq=100, lastseq=100), tsk) is True
    assert seq_check(SimpleNamespace(seq=110, lastseq=110), tsk) is False
    assert seq_check(SimpleNamespace(seq=99, lastseq=99), tsk) is False


def test_seq_check_zero_window():
    tsk = SimpleNamespace(rcv_nxt=100, rcv_wnd=0)
    assert seq_check(SimpleNamespace(seq=100, lastseq=100), tsk) is True
    assert seq_check(SimpleNamespace(seq=101, lastseq=101), tsk) is False


def test_update_window_accepts_newer():
    tsk = SimpleNamespace(snd_una=10, snd_nxt=20, snd_wl1=5, snd_wl2=0, snd_wnd=0)
    update_window(tsk, SimpleNamespace(ack=15, seq=6, wnd=500))
    assert (tsk.snd_wnd, tsk.snd_wl1, tsk.snd_wl2) == (500, 6, 15)


def test_update_window_ignores_ack_out_of_range():
    tsk = SimpleNamespace(snd_una=10, snd_nxt=20, snd_wl1=5, snd_wl2=0, snd_wnd=7)
    update_window(tsk, SimpleNamespace(ack=25, seq=6, wnd=500))
    assert tsk.snd_wnd == 7


def test_no_sock_answers_with_reset():
    table = make_table()
    process(table, segment(seq=1000, syn=True), None)
    reply = last_sent(table)
    assert reply.rst and reply.ack
    assert reply.ack_seq == 1001


def test_listen_syn_creates_child():
    table = make_table()
    lsk = listener(table)
    process(table, segment(seq=1000, syn=True), lsk)
    assert len(lsk.listen_queue) == 1
    child = lsk.listen_queue[0]
    assert child.state == TcpState.SYN_RECV
    assert child.rcv_nxt == 1001
    assert child.snd_nxt == child.iss + 1
    reply = last_sent(table)
    assert reply.syn and reply.ack
    assert reply.seq == child.iss and reply.ack_seq == 1001


def test_listen_handshake_completes_and_accepts():
    table = make_table()
    lsk = listener(table)
    process(table, segment(seq=1000, syn=True), lsk)
    child = lsk.listen_queue[0]
    found = table.lookup(REMOTE, LOCAL, 4000, 80)
    assert found is child
    process(table, segment(seq=1001, ack_seq=child.iss + 1, ack=True), found)
    assert child.state == TcpState.ESTABLISHED
    assert lsk.accept_queue == [child]
    assert lsk.accept() is child


def test_listen_ack_is_reset():
    table = make_table()
    lsk = listener(table)
    process(table, segment(seq=1, ack_seq=777, ack=True), lsk)
    reply = last_sent(table)
    assert reply.rst and reply.seq == 777
    assert lsk.listen_queue == []


def test_listen_ignores_rst():
    table = make_table()
    lsk = listener(table)
    process(table, segment(seq=1, rst=True), lsk)
    assert len(table.network.sent) == 0


def _syn_sent(table):
    tsk = table.alloc_sock(0)
    tsk.src_addr = LOCAL
    tsk.set_port(80)
    tsk.dst_addr = REMOTE
    tsk.dst_port = 4000
    tsk.state = TcpState.SYN_SENT
    tsk.iss = tsk.snd_una = 500
    tsk.snd_nxt = 501
    tsk.wait_connect = Wait()
    table.hash(tsk)
    return tsk


def test_syn_sent_synack_establishes():
    table = make_table()
    tsk = _syn_sent(table)
    process(table, segment(seq=9000, ack_seq=501, syn=True, ack=True), tsk)
    assert tsk.state == TcpState.ESTABLISHED
    assert tsk.rcv_nxt == 9001
    assert tsk.snd_wnd == 1000
    assert last_sent(table).ack_seq == 9001
    assert tsk.wait_connect.sleep_on() is True


def test_syn_sent_bad_ack_resets():
    table = make_table()
    tsk = _syn_sent(table)
    process(table, segment(seq=9000, ack_seq=600, syn=True, ack=True), tsk)
    assert last_sent(table).rst
    assert tsk.state == TcpState.SYN_SENT


def test_syn_sent_reset_closes():
    table = make_table()
    tsk = _syn_sent(table)
    process(table, segment(seq=0, ack_seq=501, rst=True, ack=True), tsk)
    assert tsk.state == TcpState.CLOSED
    assert tsk.wait_connect.sleep_on() is True


def test_established_receives_text():
    table = make_table()
    tsk = established(table)
    process(table, segment(seq=101, ack_seq=501, text=b"hello", ack=True, psh=True), tsk)
    assert tsk.rcv_nxt == 101 + len(b"hello")
    assert tsk.rcv_buf.read(10) == b"hello"
    assert last_sent(table).ack_seq == tsk.rcv_nxt


def test_out_of_window_segment_gets_ack_only():
    table = make_table()
    tsk = established(table)
    process(table, segment(seq=50000, ack_seq=501, text=b"x", ack=True), tsk)
    assert tsk.rcv_buf is None
    reply = last_sent(table)
    assert reply.ack and reply.ack_seq == 101


def test_fin_moves_to_close_wait():
    table = make_table()
    tsk = established(table)
    process(table, segment(seq=101, ack_seq=501, ack=True, fin=True), tsk)
    assert tsk.state == TcpState.CLOSE_WAIT
    assert tsk.rcv_nxt == 102
    assert last_sent(table).ack_seq == 102


def test_active_close_reaches_time_wait():
    table = make_table()
    tsk = established(table)
    tsk.state = TcpState.FIN_WAIT1
    tsk.snd_nxt = 502
    process(table, segment(seq=101, ack_seq=502, ack=True), tsk)
    assert tsk.state == TcpState.FIN_WAIT2
    process(table, segment(seq=101, ack_seq=502, ack=True, fin=True), tsk)
    assert tsk.state == TcpState.TIME_WAIT
    assert tsk in table.timewait


def test_last_ack_closes_and_releases_port():
    table = make_table()
    tsk = established(table)
    tsk.state = TcpState.LAST_ACK
    tsk.snd_nxt = 502
    process(table, segment(seq=101, ack_seq=502, ack=True), tsk)
    assert tsk.state == TcpState.CLOSED
    assert not tsk.hashed
    assert table.port_used(80) is False


def test_reset_closes_established():
    table = make_table()
    tsk = established(table)
    process(table, segment(seq=101, rst=True), tsk)
    assert tsk.state == TcpState.CLOSED
    assert not tsk.hashed
    assert table.lookup(REMOTE, LOCAL, 4000, 80) is None