import pytest

from tapstack.headers import IP_HRD_SZ, IP_P_ICMP, IP_P_IP, IP_P_TCP
from tapstack.network import RT_NONE, NetDevice, Network
from tapstack.raw import RAW_DEFAULT_TTL, RAW_MAX_BUFSZ, RawTable
from tapstack.sock import SockAddr, SocketError

LOCAL = 0x0A000001
PEER = 0x0A000002


@pytest.fixture
def net():
    dev = NetDevice("tap0", ipaddr=LOCAL, netmask=0xFFFFFF00)
    network = Network([dev])
    network.add_route(LOCAL, 0xFFFFFF00, 0, 0, RT_NONE, dev)
    return network


@pytest.fixture
def table(net):
    return RawTable(net)


def test_wildcard_protocol_refused(table):
    with pytest.raises(SocketError):
        table.alloc_sock(IP_P_IP)


def test_alloc_counts_ids(table):
    table.alloc_sock(IP_P_ICMP)
    table.alloc_sock(IP_P_ICMP)
    assert table.raw_id == 2


def test_hash_then_lookup(table):
    sk = table.alloc_sock(IP_P_ICMP)
    sk.hash()
    assert table.lookup(PEER, LOCAL, IP_P_ICMP) is sk
    assert table.lookup(PEER, LOCAL, IP_P_TCP) is None


def test_lookup_respects_bound_addresses(table):
    sk = table.alloc_sock(IP_P_ICMP)
    sk.src_addr = LOCAL
    sk.hash()
    assert table.lookup(LOCAL, PEER, IP_P_ICMP) is sk
    assert table.lookup(PEER, PEER, IP_P_ICMP) is None


def test_lookup_iter_yields_all_newest_first(table):
    first = table.alloc_sock(IP_P_ICMP)
    second = table.alloc_sock(IP_P_ICMP)
    first.hash()
    second.hash()
    assert list(table.lookup_iter(PEER, LOCAL, IP_P_ICMP)) == [second, first]


def test_unhash_removes(table):
    sk = table.alloc_sock(IP_P_ICMP)
    sk.hash()
    sk.unhash()
    assert table.lookup(PEER, LOCAL, IP_P_ICMP) is None


def test_send_buf_builds_datagram(table, net):
    sk = table.alloc_sock(IP_P_ICMP)
    data = b"hello raw"
    assert sk.send_buf(data, SockAddr(dst_addr=PEER)) == len(data)
    sent = net.sent[-1]
    assert sent.payload == data
    assert sent.ip.protocol == IP_P_ICMP
    assert sent.ip.dst == PEER
    assert sent.ip.src == LOCAL
    assert sent.ip.ttl == RAW_DEFAULT_TTL
    assert sent.ip.total_length == IP_HRD_SZ + len(data)


def test_send_buf_too_large(table):
    sk = table.alloc_sock(IP_P_ICMP)
    with pytest.raises(SocketError):
        sk.send_buf(bytes(RAW_MAX_BUFSZ + 1), SockAddr(dst_addr=PEER))


def test_send_buf_without_destination(table):
    sk = table.alloc_sock(IP_P_ICMP)
    with pytest.raises(SocketError):
        sk.send_buf(b"x", None)


def test_send_buf_without_route(table):
    sk = table.alloc_sock(IP_P_ICMP)
    with pytest.raises(SocketError):
        sk.send_buf(b"x", SockAddr(dst_addr=0xC0A80001))