# tapstack

`tapstack` is the transport half of a small TCP/IP stack that runs in user
space. It provides:

- a BSD-like socket layer,
- UDP with automatic port selection over a hash table,
- raw IP sockets,
- TCP driven by the RFC 793 "segment arrives" state machine, with the
  RFC 1122 corrections.

The package has no dependencies beyond the standard library.

Outgoing packets go through a `tapstack.network.Network` object. It holds
the devices and the routing table, counts traffic on each device, and keeps
the most recent packets it sent in `Network.sent`. A packet addressed to one
of the network's own devices is rebuilt from its wire bytes and passed to
`Network.receiver`. `Inet` makes itself that receiver when none is set, so
traffic between local sockets arrives without any extra setup.

## Installation

```
pip install tapstack
```

To run the tests:

```
pip install "tapstack[test]"
pytest
```

## Modules

| Module | Contents |
| --- | --- |
| `tapstack.wait` | `Wait`: a wake-up primitive for blocking calls; a wake-up that comes before the sleep is remembered |
| `tapstack.cbuf` | `CircularBuffer`: the fixed-size TCP receive buffer |
| `tapstack.headers` | `IPHeader`, `TCPHeader`, `UDPHeader` (`pack` / `unpack`), `TcpState`, `internet_checksum`, `pseudo_header_checksum`, address helpers |
| `tapstack.network` | `NetDevice`, `Route`, `Packet`, `Network` (routing, output, ICMP error replies) |
| `tapstack.sock` | `Sock`, `SockAddr`, `SockType`, `SocketState`, `SocketError` |
| `tapstack.raw` | `RawTable`, `RawSock` |
| `tapstack.udp` | `UdpTable`, `UdpSock` |
| `tapstack.tcp_output` | `TcpSegment` and the senders for SYN, SYN/ACK, ACK, FIN, RST and data |
| `tapstack.tcp_reass` | in-order writes to the receive buffer and out-of-order reassembly |
| `tapstack.tcp_sock` | `TcpTable` (lookup tables, port binding, TIME-WAIT list) and `TcpSock` |
| `tapstack.tcp_state` | `process`, the segment-arrival state machine |
| `tapstack.tcp_in` | `receive`: length and checksum checks, then dispatch |
| `tapstack.inet` | `Inet`: the internet family that ties the transports together |
| `tapstack.sockets` | `Socket`, `AddressFamily`, `open_socket` |

## Example

IPv4 addresses are plain host-order integers, so `10.0.0.1` is `0x0A000001`.
Ports are plain integers as well.

```python
from tapstack.inet import Inet
from tapstack.network import NetDevice, Network
from tapstack.sock import SockAddr, SockType
from tapstack.sockets import AddressFamily, open_socket

dev = NetDevice("veth0", ipaddr=0x0A000001, netmask=0xFFFFFF00)
net = Network(devices=[dev])
net.add_route(0x0A000000, 0xFFFFFF00, 0, 0, 0, dev)
inet = Inet(net)

with open_socket(inet, AddressFamily.INET, SockType.DGRAM, 0) as server, \
        open_socket(inet, AddressFamily.INET, SockType.DGRAM, 0) as client:
    server.bind(SockAddr(src_addr=0x0A000001, src_port=9000))
    client.send(b"hello", SockAddr(dst_addr=0x0A000001, dst_port=9000))
    packet = server.recv()
    print(packet.payload[8:])   # b'hello' (after the 8-byte UDP header)
```

A client that was never bound is given a free port from the automatic range
on its first send.

## Behaviour

- Failed operations raise `tapstack.sock.SocketError` instead of returning
  status codes. A destination with no route is reported the same way.
- `Socket` works as a context manager and closes itself on exit.
  `Socket.close` wakes any thread blocked in `recv`, `read`, `accept` or
  `connect` on that socket.
- `Socket.recv` returns whole received `Packet`s (datagram sockets).
  `Socket.read` and `Socket.write` carry a TCP byte stream, and `read`
  returns `b""` at end of stream.
- A UDP datagram for a port with no socket bound to it is answered with an
  ICMP port-unreachable message through `Network.send_icmp`.
- Packets from outside are handed to the stack with `inet.deliver(packet)`.
  The packet is an `IPHeader` and the bytes that follow it. Every matching
  raw socket gets a copy, and UDP and TCP datagrams then go to their
  transport.
- TCP TIME-WAIT timers move forward only when `inet.tcp.timewait_tick(delta)`
  is called, with `delta` in microseconds. The method returns the socks it
  closed. A connection stays in TIME-WAIT for 2 seconds of ticks.

## What it does not do

- There is no link layer. `tapstack` does not open TAP devices, build
  Ethernet frames or resolve addresses with ARP. Packets leave only as
  `Packet` objects through `Network`.
- The IP layer only routes and sends. It does not fragment or reassemble,
  it does not forward, and it does not process incoming ICMP.
- TCP has no retransmission, no persist timer and no delayed-ACK timer.
  It sends ACKs as soon as a segment calls for them.
- There is no command-line program or interactive shell. The package is a
  library only.