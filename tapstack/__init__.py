"""User-space TCP/IP transport layer: sockets, UDP, raw IP and a TCP state machine."""

__version__ = "0.1.0"