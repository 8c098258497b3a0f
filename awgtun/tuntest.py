"""An in-memory TUN device and packet builders for tests."""

from __future__ import annotations

import errno
import ipaddress
import queue
import threading
from collections.abc import Iterator, Sequence

from awgtun.device import Device, Event

DEFAULT_MTU = 1420

_POLL_INTERVAL = 0.05


def _closed_error() -> OSError:
    return OSError(errno.EBADF, "file already closed")


def _rfc1071(buf: bytes | bytearray, initial: int) -> int:
    """Return the inverted 16-bit internet checksum of ``buf``."""
    total = initial + sum(
        int.from_bytes(buf[i : i + 2], "big") for i in range(0, len(buf) - 1, 2)
    )
    if len(buf) % 2:
        total += buf[-1] << 8
    while total > 0xFFFF:
        total = (total >> 16) + (total & 0xFFFF)
    return ~total & 0xFFFF


def _gen_icmpv4(payload: bytes, dst: bytes, src: bytes) -> bytes:
    ipv4_size = 20
    icmpv4_size = 8
    header_size = ipv4_size + icmpv4_size

    icmp = bytearray(icmpv4_size)
    icmp[0] = 8  # echo request
    icmp[1] = 0
    chksum = ~_rfc1071(icmp, _rfc1071(payload, 0)) & 0xFFFF
    icmp[2:4] = chksum.to_bytes(2, "big")

    ip = bytearray(ipv4_size)
    ip[0] = (4 << 4) | (ipv4_size // 4)
    ip[2:4] = (header_size + len(payload)).to_bytes(2, "big")
    ip[8] = 65  # TTL
    ip[9] = 1  # ICMP
    ip[12:16] = src
    ip[16:20] = dst
    chksum = ~_rfc1071(ip, 0) & 0xFFFF
    ip[10:12] = chksum.to_bytes(2, "big")

    return bytes(ip + icmp + payload)


def ping(dst: str | ipaddress.IPv4Address, src: str | ipaddress.IPv4Address) -> bytes:
    """Build an IPv4 ICMP echo request from ``src`` to ``dst``."""
    local_port = 1337
    seq = 0
    payload = local_port.to_bytes(2, "big") + seq.to_bytes(2, "big")
    dst_addr = ipaddress.IPv4Address(dst).packed
    src_addr = ipaddress.IPv4Address(src).packed
    return _gen_icmpv4(payload, dst_addr, src_addr)


class ChannelTUN(Device):
    """A device backed by queues.

    Packets written to the device appear on ``inbound``; packets put on
    ``outbound`` are returned by ``read``.
    """

    def __init__(self) -> None:
        self.inbound: queue.Queue[bytes] = queue.Queue()
        self.outbound: queue.Queue[bytes] = queue.Queue()
        self._closed = threading.Event()
        self._events: queue.Queue[Event | None] = queue.Queue()
        self._events.put(Event.UP)
        self._close_lock = threading.Lock()

    def read(self, bufs: Sequence[bytearray], offset: int) -> list[int]:
        while True:
            if self._closed.is_set():
                raise _closed_error()
            try:
                msg = self.outbound.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            buf = bufs[0]
            n = max(0, min(len(msg), len(buf) - offset))
            buf[offset : offset + n] = msg[:n]
            return [n]

    def write(self, bufs: Sequence[bytearray], offset: int) -> int:
        for data in bufs:
            if self._closed.is_set():
                raise _closed_error()
            self.inbound.put(bytes(data[offset:]))
        return len(bufs)

    def mtu(self) -> int:
        return DEFAULT_MTU

    def name(self) -> str:
        return "loopbackTun1"

    def events(self) -> Iterator[Event]:
        while True:
            event = self._events.get()
            if event is None:
                self._events.put(None)
                return
            yield event

    def close(self) -> None:
        with self._close_lock:
            if self._closed.is_set():
                return
            self._closed.set()
            self._events.put(None)

    def batch_size(self) -> int:
        return 1