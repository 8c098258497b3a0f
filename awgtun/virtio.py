"""Virtio network headers and splitting of kernel GSO super-packets."""

from __future__ import annotations

import dataclasses
import enum
import struct
from collections.abc import Sequence
from dataclasses import dataclass

from awgtun.checksum import checksum, pseudo_header_checksum_no_fold
from awgtun.device import TooManySegmentsError

VIRTIO_NET_HDR_LEN = 10
VIRTIO_NET_HDR_F_NEEDS_CSUM = 0x01

IPPROTO_TCP = 6
IPPROTO_UDP = 17

TCP_FLAGS_OFFSET = 13
TCP_FLAG_FIN = 0x01
TCP_FLAG_PSH = 0x08
TCP_FLAG_ACK = 0x10

IPV4_SRC_ADDR_OFFSET = 12
IPV6_SRC_ADDR_OFFSET = 8
UDPH_LEN = 8

# The kernel structure is copied as raw memory, so fields use host byte order.
_HDR_STRUCT = struct.Struct("=BBHHHH")


class GSOType(enum.IntEnum):
    """Values of the ``gso_type`` field of a virtio network header."""

    NONE = 0
    TCPV4 = 1
    UDP = 3
    TCPV6 = 4
    UDP_L4 = 5
    ECN = 0x80


@dataclass
class VirtioNetHdr:
    """The kernel's ``virtio_net_hdr`` that prefixes packets on a vnet TUN."""

    flags: int = 0
    gso_type: int = GSOType.NONE
    hdr_len: int = 0
    gso_size: int = 0
    csum_start: int = 0
    csum_offset: int = 0

    @classmethod
    def decode(cls, data: bytes | bytearray | memoryview) -> VirtioNetHdr:
        """Parse a header from the first bytes of ``data``."""
        if len(data) < VIRTIO_NET_HDR_LEN:
            raise ValueError("short buffer")
        return cls(*_HDR_STRUCT.unpack_from(data, 0))

    def encode(self, buf: bytearray | memoryview) -> None:
        """Write the header into the first bytes of ``buf``."""
        if len(buf) < VIRTIO_NET_HDR_LEN:
            raise ValueError("short buffer")
        _HDR_STRUCT.pack_into(
            buf,
            0,
            self.flags,
            self.gso_type,
            self.hdr_len,
            self.gso_size,
            self.csum_start,
            self.csum_offset,
        )


def _put16(buf: memoryview | bytearray, at: int, value: int) -> None:
    buf[at : at + 2] = (value & 0xFFFF).to_bytes(2, "big")


def gso_split(
    data: bytearray,
    hdr: VirtioNetHdr,
    out_bufs: Sequence[bytearray],
    out_offset: int,
    is_v6: bool,
) -> list[int]:
    """Split the GSO packet ``data`` into ``out_bufs`` at ``out_offset``.

    ``data`` is modified: its IP and transport checksum fields are cleared.
    Returns the size of each segment written. Raises TooManySegmentsError
    when there are more segments than buffers.
    """
    iph_len = hdr.csum_start
    if is_v6:
        src_addr_offset, addr_len = IPV6_SRC_ADDR_OFFSET, 16
    else:
        data[10:12] = b"\x00\x00"
        src_addr_offset, addr_len = IPV4_SRC_ADDR_OFFSET, 4
    transport_csum_at = hdr.csum_start + hdr.csum_offset
    data[transport_csum_at : transport_csum_at + 2] = b"\x00\x00"

    is_tcp = hdr.gso_type in (GSOType.TCPV4, GSOType.TCPV6)
    protocol = IPPROTO_TCP if is_tcp else IPPROTO_UDP
    first_seq = (
        int.from_bytes(data[hdr.csum_start + 4 : hdr.csum_start + 8], "big") if is_tcp else 0
    )
    src_addr = bytes(data[src_addr_offset : src_addr_offset + addr_len])
    dst_addr = bytes(data[src_addr_offset + addr_len : src_addr_offset + 2 * addr_len])

    if hdr.gso_size == 0 and hdr.hdr_len < len(data):
        raise ValueError("gso size must be positive")

    sizes: list[int] = []
    segment_starts = range(hdr.hdr_len, len(data), max(hdr.gso_size, 1))
    for i, segment_start in enumerate(segment_starts):
        if i == len(out_bufs):
            raise TooManySegmentsError()
        segment_end = min(segment_start + hdr.gso_size, len(data))
        segment_len = segment_end - segment_start
        total_len = hdr.hdr_len + segment_len
        out = memoryview(out_bufs[i])[out_offset:]

        out[:iph_len] = data[:iph_len]
        if is_v6:
            _put16(out, 4, total_len - iph_len)
        else:
            if i > 0:
                ident = int.from_bytes(out[4:6], "big")
                _put16(out, 4, ident + i)
            _put16(out, 2, total_len)
            _put16(out, 10, ~checksum(out[:iph_len], 0))

        out[hdr.csum_start : hdr.hdr_len] = data[hdr.csum_start : hdr.hdr_len]

        if is_tcp:
            seq = (first_seq + ((hdr.gso_size * i) & 0xFFFF)) & 0xFFFF_FFFF
            out[hdr.csum_start + 4 : hdr.csum_start + 8] = seq.to_bytes(4, "big")
            if segment_end != len(data):
                flags_at = hdr.csum_start + TCP_FLAGS_OFFSET
                out[flags_at] &= ~(TCP_FLAG_FIN | TCP_FLAG_PSH) & 0xFF
        else:
            _put16(out, hdr.csum_start + 4, segment_len + (hdr.hdr_len - hdr.csum_start))

        out[hdr.hdr_len : hdr.hdr_len + segment_len] = data[segment_start:segment_end]

        transport_len = hdr.hdr_len - hdr.csum_start + segment_len
        pseudo = pseudo_header_checksum_no_fold(protocol, src_addr, dst_addr, transport_len)
        _put16(out, transport_csum_at, ~checksum(out[hdr.csum_start : total_len], pseudo))

        sizes.append(total_len)
    return sizes


def gso_none_checksum(data: bytearray, csum_start: int, csum_offset: int) -> None:
    """Complete a partial checksum in place.

    The value already at the checksum field (normally the pseudo header sum)
    is folded into the sum of ``data[csum_start:]``.
    """
    csum_at = csum_start + csum_offset
    if csum_at + 2 > len(data):
        raise ValueError(
            f"checksum offset ({csum_at}) exceeds packet length ({len(data)})"
        )
    initial = int.from_bytes(data[csum_at : csum_at + 2], "big")
    data[csum_at : csum_at + 2] = b"\x00\x00"
    _put16(data, csum_at, ~checksum(data[csum_start:], initial))


def handle_virtio_read(
    data: bytes | bytearray | memoryview, bufs: Sequence[bytearray], offset: int
) -> list[int]:
    """Split a read prefixed by a virtio header into ``bufs`` at ``offset``.

    Returns the size of each packet placed in ``bufs``.
    """
    hdr = VirtioNetHdr.decode(data)
    pkt = bytearray(data[VIRTIO_NET_HDR_LEN:])

    if hdr.gso_type == GSOType.NONE:
        if hdr.flags & VIRTIO_NET_HDR_F_NEEDS_CSUM:
            gso_none_checksum(pkt, hdr.csum_start, hdr.csum_offset)
        room = max(0, len(bufs[0]) - offset)
        if len(pkt) > room:
            raise ValueError(f"read len {len(pkt)} overflows bufs element len {room}")
        bufs[0][offset : offset + len(pkt)] = pkt
        return [len(pkt)]

    if hdr.gso_type not in (GSOType.TCPV4, GSOType.TCPV6, GSOType.UDP_L4):
        raise ValueError(f"unsupported virtio GSO type: {hdr.gso_type}")

    if not pkt:
        raise ValueError("packet is too short")
    ip_version = pkt[0] >> 4
    if ip_version == 4:
        if hdr.gso_type not in (GSOType.TCPV4, GSOType.UDP_L4):
            raise ValueError(f"ip header version: {ip_version}, GSO type: {hdr.gso_type}")
    elif ip_version == 6:
        if hdr.gso_type not in (GSOType.TCPV6, GSOType.UDP_L4):
            raise ValueError(f"ip header version: {ip_version}, GSO type: {hdr.gso_type}")
    else:
        raise ValueError(f"invalid ip header version: {ip_version}")

    # The kernel's hdr_len may cover a whole forwarded packet; derive it from
    # the transport header instead.
    if hdr.gso_type == GSOType.UDP_L4:
        hdr = dataclasses.replace(hdr, hdr_len=hdr.csum_start + UDPH_LEN)
    else:
        if len(pkt) <= hdr.csum_start + 12:
            raise ValueError("packet is too short")
        tcph_len = (pkt[hdr.csum_start + 12] >> 4) * 4
        if tcph_len < 20 or tcph_len > 60:
            raise ValueError(f"tcp header len is invalid: {tcph_len}")
        hdr = dataclasses.replace(hdr, hdr_len=hdr.csum_start + tcph_len)

    if len(pkt) < hdr.hdr_len:
        raise ValueError(
            f"length of packet ({len(pkt)}) < virtioNetHdr.hdrLen ({hdr.hdr_len})"
        )
    if hdr.hdr_len < hdr.csum_start:
        raise ValueError(
            f"virtioNetHdr.hdrLen ({hdr.hdr_len}) < virtioNetHdr.csumStart ({hdr.csum_start})"
        )
    csum_at = hdr.csum_start + hdr.csum_offset
    if csum_at + 1 >= len(pkt):
        raise ValueError(
            f"end of checksum offset ({csum_at + 1}) exceeds packet length ({len(pkt)})"
        )

    return gso_split(pkt, hdr, bufs, offset, ip_version == 6)