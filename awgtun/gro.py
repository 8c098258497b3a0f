"""Generic receive offload: coalescing batches of TCP and UDP packets."""

from __future__ import annotations

import dataclasses
import enum
import errno
from collections.abc import MutableSequence
from typing import Protocol

from awgtun.checksum import checksum, pseudo_header_checksum_no_fold
from awgtun.coalesce import (
    CanCoalesce,
    CoalesceResult,
    coalesce_tcp_packets,
    coalesce_udp_packets,
    tcp_packets_can_coalesce,
    udp_packets_can_coalesce,
)
from awgtun.gro_table import TCPGROTable, UDPGROTable
from awgtun.virtio import (
    IPPROTO_TCP,
    IPPROTO_UDP,
    IPV4_SRC_ADDR_OFFSET,
    IPV6_SRC_ADDR_OFFSET,
    TCP_FLAG_ACK,
    TCP_FLAG_PSH,
    TCP_FLAGS_OFFSET,
    UDPH_LEN,
    VIRTIO_NET_HDR_F_NEEDS_CSUM,
    VIRTIO_NET_HDR_LEN,
    GSOType,
    VirtioNetHdr,
)

MAX_UINT16 = 0xFFFF
IPV4_FLAG_MORE_FRAGMENTS = 0x20

_EBADFD = getattr(errno, "EBADFD", 77)


class GROResult(enum.IntEnum):
    """What a GRO evaluation did with a packet."""

    NOOP = 0
    TABLE_INSERT = 1
    COALESCED = 2


class GROCandidate(enum.IntEnum):
    """The kind of coalescing a packet is eligible for."""

    NOT_CANDIDATE = 0
    TCP4 = 1
    TCP6 = 2
    UDP4 = 3
    UDP6 = 4


class _Writer(Protocol):
    def write(self, data: bytes, /) -> int | None: ...


class _WriteError(OSError):
    """One or more packets of a batch failed to write."""

    def __init__(self, written: int, errors: list[OSError]) -> None:
        first = errors[0]
        super().__init__(
            first.errno, f"failed to write {len(errors)} packet(s): {first}"
        )
        self.written = written
        self.errors = errors


def _u16(pkt: bytes | bytearray, at: int) -> int:
    return int.from_bytes(pkt[at : at + 2], "big")


def _u32(pkt: bytes | bytearray, at: int) -> int:
    return int.from_bytes(pkt[at : at + 4], "big")


def _put16(buf: bytearray, at: int, value: int) -> None:
    buf[at : at + 2] = (value & 0xFFFF).to_bytes(2, "big")


def _addr_layout(is_v6: bool) -> tuple[int, int]:
    if is_v6:
        return IPV6_SRC_ADDR_OFFSET, 16
    return IPV4_SRC_ADDR_OFFSET, 4


def _put_header(buf: bytearray, offset: int, hdr: VirtioNetHdr) -> None:
    encoded = bytearray(VIRTIO_NET_HDR_LEN)
    hdr.encode(encoded)
    buf[offset - VIRTIO_NET_HDR_LEN : offset] = encoded


def _validated_iph_len(pkt: bytes, is_v6: bool) -> int | None:
    """Return the IP header length if the IP length fields agree with ``pkt``."""
    if not pkt or len(pkt) > MAX_UINT16:
        return None
    if is_v6:
        iph_len = 40
        if len(pkt) < iph_len or _u16(pkt, 4) != len(pkt) - iph_len:
            return None
    else:
        iph_len = (pkt[0] & 0x0F) * 4
        if len(pkt) < 20 or _u16(pkt, 2) != len(pkt):
            return None
    if len(pkt) < iph_len:
        return None
    return iph_len


def _is_ipv4_fragment(pkt: bytes) -> bool:
    return (
        bool(pkt[6] & IPV4_FLAG_MORE_FRAGMENTS)
        or (pkt[6] << 3) & 0xFF != 0
        or pkt[7] != 0
    )


def tcp_gro(
    bufs: MutableSequence[bytearray],
    offset: int,
    pkt_index: int,
    table: TCPGROTable,
    is_v6: bool,
) -> GROResult:
    """Evaluate the TCP packet at ``bufs[pkt_index]`` for coalescing."""
    pkt = bytes(bufs[pkt_index][offset:])
    iph_len = _validated_iph_len(pkt, is_v6)
    if iph_len is None or len(pkt) <= iph_len + TCP_FLAGS_OFFSET:
        return GROResult.NOOP
    tcph_len = (pkt[iph_len + 12] >> 4) * 4
    if tcph_len < 20 or tcph_len > 60:
        return GROResult.NOOP
    if len(pkt) < iph_len + tcph_len:
        return GROResult.NOOP
    if not is_v6 and _is_ipv4_fragment(pkt):
        return GROResult.NOOP

    tcp_flags = pkt[iph_len + TCP_FLAGS_OFFSET]
    psh_set = False
    if tcp_flags != TCP_FLAG_ACK:
        if tcp_flags != TCP_FLAG_ACK | TCP_FLAG_PSH:
            return GROResult.NOOP
        psh_set = True

    gso_size = len(pkt) - tcph_len - iph_len
    if gso_size < 1:
        return GROResult.NOOP
    seq = _u32(pkt, iph_len + 4)
    src_offset, addr_len = _addr_layout(is_v6)
    dst_offset = src_offset + addr_len

    items = table.lookup_or_insert(pkt, src_offset, dst_offset, iph_len, tcph_len, pkt_index)
    if items is None:
        return GROResult.TABLE_INSERT

    # Walk newest first: in-order arrivals match the last item, and deleting
    # an item leaves the indices still to be visited unchanged.
    for i in reversed(range(len(items))):
        item = dataclasses.replace(items[i])
        can = tcp_packets_can_coalesce(
            pkt, iph_len, tcph_len, seq, psh_set, gso_size, item, bufs, offset
        )
        if can == CanCoalesce.UNAVAILABLE:
            continue
        result = coalesce_tcp_packets(
            can, pkt, pkt_index, gso_size, seq, psh_set, item, bufs, offset, is_v6
        )
        if result == CoalesceResult.SUCCESS:
            table.update_at(item, i)
            return GROResult.COALESCED
        if result == CoalesceResult.ITEM_INVALID_CSUM:
            table.delete_at(item.key, i)
        elif result == CoalesceResult.PKT_INVALID_CSUM:
            return GROResult.NOOP

    table.insert(pkt, src_offset, dst_offset, iph_len, tcph_len, pkt_index)
    return GROResult.TABLE_INSERT


def udp_gro(
    bufs: MutableSequence[bytearray],
    offset: int,
    pkt_index: int,
    table: UDPGROTable,
    is_v6: bool,
) -> GROResult:
    """Evaluate the UDP packet at ``bufs[pkt_index]`` for coalescing."""
    pkt = bytes(bufs[pkt_index][offset:])
    iph_len = _validated_iph_len(pkt, is_v6)
    if iph_len is None or len(pkt) < iph_len + UDPH_LEN:
        return GROResult.NOOP
    if not is_v6 and _is_ipv4_fragment(pkt):
        return GROResult.NOOP
    gso_size = len(pkt) - UDPH_LEN - iph_len
    if gso_size < 1:
        return GROResult.NOOP
    src_offset, addr_len = _addr_layout(is_v6)
    dst_offset = src_offset + addr_len

    items = table.lookup_or_insert(pkt, src_offset, dst_offset, iph_len, pkt_index)
    if items is None:
        return GROResult.TABLE_INSERT

    # Only the last item is a candidate, otherwise datagrams could be reordered.
    last = len(items) - 1
    item = dataclasses.replace(items[last])
    pkt_csum_known_invalid = False
    if udp_packets_can_coalesce(pkt, iph_len, gso_size, item, bufs, offset) == CanCoalesce.APPEND:
        result = coalesce_udp_packets(pkt, item, bufs, offset, is_v6)
        if result == CoalesceResult.SUCCESS:
            table.update_at(item, last)
            return GROResult.COALESCED
        if result == CoalesceResult.PKT_INVALID_CSUM:
            pkt_csum_known_invalid = True

    table.insert(pkt, src_offset, dst_offset, iph_len, pkt_index, pkt_csum_known_invalid)
    return GROResult.TABLE_INSERT


def _update_ip_lengths(buf: bytearray, offset: int, iph_len: int, is_v6: bool) -> None:
    pkt_len = len(buf) - offset
    if is_v6:
        _put16(buf, offset + 4, pkt_len - iph_len)
    else:
        buf[offset + 10 : offset + 12] = b"\x00\x00"
        _put16(buf, offset + 2, pkt_len)
        _put16(buf, offset + 10, ~checksum(buf[offset : offset + iph_len], 0))


def _put_pseudo_checksum(
    buf: bytearray, offset: int, iph_len: int, proto: int, is_v6: bool, csum_at: int
) -> None:
    addr_offset, addr_len = _addr_layout(is_v6)
    src_at = offset + addr_offset
    psum = pseudo_header_checksum_no_fold(
        proto,
        buf[src_at : src_at + addr_len],
        buf[src_at + addr_len : src_at + 2 * addr_len],
        len(buf) - offset - iph_len,
    )
    _put16(buf, offset + csum_at, checksum(b"", psum))


def apply_tcp_coalesce_accounting(
    bufs: MutableSequence[bytearray], offset: int, table: TCPGROTable
) -> None:
    """Write virtio headers and fix IP and TCP fields of tracked TCP packets."""
    for item in table:
        buf = bufs[item.bufs_index]
        if item.num_merged == 0:
            _put_header(buf, offset, VirtioNetHdr())
            continue
        is_v6 = item.key.is_v6
        hdr = VirtioNetHdr(
            flags=VIRTIO_NET_HDR_F_NEEDS_CSUM,
            gso_type=GSOType.TCPV6 if is_v6 else GSOType.TCPV4,
            hdr_len=item.iph_len + item.tcph_len,
            gso_size=item.gso_size,
            csum_start=item.iph_len,
            csum_offset=16,
        )
        _update_ip_lengths(buf, offset, item.iph_len, is_v6)
        _put_header(buf, offset, hdr)
        _put_pseudo_checksum(
            buf, offset, item.iph_len, IPPROTO_TCP, is_v6, hdr.csum_start + hdr.csum_offset
        )


def apply_udp_coalesce_accounting(
    bufs: MutableSequence[bytearray], offset: int, table: UDPGROTable
) -> None:
    """Write virtio headers and fix IP and UDP fields of tracked UDP packets."""
    for item in table:
        buf = bufs[item.bufs_index]
        if item.num_merged == 0:
            _put_header(buf, offset, VirtioNetHdr())
            continue
        is_v6 = item.key.is_v6
        hdr = VirtioNetHdr(
            flags=VIRTIO_NET_HDR_F_NEEDS_CSUM,
            gso_type=GSOType.UDP_L4,
            hdr_len=item.iph_len + UDPH_LEN,
            gso_size=item.gso_size,
            csum_start=item.iph_len,
            csum_offset=6,
        )
        _update_ip_lengths(buf, offset, item.iph_len, is_v6)
        _put_header(buf, offset, hdr)
        _put16(buf, offset + item.iph_len + 4, len(buf) - offset - item.iph_len)
        _put_pseudo_checksum(
            buf, offset, item.iph_len, IPPROTO_UDP, is_v6, hdr.csum_start + hdr.csum_offset
        )


def packet_is_gro_candidate(data: bytes | bytearray, can_udp_gro: bool) -> GROCandidate:
    """Classify the IP packet ``data`` for GRO."""
    if len(data) < 28:
        return GROCandidate.NOT_CANDIDATE
    version = data[0] >> 4
    if version == 4:
        if data[0] & 0x0F != 5:
            # IPv4 packets with options are never coalesced.
            return GROCandidate.NOT_CANDIDATE
        if data[9] == IPPROTO_TCP and len(data) >= 40:
            return GROCandidate.TCP4
        if data[9] == IPPROTO_UDP and can_udp_gro:
            return GROCandidate.UDP4
    elif version == 6:
        if data[6] == IPPROTO_TCP and len(data) >= 60:
            return GROCandidate.TCP6
        if data[6] == IPPROTO_UDP and len(data) >= 48 and can_udp_gro:
            return GROCandidate.UDP6
    return GROCandidate.NOT_CANDIDATE


def handle_gro(
    bufs: MutableSequence[bytearray],
    offset: int,
    tcp_table: TCPGROTable,
    udp_table: UDPGROTable,
    can_udp_gro: bool,
) -> list[int]:
    """Coalesce the packets of ``bufs`` in place.

    Each packet starts at ``offset``; the virtio header is written in the
    bytes just before it. Returns the indices of the packets to write.
    """
    dispatch = {
        GROCandidate.TCP4: lambda i: tcp_gro(bufs, offset, i, tcp_table, False),
        GROCandidate.TCP6: lambda i: tcp_gro(bufs, offset, i, tcp_table, True),
        GROCandidate.UDP4: lambda i: udp_gro(bufs, offset, i, udp_table, False),
        GROCandidate.UDP6: lambda i: udp_gro(bufs, offset, i, udp_table, True),
    }
    to_write: list[int] = []
    for i, buf in enumerate(bufs):
        if offset < VIRTIO_NET_HDR_LEN or offset > len(buf) - 1:
            raise ValueError("invalid offset")
        candidate = packet_is_gro_candidate(buf[offset:], can_udp_gro)
        evaluate = dispatch.get(candidate)
        result = evaluate(i) if evaluate is not None else GROResult.NOOP
        if result == GROResult.NOOP:
            _put_header(bufs[i], offset, VirtioNetHdr())
        if result != GROResult.COALESCED:
            to_write.append(i)
    apply_tcp_coalesce_accounting(bufs, offset, tcp_table)
    apply_udp_coalesce_accounting(bufs, offset, udp_table)
    return to_write


def write_packets(
    file: _Writer,
    bufs: MutableSequence[bytearray],
    offset: int,
    vnet_hdr: bool,
    can_udp_gro: bool,
    tcp_table: TCPGROTable,
    udp_table: UDPGROTable,
) -> int:
    """Write a batch of packets to a TUN file and return the bytes written.

    With ``vnet_hdr`` the batch is coalesced first and each write carries a
    virtio header. The tables are reset afterwards. A write failing with
    EBADFD is reported as a closed file; other failures are collected and
    raised together after the whole batch was attempted.
    """
    try:
        if vnet_hdr:
            to_write = handle_gro(bufs, offset, tcp_table, udp_table, can_udp_gro)
            offset -= VIRTIO_NET_HDR_LEN
        else:
            to_write = list(range(len(bufs)))
        total = 0
        errors: list[OSError] = []
        for index in to_write:
            try:
                written = file.write(bytes(bufs[index][offset:]))
            except OSError as exc:
                if exc.errno == _EBADFD:
                    raise OSError(errno.EBADF, "file already closed") from exc
                errors.append(exc)
                continue
            total += written or 0
        if errors:
            raise _WriteError(total, errors)
        return total
    finally:
        tcp_table.reset()
        udp_table.reset()