"""Checks and merges used to coalesce TCP and UDP packets for GRO."""

from __future__ import annotations

import enum
from collections.abc import MutableSequence

from awgtun.checksum import checksum, pseudo_header_checksum_no_fold
from awgtun.gro_table import TCPGROItem, UDPGROItem
from awgtun.virtio import (
    IPPROTO_TCP,
    IPPROTO_UDP,
    IPV4_SRC_ADDR_OFFSET,
    IPV6_SRC_ADDR_OFFSET,
    TCP_FLAG_PSH,
    TCP_FLAGS_OFFSET,
    UDPH_LEN,
)

# Packets are never grown past the size of a full-sized receive buffer.
BUFFER_CAPACITY = 65535

Packet = bytes | bytearray | memoryview


class CanCoalesce(enum.IntEnum):
    """Whether, and on which side, a packet can join a tracked packet."""

    PREPEND = -1
    UNAVAILABLE = 0
    APPEND = 1


class CoalesceResult(enum.IntEnum):
    """The outcome of an attempt to merge two packets."""

    INSUFFICIENT_CAP = 0
    PSH_ENDING = 1
    ITEM_INVALID_CSUM = 2
    PKT_INVALID_CSUM = 3
    SUCCESS = 4


def _capacity(buf: Packet) -> int:
    return max(len(buf), BUFFER_CAPACITY)


def ip_headers_can_coalesce(pkt_a: Packet, pkt_b: Packet) -> bool:
    """Return True if the IP headers of both packets allow merging them."""
    if len(pkt_a) < 9 or len(pkt_b) < 9:
        return False
    if pkt_a[0] >> 4 == 6:
        if pkt_a[0] != pkt_b[0] or pkt_a[1] >> 4 != pkt_b[1] >> 4:
            return False  # unequal traffic class
        if pkt_a[7] != pkt_b[7]:
            return False  # unequal hop limit
    else:
        if pkt_a[1] != pkt_b[1]:
            return False  # unequal ToS
        if pkt_a[6] >> 5 != pkt_b[6] >> 5:
            return False  # unequal DF or reserved bits
        if pkt_a[8] != pkt_b[8]:
            return False  # unequal TTL
    return True


def udp_packets_can_coalesce(
    pkt: Packet,
    iph_len: int,
    gso_size: int,
    item: UDPGROItem,
    bufs: MutableSequence[bytearray],
    bufs_offset: int,
) -> CanCoalesce:
    """Decide whether the UDP packet ``pkt`` can be appended to ``item``."""
    target = bufs[item.bufs_index][bufs_offset:]
    if not ip_headers_can_coalesce(pkt, target):
        return CanCoalesce.UNAVAILABLE
    if item.gso_size == 0 or len(target[iph_len + UDPH_LEN :]) % item.gso_size != 0:
        # A smaller segment was appended earlier; nothing may follow it.
        return CanCoalesce.UNAVAILABLE
    if gso_size > item.gso_size:
        return CanCoalesce.UNAVAILABLE
    return CanCoalesce.APPEND


def tcp_packets_can_coalesce(
    pkt: Packet,
    iph_len: int,
    tcph_len: int,
    seq: int,
    psh_set: bool,
    gso_size: int,
    item: TCPGROItem,
    bufs: MutableSequence[bytearray],
    bufs_offset: int,
) -> CanCoalesce:
    """Decide whether the TCP packet ``pkt`` can join ``item`` and on which side."""
    target = bufs[item.bufs_index][bufs_offset:]
    if tcph_len != item.tcph_len:
        return CanCoalesce.UNAVAILABLE
    if tcph_len > 20:
        if bytes(pkt[iph_len + 20 : iph_len + tcph_len]) != bytes(
            target[item.iph_len + 20 : iph_len + tcph_len]
        ):
            return CanCoalesce.UNAVAILABLE
    if not ip_headers_can_coalesce(pkt, target):
        return CanCoalesce.UNAVAILABLE

    lhs_len = (item.gso_size + item.num_merged * item.gso_size) & 0xFFFF
    if seq == (item.sent_seq + lhs_len) & 0xFFFF_FFFF:
        if item.psh_set:
            # PSH may only be set on the final segment.
            return CanCoalesce.UNAVAILABLE
        if item.gso_size == 0 or len(target[iph_len + tcph_len :]) % item.gso_size != 0:
            return CanCoalesce.UNAVAILABLE
        if gso_size > item.gso_size:
            return CanCoalesce.UNAVAILABLE
        return CanCoalesce.APPEND
    if (seq + gso_size) & 0xFFFF_FFFF == item.sent_seq:
        if psh_set:
            return CanCoalesce.UNAVAILABLE
        if gso_size < item.gso_size:
            return CanCoalesce.UNAVAILABLE
        if gso_size > item.gso_size and item.num_merged > 0:
            return CanCoalesce.UNAVAILABLE
        return CanCoalesce.PREPEND
    return CanCoalesce.UNAVAILABLE


def checksum_valid(pkt: Packet, iph_len: int, proto: int, is_v6: bool) -> bool:
    """Return True if the transport checksum of ``pkt`` verifies."""
    if is_v6:
        src_at, addr_size = IPV6_SRC_ADDR_OFFSET, 16
    else:
        src_at, addr_size = IPV4_SRC_ADDR_OFFSET, 4
    len_for_pseudo = (len(pkt) - iph_len) & 0xFFFF
    pseudo = pseudo_header_checksum_no_fold(
        proto,
        pkt[src_at : src_at + addr_size],
        pkt[src_at + addr_size : src_at + 2 * addr_size],
        len_for_pseudo,
    )
    return (~checksum(pkt[iph_len:], pseudo) & 0xFFFF) == 0


def coalesce_udp_packets(
    pkt: Packet,
    item: UDPGROItem,
    bufs: MutableSequence[bytearray],
    bufs_offset: int,
    is_v6: bool,
) -> CoalesceResult:
    """Append the payload of ``pkt`` to the packet tracked by ``item``.

    ``item`` is updated in place on success. ``pkt`` must not be a view into
    ``bufs``.
    """
    head_buf = bufs[item.bufs_index]
    head_len = len(head_buf) - bufs_offset
    headers_len = item.iph_len + UDPH_LEN
    coalesced_len = head_len + len(pkt) - headers_len

    if _capacity(head_buf) - bufs_offset - bufs_offset < coalesced_len:
        return CoalesceResult.INSUFFICIENT_CAP
    if item.num_merged == 0:
        if item.csum_known_invalid or not checksum_valid(
            head_buf[bufs_offset:], item.iph_len, IPPROTO_UDP, is_v6
        ):
            return CoalesceResult.ITEM_INVALID_CSUM
    if not checksum_valid(pkt, item.iph_len, IPPROTO_UDP, is_v6):
        return CoalesceResult.PKT_INVALID_CSUM

    bufs[item.bufs_index] += bytes(pkt[headers_len:])
    item.num_merged += 1
    return CoalesceResult.SUCCESS


def coalesce_tcp_packets(
    mode: CanCoalesce,
    pkt: Packet,
    pkt_bufs_index: int,
    gso_size: int,
    seq: int,
    psh_set: bool,
    item: TCPGROItem,
    bufs: MutableSequence[bytearray],
    bufs_offset: int,
    is_v6: bool,
) -> CoalesceResult:
    """Merge ``pkt`` with the packet tracked by ``item``.

    On a prepend the merged packet is built in ``pkt``'s buffer and the two
    entries of ``bufs`` are swapped, so ``item.bufs_index`` keeps pointing at
    the merged packet. ``item`` is updated in place on success. ``pkt`` must
    not be a view into ``bufs``.
    """
    item_buf = bufs[item.bufs_index]
    headers_len = item.iph_len + item.tcph_len
    coalesced_len = len(item_buf) - bufs_offset + len(pkt) - headers_len

    if mode == CanCoalesce.PREPEND:
        pkt_buf = bufs[pkt_bufs_index]
        if _capacity(pkt_buf) - bufs_offset - bufs_offset < coalesced_len:
            return CoalesceResult.INSUFFICIENT_CAP
        if psh_set:
            return CoalesceResult.PSH_ENDING
        if item.num_merged == 0:
            if not checksum_valid(item_buf[bufs_offset:], item.iph_len, IPPROTO_TCP, is_v6):
                return CoalesceResult.ITEM_INVALID_CSUM
        if not checksum_valid(pkt, item.iph_len, IPPROTO_TCP, is_v6):
            return CoalesceResult.PKT_INVALID_CSUM
        item.sent_seq = seq
        extend_by = coalesced_len - len(pkt)
        tail = bytes(item_buf[bufs_offset + headers_len :])
        bufs[pkt_bufs_index] += tail[:extend_by]
        bufs[item.bufs_index], bufs[pkt_bufs_index] = (
            bufs[pkt_bufs_index],
            bufs[item.bufs_index],
        )
    else:
        if _capacity(item_buf) - bufs_offset - bufs_offset < coalesced_len:
            return CoalesceResult.INSUFFICIENT_CAP
        if item.num_merged == 0:
            if not checksum_valid(item_buf[bufs_offset:], item.iph_len, IPPROTO_TCP, is_v6):
                return CoalesceResult.ITEM_INVALID_CSUM
        if not checksum_valid(pkt, item.iph_len, IPPROTO_TCP, is_v6):
            return CoalesceResult.PKT_INVALID_CSUM
        if psh_set:
            item.psh_set = True
            item_buf[bufs_offset + item.iph_len + TCP_FLAGS_OFFSET] |= TCP_FLAG_PSH
        bufs[item.bufs_index] += bytes(pkt[headers_len:])

    if gso_size > item.gso_size:
        item.gso_size = gso_size
    item.num_merged += 1
    return CoalesceResult.SUCCESS