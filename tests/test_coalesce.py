import ipaddress

import pytest

from awgtun.checksum import checksum, pseudo_header_checksum_no_fold
from awgtun.coalesce import (
    CanCoalesce,
    CoalesceResult,
    checksum_valid,
    coalesce_tcp_packets,
    coalesce_udp_packets,
    ip_headers_can_coalesce,
    tcp_packets_can_coalesce,
    udp_packets_can_coalesce,
)
from awgtun.gro_table import TCPFlowKey, TCPGROItem, UDPFlowKey, UDPGROItem
from awgtun.virtio import VIRTIO_NET_HDR_LEN

OFFSET = VIRTIO_NET_HDR_LEN
ACK = 0x10
PSH = 0x08

IP4_A = ("192.0.2.1", 1)
IP4_B = ("192.0.2.2", 1)
IP6_A = ("2001:db8::1", 1)
IP6_B = ("2001:db8::2", 1)


def _ipv4_header(total_len, proto, src, dst, ttl=64, tos=0, flags=0):
    h = bytearray(20)
    h[0] = 0x45
    h[1] = tos
    h[2:4] = total_len.to_bytes(2, "big")
    h[6:8] = (flags << 13).to_bytes(2, "big")
    h[8] = ttl
    h[9] = proto
    h[12:16] = ipaddress.IPv4Address(src).packed
    h[16:20] = ipaddress.IPv4Address(dst).packed
    h[10:12] = (~checksum(h, 0) & 0xFFFF).to_bytes(2, "big")
    return h


def _ipv6_header(payload_len, proto, src, dst, hop_limit=64, traffic_class=0):
    h = bytearray(40)
    h[0] = 0x60 | (traffic_class >> 4)
    h[1] = (traffic_class & 0x0F) << 4
    h[4:6] = payload_len.to_bytes(2, "big")
    h[6] = proto
    h[7] = hop_limit
    h[8:24] = ipaddress.IPv6Address(src).packed
    h[24:40] = ipaddress.IPv6Address(dst).packed
    return h


def _tcp_segment(src, dst, flags, payload, seq, src_port, dst_port):
    t = bytearray(20)
    t[0:2] = src_port.to_bytes(2, "big")
    t[2:4] = dst_port.to_bytes(2, "big")
    t[4:8] = seq.to_bytes(4, "big")
    t[8:12] = (1).to_bytes(4, "big")
    t[12] = (20 // 4) << 4
    t[13] = flags
    t[14:16] = (3000).to_bytes(2, "big")
    seg = t + payload
    pseudo = pseudo_header_checksum_no_fold(6, src, dst, len(seg))
    seg[16:18] = (~checksum(seg, pseudo) & 0xFFFF).to_bytes(2, "big")
    return seg


def _udp_datagram(src, dst, payload, src_port, dst_port):
    u = bytearray(8)
    u[0:2] = src_port.to_bytes(2, "big")
    u[2:4] = dst_port.to_bytes(2, "big")
    u[4:6] = (8 + len(payload)).to_bytes(2, "big")
    dgram = u + payload
    pseudo = pseudo_header_checksum_no_fold(17, src, dst, len(dgram))
    dgram[6:8] = (~checksum(dgram, pseudo) & 0xFFFF).to_bytes(2, "big")
    return dgram


def tcp4(src, dst, flags, size, seq, fill=0, **ip):
    payload = bytearray([fill]) * size
    src_b = ipaddress.IPv4Address(src[0]).packed
    dst_b = ipaddress.IPv4Address(dst[0]).packed
    seg = _tcp_segment(src_b, dst_b, flags, payload, seq, src[1], dst[1])
    hdr = _ipv4_header(20 + len(seg), 6, src[0], dst[0], **ip)
    return bytearray(OFFSET) + hdr + seg


def tcp6(src, dst, flags, size, seq, fill=0, **ip):
    payload = bytearray([fill]) * size
    src_b = ipaddress.IPv6Address(src[0]).packed
    dst_b = ipaddress.IPv6Address(dst[0]).packed
    seg = _tcp_segment(src_b, dst_b, flags, payload, seq, src[1], dst[1])
    hdr = _ipv6_header(len(seg), 6, src[0], dst[0], **ip)
    return bytearray(OFFSET) + hdr + seg


def udp4(src, dst, size, fill=0, **ip):
    payload = bytearray([fill]) * size
    src_b = ipaddress.IPv4Address(src[0]).packed
    dst_b = ipaddress.IPv4Address(dst[0]).packed
    dgram = _udp_datagram(src_b, dst_b, payload, src[1], dst[1])
    hdr = _ipv4_header(20 + len(dgram), 17, src[0], dst[0], **ip)
    return bytearray(OFFSET) + hdr + dgram


def udp6(src, dst, size, fill=0, **ip):
    payload = bytearray([fill]) * size
    src_b = ipaddress.IPv6Address(src[0]).packed
    dst_b = ipaddress.IPv6Address(dst[0]).packed
    dgram = _udp_datagram(src_b, dst_b, payload, src[1], dst[1])
    hdr = _ipv6_header(len(dgram), 17, src[0], dst[0], **ip)
    return bytearray(OFFSET) + hdr + dgram


def flip_tcp4_checksum(b):
    at = OFFSET + 20 + 16
    b[at] ^= 0xFF
    b[at + 1] ^= 0xFF
    return b


def flip_udp4_checksum(b):
    at = OFFSET + 20 + 6
    b[at] ^= 0xFF
    b[at + 1] ^= 0xFF
    return b


def udp_item(buf, index, iph_len=20):
    pkt = buf[OFFSET:]
    key = UDPFlowKey.from_packet(pkt, 12, 16, iph_len)
    return UDPGROItem(key=key, bufs_index=index, gso_size=len(pkt) - iph_len - 8, iph_len=iph_len)


def tcp_item(buf, index, iph_len=20, tcph_len=20):
    pkt = buf[OFFSET:]
    if iph_len == 40:
        key = TCPFlowKey.from_packet(pkt, 8, 24, iph_len)
    else:
        key = TCPFlowKey.from_packet(pkt, 12, 16, iph_len)
    return TCPGROItem(
        key=key,
        sent_seq=int.from_bytes(pkt[iph_len + 4 : iph_len + 8], "big"),
        bufs_index=index,
        gso_size=len(pkt) - iph_len - tcph_len,
        iph_len=iph_len,
        tcph_len=tcph_len,
        psh_set=bool(pkt[iph_len + 13] & PSH),
    )


# ip_headers_can_coalesce


def test_ip_headers_equal_ipv4():
    a = tcp4(IP4_A, IP4_B, ACK, 100, 1)[OFFSET:]
    b = tcp4(IP4_A, IP4_B, ACK, 100, 101)[OFFSET:]
    assert ip_headers_can_coalesce(a, b) is True


@pytest.mark.parametrize("ip", [{"hop_limit": 65}, {"traffic_class": 1}, {"traffic_class": 0x10}])
def test_ip_headers_unequal_ipv6(ip):
    a = tcp6(IP6_A, IP6_B, ACK, 100, 1)[OFFSET:]
    b = tcp6(IP6_A, IP6_B, ACK, 100, 101, **ip)[OFFSET:]
    assert ip_headers_can_coalesce(a, b) is False


def test_ip_headers_equal_ipv6():
    a = udp6(IP6_A, IP6_B, 100)[OFFSET:]
    b = udp6(IP6_A, IP6_B, 100)[OFFSET:]
    assert ip_headers_can_coalesce(a, b) is True


def test_ip_headers_too_short():
    assert ip_headers_can_coalesce(b"\x45" * 8, b"\x45" * 20) is False


# udp_packets_can_coalesce, cases from the source's tests


def test_udp_can_coalesce_append_equal_gso():
    udp4a = udp4(IP4_A, IP4_B, 100)
    udp4b = udp4(IP4_A, IP4_B, 100)
    item = UDPGROItem(key=None, bufs_index=0, gso_size=100, iph_len=20)
    got = udp_packets_can_coalesce(udp4a[OFFSET:], 20, 100, item, [udp4a, udp4b], OFFSET)
    assert got == CanCoalesce.APPEND


def test_udp_can_coalesce_append_smaller_gso():
    udp4a = udp4(IP4_A, IP4_B, 100)
    udp4b = udp4(IP4_A, IP4_B, 100)
    item = UDPGROItem(key=None, bufs_index=0, gso_size=100, iph_len=20)
    pkt = udp4a[OFFSET : len(udp4a) - 90]
    got = udp_packets_can_coalesce(pkt, 20, 10, item, [udp4a, udp4b], OFFSET)
    assert got == CanCoalesce.APPEND


def test_udp_can_coalesce_unavailable_smaller_previously_appended():
    udp4a = udp4(IP4_A, IP4_B, 100)
    udp4b = udp4(IP4_A, IP4_B, 100)
    udp4c = udp4(IP4_A, IP4_B, 110)
    item = UDPGROItem(key=None, bufs_index=0, gso_size=100, iph_len=20)
    got = udp_packets_can_coalesce(udp4a[OFFSET:], 20, 100, item, [udp4c, udp4b], OFFSET)
    assert got == CanCoalesce.UNAVAILABLE


def test_udp_can_coalesce_unavailable_larger_following_smaller():
    udp4a = udp4(IP4_A, IP4_B, 100)
    udp4c = udp4(IP4_A, IP4_B, 110)
    item = UDPGROItem(key=None, bufs_index=0, gso_size=100, iph_len=20)
    got = udp_packets_can_coalesce(udp4c[OFFSET:], 20, 110, item, [udp4a, udp4c], OFFSET)
    assert got == CanCoalesce.UNAVAILABLE


def test_udp_can_coalesce_unavailable_unequal_ttl():
    udp4a = udp4(IP4_A, IP4_B, 100)
    udp4b = udp4(IP4_A, IP4_B, 100, ttl=65)
    item = udp_item(udp4a, 0)
    got = udp_packets_can_coalesce(udp4b[OFFSET:], 20, 100, item, [udp4a, udp4b], OFFSET)
    assert got == CanCoalesce.UNAVAILABLE


# tcp_packets_can_coalesce


def test_tcp_can_coalesce_append():
    a = tcp4(IP4_A, IP4_B, ACK, 100, 1)
    b = tcp4(IP4_A, IP4_B, ACK, 100, 101)
    item = tcp_item(a, 0)
    got = tcp_packets_can_coalesce(b[OFFSET:], 20, 20, 101, False, 100, item, [a, b], OFFSET)
    assert got == CanCoalesce.APPEND


def test_tcp_can_coalesce_prepend():
    a = tcp4(IP4_A, IP4_B, ACK, 100, 101)
    b = tcp4(IP4_A, IP4_B, ACK, 100, 1)
    item = tcp_item(a, 0)
    got = tcp_packets_can_coalesce(b[OFFSET:], 20, 20, 1, False, 100, item, [a, b], OFFSET)
    assert got == CanCoalesce.PREPEND


def test_tcp_can_coalesce_not_adjacent():
    a = tcp4(IP4_A, IP4_B, ACK, 100, 1)
    b = tcp4(IP4_A, IP4_B, ACK, 100, 301)
    item = tcp_item(a, 0)
    got = tcp_packets_can_coalesce(b[OFFSET:], 20, 20, 301, False, 100, item, [a, b], OFFSET)
    assert got == CanCoalesce.UNAVAILABLE


def test_tcp_can_coalesce_append_after_psh_unavailable():
    a = tcp4(IP4_A, IP4_B, ACK | PSH, 100, 1)
    b = tcp4(IP4_A, IP4_B, ACK, 100, 101)
    item = tcp_item(a, 0)
    assert item.psh_set is True
    got = tcp_packets_can_coalesce(b[OFFSET:], 20, 20, 101, False, 100, item, [a, b], OFFSET)
    assert got == CanCoalesce.UNAVAILABLE


def test_tcp_can_coalesce_prepend_with_psh_unavailable():
    a = tcp4(IP4_A, IP4_B, ACK, 100, 101)
    b = tcp4(IP4_A, IP4_B, ACK | PSH, 100, 1)
    item = tcp_item(a, 0)
    got = tcp_packets_can_coalesce(b[OFFSET:], 20, 20, 1, True, 100, item, [a, b], OFFSET)
    assert got == CanCoalesce.UNAVAILABLE


def test_tcp_can_coalesce_unequal_header_len():
    a = tcp4(IP4_A, IP4_B, ACK, 100, 1)
    b = tcp4(IP4_A, IP4_B, ACK, 100, 101)
    item = tcp_item(a, 0)
    got = tcp_packets_can_coalesce(b[OFFSET:], 20, 24, 101, False, 96, item, [a, b], OFFSET)
    assert got == CanCoalesce.UNAVAILABLE


def test_tcp_can_coalesce_larger_after_smaller_unavailable():
    a = tcp4(IP4_A, IP4_B, ACK, 100, 1)
    b = tcp4(IP4_A, IP4_B, ACK, 200, 101)
    item = tcp_item(a, 0)
    got = tcp_packets_can_coalesce(b[OFFSET:], 20, 20, 101, False, 200, item, [a, b], OFFSET)
    assert got == CanCoalesce.UNAVAILABLE


def test_tcp_can_coalesce_ipv6_unequal_hop_limit():
    a = tcp6(IP6_A, IP6_B, ACK, 100, 1)
    b = tcp6(IP6_A, IP6_B, ACK, 100, 101, hop_limit=65)
    item = tcp_item(a, 0, iph_len=40)
    got = tcp_packets_can_coalesce(b[OFFSET:], 40, 20, 101, False, 100, item, [a, b], OFFSET)
    assert got == CanCoalesce.UNAVAILABLE


# checksum_valid


@pytest.mark.parametrize(
    "pkt, iph_len, proto, is_v6",
    [
        (tcp4(IP4_A, IP4_B, ACK, 100, 1), 20, 6, False),
        (tcp6(IP6_A, IP6_B, ACK, 100, 1), 40, 6, True),
        (udp4(IP4_A, IP4_B, 100), 20, 17, False),
        (udp6(IP6_A, IP6_B, 100), 40, 17, True),
    ],
)
def test_checksum_valid_true(pkt, iph_len, proto, is_v6):
    assert checksum_valid(pkt[OFFSET:], iph_len, proto, is_v6) is True


def test_checksum_valid_false_when_flipped():
    assert checksum_valid(flip_tcp4_checksum(tcp4(IP4_A, IP4_B, ACK, 100, 1))[OFFSET:], 20, 6, False) is False
    assert checksum_valid(flip_udp4_checksum(udp4(IP4_A, IP4_B, 100))[OFFSET:], 20, 17, False) is False


# coalesce_udp_packets


def test_coalesce_udp_success():
    a = udp4(IP4_A, IP4_B, 100, fill=1)
    b = udp4(IP4_A, IP4_B, 100, fill=2)
    bufs = [a, b]
    item = udp_item(a, 0)
    result = coalesce_udp_packets(bytes(b[OFFSET:]), item, bufs, OFFSET, False)
    assert result == CoalesceResult.SUCCESS
    assert item.num_merged == 1
    assert len(bufs[0]) - OFFSET == 228
    assert bytes(bufs[0][OFFSET + 128 :]) == b"\x02" * 100


def test_coalesce_udp_item_invalid_checksum():
    a = flip_udp4_checksum(udp4(IP4_A, IP4_B, 100))
    b = udp4(IP4_A, IP4_B, 100)
    bufs = [a, b]
    item = udp_item(a, 0)
    assert coalesce_udp_packets(bytes(b[OFFSET:]), item, bufs, OFFSET, False) == CoalesceResult.ITEM_INVALID_CSUM
    assert item.num_merged == 0
    assert len(bufs[0]) - OFFSET == 128


def test_coalesce_udp_item_known_invalid():
    a = udp4(IP4_A, IP4_B, 100)
    b = udp4(IP4_A, IP4_B, 100)
    item = udp_item(a, 0)
    item.csum_known_invalid = True
    assert coalesce_udp_packets(bytes(b[OFFSET:]), item, [a, b], OFFSET, False) == CoalesceResult.ITEM_INVALID_CSUM


def test_coalesce_udp_packet_invalid_checksum():
    a = udp4(IP4_A, IP4_B, 100)
    b = flip_udp4_checksum(udp4(IP4_A, IP4_B, 100))
    item = udp_item(a, 0)
    assert coalesce_udp_packets(bytes(b[OFFSET:]), item, [a, b], OFFSET, False) == CoalesceResult.PKT_INVALID_CSUM


def test_coalesce_udp_insufficient_capacity():
    a = udp4(IP4_A, IP4_B, 40000)
    b = udp4(IP4_A, IP4_B, 40000)
    item = udp_item(a, 0)
    assert coalesce_udp_packets(bytes(b[OFFSET:]), item, [a, b], OFFSET, False) == CoalesceResult.INSUFFICIENT_CAP


def test_coalesce_udp_ipv6_success():
    a = udp6(IP6_A, IP6_B, 100)
    b = udp6(IP6_A, IP6_B, 100)
    bufs = [a, b]
    item = udp_item(a, 0, iph_len=40)
    assert coalesce_udp_packets(bytes(b[OFFSET:]), item, bufs, OFFSET, True) == CoalesceResult.SUCCESS
    assert len(bufs[0]) - OFFSET == 248


# coalesce_tcp_packets


def test_coalesce_tcp_append_with_psh():
    a = tcp4(IP4_A, IP4_B, ACK, 100, 1, fill=1)
    b = tcp4(IP4_A, IP4_B, ACK | PSH, 100, 101, fill=2)
    bufs = [a, b]
    item = tcp_item(a, 0)
    result = coalesce_tcp_packets(
        CanCoalesce.APPEND, bytes(b[OFFSET:]), 1, 100, 101, True, item, bufs, OFFSET, False
    )
    assert result == CoalesceResult.SUCCESS
    assert item.psh_set is True
    assert item.num_merged == 1
    assert len(bufs[0]) - OFFSET == 240
    assert bufs[0][OFFSET + 20 + 13] & PSH
    assert bytes(bufs[0][OFFSET + 140 :]) == b"\x02" * 100


def test_coalesce_tcp_prepend_swaps_buffers():
    a = tcp4(IP4_A, IP4_B, ACK, 100, 101, fill=2)
    b = tcp4(IP4_A, IP4_B, ACK, 100, 1, fill=1)
    original_a = bytes(a)
    bufs = [a, b]
    item = tcp_item(a, 0)
    result = coalesce_tcp_packets(
        CanCoalesce.PREPEND, bytes(b[OFFSET:]), 1, 100, 1, False, item, bufs, OFFSET, False
    )
    assert result == CoalesceResult.SUCCESS
    assert item.sent_seq == 1
    assert item.bufs_index == 0
    assert len(bufs[0]) - OFFSET == 240
    assert int.from_bytes(bufs[0][OFFSET + 24 : OFFSET + 28], "big") == 1
    assert bytes(bufs[0][OFFSET + 40 : OFFSET + 140]) == b"\x01" * 100
    assert bytes(bufs[0][OFFSET + 140 :]) == b"\x02" * 100
    assert bytes(bufs[1]) == original_a


def test_coalesce_tcp_prepend_psh_ending():
    a = tcp4(IP4_A, IP4_B, ACK, 100, 101)
    b = tcp4(IP4_A, IP4_B, ACK | PSH, 100, 1)
    item = tcp_item(a, 0)
    result = coalesce_tcp_packets(
        CanCoalesce.PREPEND, bytes(b[OFFSET:]), 1, 100, 1, True, item, [a, b], OFFSET, False
    )
    assert result == CoalesceResult.PSH_ENDING


def test_coalesce_tcp_prepend_larger_raises_gso_size():
    a = tcp4(IP4_A, IP4_B, ACK, 50, 101)
    b = tcp4(IP4_A, IP4_B, ACK, 100, 1)
    bufs = [a, b]
    item = tcp_item(a, 0)
    result = coalesce_tcp_packets(
        CanCoalesce.PREPEND, bytes(b[OFFSET:]), 1, 100, 1, False, item, bufs, OFFSET, False
    )
    assert result == CoalesceResult.SUCCESS
    assert item.gso_size == 100
    assert len(bufs[0]) - OFFSET == 190


def test_coalesce_tcp_item_invalid_checksum():
    a = flip_tcp4_checksum(tcp4(IP4_A, IP4_B, ACK, 100, 1))
    b = tcp4(IP4_A, IP4_B, ACK, 100, 101)
    item = tcp_item(a, 0)
    result = coalesce_tcp_packets(
        CanCoalesce.APPEND, bytes(b[OFFSET:]), 1, 100, 101, False, item, [a, b], OFFSET, False
    )
    assert result == CoalesceResult.ITEM_INVALID_CSUM


def test_coalesce_tcp_packet_invalid_checksum():
    a = tcp4(IP4_A, IP4_B, ACK, 100, 1)
    b = flip_tcp4_checksum(tcp4(IP4_A, IP4_B, ACK, 100, 101))
    item = tcp_item(a, 0)
    result = coalesce_tcp_packets(
        CanCoalesce.APPEND, bytes(b[OFFSET:]), 1, 100, 101, False, item, [a, b], OFFSET, False
    )
    assert result == CoalesceResult.PKT_INVALID_CSUM


def test_coalesce_tcp_insufficient_capacity():
    a = tcp4(IP4_A, IP4_B, ACK, 40000, 1)
    b = tcp4(IP4_A, IP4_B, ACK, 40000, 40001)
    item = tcp_item(a, 0)
    result = coalesce_tcp_packets(
        CanCoalesce.APPEND, bytes(b[OFFSET:]), 1, 40000, 40001, False, item, [a, b], OFFSET, False
    )
    assert result == CoalesceResult.INSUFFICIENT_CAP


def test_coalesce_tcp_ipv6_append():
    a = tcp6(IP6_A, IP6_B, ACK, 100, 1)
    b = tcp6(IP6_A, IP6_B, ACK, 100, 101)
    bufs = [a, b]
    item = tcp_item(a, 0, iph_len=40)
    result = coalesce_tcp_packets(
        CanCoalesce.APPEND, bytes(b[OFFSET:]), 1, 100, 101, False, item, bufs, OFFSET, True
    )
    assert result == CoalesceResult.SUCCESS
    assert len(bufs[0]) - OFFSET == 260