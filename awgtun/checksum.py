"""Internet checksum helpers (RFC 1071) used for IP, TCP and UDP headers."""

from __future__ import annotations

import struct

_UINT64_MASK = 0xFFFF_FFFF_FFFF_FFFF


def checksum_no_fold(data: bytes | bytearray | memoryview, initial: int = 0) -> int:
    """Return the unfolded one's complement sum of ``data`` added to ``initial``.

    Data is summed as big-endian 32-bit words, then a trailing 16-bit word,
    then a trailing odd byte shifted into the high half of a 16-bit word.
    The accumulator wraps at 64 bits.
    """
    view = memoryview(data).cast("B")
    words_end = len(view) - len(view) % 4
    total = initial + sum(word for (word,) in struct.iter_unpack(">I", view[:words_end]))
    rest = view[words_end:]
    if len(rest) >= 2:
        total += (rest[0] << 8) | rest[1]
        rest = rest[2:]
    if len(rest) == 1:
        total += rest[0] << 8
    return total & _UINT64_MASK


def checksum(data: bytes | bytearray | memoryview, initial: int = 0) -> int:
    """Return the 16-bit folded one's complement sum of ``data``."""
    total = checksum_no_fold(data, initial)
    for _ in range(4):
        total = (total >> 16) + (total & 0xFFFF)
    return total & 0xFFFF


def pseudo_header_checksum_no_fold(
    protocol: int,
    src_addr: bytes | bytearray | memoryview,
    dst_addr: bytes | bytearray | memoryview,
    total_len: int,
) -> int:
    """Return the unfolded sum of a TCP/UDP pseudo header."""
    total = checksum_no_fold(src_addr, 0)
    total = checksum_no_fold(dst_addr, total)
    total = checksum_no_fold(bytes((0, protocol & 0xFF)), total)
    return checksum_no_fold((total_len & 0xFFFF).to_bytes(2, "big"), total)