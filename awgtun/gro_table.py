"""Flow tables that track packets during a GRO pass over a batch."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass

from awgtun.virtio import TCP_FLAG_PSH, TCP_FLAGS_OFFSET, UDPH_LEN


def _u16(pkt: bytes | bytearray | memoryview, at: int) -> int:
    return int.from_bytes(pkt[at : at + 2], "big")


def _u32(pkt: bytes | bytearray | memoryview, at: int) -> int:
    return int.from_bytes(pkt[at : at + 4], "big")


@dataclass(frozen=True)
class TCPFlowKey:
    """Identifies a TCP flow; differing ACK values count as separate flows."""

    src_addr: bytes
    dst_addr: bytes
    src_port: int
    dst_port: int
    rx_ack: int
    is_v6: bool

    @classmethod
    def from_packet(
        cls,
        pkt: bytes | bytearray | memoryview,
        src_addr_offset: int,
        dst_addr_offset: int,
        tcph_offset: int,
    ) -> TCPFlowKey:
        """Build the key of the TCP packet ``pkt``."""
        addr_size = dst_addr_offset - src_addr_offset
        return cls(
            src_addr=bytes(pkt[src_addr_offset:dst_addr_offset]),
            dst_addr=bytes(pkt[dst_addr_offset : dst_addr_offset + addr_size]),
            src_port=_u16(pkt, tcph_offset),
            dst_port=_u16(pkt, tcph_offset + 2),
            rx_ack=_u32(pkt, tcph_offset + 8),
            is_v6=addr_size == 16,
        )


@dataclass
class TCPGROItem:
    """Bookkeeping for one TCP packet during a GRO pass."""

    key: TCPFlowKey
    sent_seq: int
    bufs_index: int
    gso_size: int
    iph_len: int
    tcph_len: int
    psh_set: bool
    num_merged: int = 0


class TCPGROTable:
    """Items tracked per TCP flow for coalescing."""

    def __init__(self) -> None:
        self.items_by_flow: dict[TCPFlowKey, list[TCPGROItem]] = {}

    def lookup_or_insert(
        self,
        pkt: bytes | bytearray | memoryview,
        src_addr_offset: int,
        dst_addr_offset: int,
        tcph_offset: int,
        tcph_len: int,
        bufs_index: int,
    ) -> list[TCPGROItem] | None:
        """Return the items of the packet's flow, or insert it and return None."""
        key = TCPFlowKey.from_packet(pkt, src_addr_offset, dst_addr_offset, tcph_offset)
        items = self.items_by_flow.get(key)
        if items is not None:
            return list(items)
        self.insert(pkt, src_addr_offset, dst_addr_offset, tcph_offset, tcph_len, bufs_index)
        return None

    def insert(
        self,
        pkt: bytes | bytearray | memoryview,
        src_addr_offset: int,
        dst_addr_offset: int,
        tcph_offset: int,
        tcph_len: int,
        bufs_index: int,
    ) -> None:
        """Append an item for ``pkt`` to its flow."""
        key = TCPFlowKey.from_packet(pkt, src_addr_offset, dst_addr_offset, tcph_offset)
        item = TCPGROItem(
            key=key,
            sent_seq=_u32(pkt, tcph_offset + 4),
            bufs_index=bufs_index & 0xFFFF,
            gso_size=max(0, len(pkt) - tcph_offset - tcph_len) & 0xFFFF,
            iph_len=tcph_offset & 0xFF,
            tcph_len=tcph_len & 0xFF,
            psh_set=bool(pkt[tcph_offset + TCP_FLAGS_OFFSET] & TCP_FLAG_PSH),
        )
        self.items_by_flow.setdefault(key, []).append(item)

    def update_at(self, item: TCPGROItem, index: int) -> None:
        """Replace the item at ``index`` within its flow."""
        self.items_by_flow[item.key][index] = item

    def delete_at(self, key: TCPFlowKey, index: int) -> None:
        """Remove the item at ``index`` from the flow ``key``."""
        del self.items_by_flow[key][index]

    def reset(self) -> None:
        """Forget every flow."""
        self.items_by_flow.clear()

    def __iter__(self) -> Iterator[TCPGROItem]:
        for items in self.items_by_flow.values():
            yield from items

    def __len__(self) -> int:
        return sum(len(items) for items in self.items_by_flow.values())


@dataclass(frozen=True)
class UDPFlowKey:
    """Identifies a UDP flow."""

    src_addr: bytes
    dst_addr: bytes
    src_port: int
    dst_port: int
    is_v6: bool

    @classmethod
    def from_packet(
        cls,
        pkt: bytes | bytearray | memoryview,
        src_addr_offset: int,
        dst_addr_offset: int,
        udph_offset: int,
    ) -> UDPFlowKey:
        """Build the key of the UDP packet ``pkt``."""
        addr_size = dst_addr_offset - src_addr_offset
        return cls(
            src_addr=bytes(pkt[src_addr_offset:dst_addr_offset]),
            dst_addr=bytes(pkt[dst_addr_offset : dst_addr_offset + addr_size]),
            src_port=_u16(pkt, udph_offset),
            dst_port=_u16(pkt, udph_offset + 2),
            is_v6=addr_size == 16,
        )


@dataclass
class UDPGROItem:
    """Bookkeeping for one UDP packet during a GRO pass.

    ``csum_known_invalid`` False means the checksum is unknown, not valid.
    """

    key: UDPFlowKey
    bufs_index: int
    gso_size: int
    iph_len: int
    csum_known_invalid: bool = False
    num_merged: int = 0


class UDPGROTable:
    """Items tracked per UDP flow for coalescing."""

    def __init__(self) -> None:
        self.items_by_flow: dict[UDPFlowKey, list[UDPGROItem]] = {}

    def lookup_or_insert(
        self,
        pkt: bytes | bytearray | memoryview,
        src_addr_offset: int,
        dst_addr_offset: int,
        udph_offset: int,
        bufs_index: int,
    ) -> list[UDPGROItem] | None:
        """Return the items of the packet's flow, or insert it and return None."""
        key = UDPFlowKey.from_packet(pkt, src_addr_offset, dst_addr_offset, udph_offset)
        items = self.items_by_flow.get(key)
        if items is not None:
            return list(items)
        self.insert(pkt, src_addr_offset, dst_addr_offset, udph_offset, bufs_index, False)
        return None

    def insert(
        self,
        pkt: bytes | bytearray | memoryview,
        src_addr_offset: int,
        dst_addr_offset: int,
        udph_offset: int,
        bufs_index: int,
        csum_known_invalid: bool = False,
    ) -> None:
        """Append an item for ``pkt`` to its flow."""
        key = UDPFlowKey.from_packet(pkt, src_addr_offset, dst_addr_offset, udph_offset)
        item = UDPGROItem(
            key=key,
            bufs_index=bufs_index & 0xFFFF,
            gso_size=max(0, len(pkt) - udph_offset - UDPH_LEN) & 0xFFFF,
            iph_len=udph_offset & 0xFF,
            csum_known_invalid=csum_known_invalid,
        )
        self.items_by_flow.setdefault(key, []).append(item)

    def update_at(self, item: UDPGROItem, index: int) -> None:
        """Replace the item at ``index`` within its flow."""
        self.items_by_flow[item.key][index] = item

    def reset(self) -> None:
        """Forget every flow."""
        self.items_by_flow.clear()

    def __iter__(self) -> Iterator[UDPGROItem]:
        for items in self.items_by_flow.values():
            yield from items

    def __len__(self) -> int:
        return sum(len(items) for items in self.items_by_flow.values())