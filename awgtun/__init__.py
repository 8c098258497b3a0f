"""TUN device interface, Internet checksums, virtio-net GSO splitting and TCP/UDP GRO coalescing."""

__version__ = "0.1.0"
__all__ = ["checksum", "device", "tuntest", "virtio", "gro_table", "coalesce", "gro"]