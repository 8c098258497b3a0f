# awgtun

Packet-level building blocks for TUN devices, in pure Python with no
dependencies.

## Modules

- `awgtun.checksum`: the Internet checksum (RFC 1071). `checksum_no_fold`
  returns the unfolded sum, `checksum` the folded 16-bit sum, and
  `pseudo_header_checksum_no_fold` the sum of a TCP/UDP pseudo header.
- `awgtun.device`: the abstract `Device` class with `read`, `write`, `mtu`,
  `name`, `events`, `close` and `batch_size`; it can be used as a context
  manager, which closes it on exit. `Event` is a flag enum with `UP`, `DOWN`
  and `MTU_UPDATE`. `TooManySegmentsError` is raised when a split produces
  more segments than there are buffers.
- `awgtun.virtio`: `VirtioNetHdr` with `decode` and `encode`, and the
  `GSOType` values. `handle_virtio_read` takes a read that starts with a
  virtio-net header and places the packet, or the segments of a TCP or UDP
  GSO packet, into a list of buffers, returning the size of each. It relies
  on `gso_split` and `gso_none_checksum`, which can also be called directly.
- `awgtun.gro_table`: `TCPGROTable` and `UDPGROTable`, which track packets
  per flow (`TCPFlowKey`, `UDPFlowKey`) during one coalescing pass.
- `awgtun.coalesce`: the checks (`ip_headers_can_coalesce`,
  `tcp_packets_can_coalesce`, `udp_packets_can_coalesce`, `checksum_valid`)
  and merges (`coalesce_tcp_packets`, `coalesce_udp_packets`) used for GRO.
- `awgtun.gro`: `handle_gro` merges a batch of outgoing TCP and UDP packets of
  the same flow in place, writes a virtio-net header in front of each packet
  to be sent and returns the indices of those packets. `write_packets` runs
  that over a batch (when `vnet_hdr` is true) and writes the result to any
  object with a `write` method, returning the number of bytes written.
- `awgtun.tuntest`: `ChannelTUN`, an in-memory `Device` backed by queues, and
  `ping`, which builds an ICMPv4 echo request. Both are meant for tests.

## Install

```
pip install awgtun
```

For the test suite:

```
pip install "awgtun[test]"
pytest
```

## Examples

An in-memory device:

```python
from awgtun.tuntest import ChannelTUN, ping

with ChannelTUN() as tun:
    pkt = ping("192.0.2.2", "192.0.2.1")
    tun.write([pkt], 0)
    print(tun.inbound.get() == pkt)  # True
```

Preparing a batch for a TUN file that expects virtio-net headers. Each
buffer keeps `VIRTIO_NET_HDR_LEN` free bytes in front of its IP packet:

```python
from awgtun.gro import handle_gro
from awgtun.gro_table import TCPGROTable, UDPGROTable
from awgtun.tuntest import ping
from awgtun.virtio import VIRTIO_NET_HDR_LEN

offset = VIRTIO_NET_HDR_LEN
bufs = [bytearray(offset) + ping("192.0.2.2", "192.0.2.1")]
to_write = handle_gro(bufs, offset, TCPGROTable(), UDPGROTable(), True)
print(to_write)  # [0]; the ICMP packet is not coalesced
```

## What this package does not do

It does not open, create or configure operating-system TUN interfaces, set
their MTU or watch them for link changes, and it has no user-space network
stack. `Device` is an interface only; `ChannelTUN` is the one device that
comes with the package. To use the GSO and GRO helpers with a real device,
read from and write to its file yourself, for instance through
`handle_virtio_read` and `write_packets`.