"""The TUN device interface, its events and errors."""

from __future__ import annotations

import abc
import enum
from collections.abc import Iterator, Sequence


class Event(enum.IntFlag):
    """Events reported by a device."""

    UP = 1
    DOWN = 2
    MTU_UPDATE = 4


class TooManySegmentsError(Exception):
    """Segmentation overflowed the supplied buffers; reading may continue."""

    def __init__(self, message: str = "too many segments") -> None:
        super().__init__(message)


class Device(abc.ABC):
    """A packet device that reads and writes batches of IP packets."""

    @abc.abstractmethod
    def read(self, bufs: Sequence[bytearray], offset: int) -> list[int]:
        """Read packets into ``bufs`` starting at ``offset``.

        Returns the size of each packet read, one entry per filled buffer.
        """

    @abc.abstractmethod
    def write(self, bufs: Sequence[bytearray], offset: int) -> int:
        """Write the packets found at ``offset`` in ``bufs``; return the count."""

    @abc.abstractmethod
    def mtu(self) -> int:
        """Return the MTU of the device."""

    @abc.abstractmethod
    def name(self) -> str:
        """Return the current name of the device."""

    @abc.abstractmethod
    def events(self) -> Iterator[Event]:
        """Yield device events until the device is closed."""

    @abc.abstractmethod
    def close(self) -> None:
        """Stop the device and end its event stream."""

    @abc.abstractmethod
    def batch_size(self) -> int:
        """Return the preferred number of packets per read or write."""

    def __enter__(self) -> Device:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()