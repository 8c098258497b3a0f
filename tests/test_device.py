import pytest

from awgtun.device import Device, Event, TooManySegmentsError


class _RecordingDevice(Device):
    def __init__(self):
        self.closed = False
        self.written = []

    def read(self, bufs, offset):
        bufs[0][offset : offset + 3] = b"abc"
        return [3]

    def write(self, bufs, offset):
        self.written.extend(bytes(b[offset:]) for b in bufs)
        return len(bufs)

    def mtu(self):
        return 1500

    def name(self):
        return "rec0"

    def events(self):
        yield Event.UP

    def close(self):
        self.closed = True

    def batch_size(self):
        return 1


def test_device_is_abstract():
    with pytest.raises(TypeError):
        Device()


def test_enter_returns_device_and_exit_closes():
    dev = _RecordingDevice()
    entered = Device.__enter__(dev)
    assert entered is dev
    assert not dev.closed
    Device.__exit__(dev, None, None, None)
    assert dev.closed


def test_exit_closes_and_does_not_suppress_error():
    dev = _RecordingDevice()
    exc = RuntimeError("boom")
    suppressed = Device.__exit__(dev, RuntimeError, exc, None)
    assert not suppressed
    assert dev.closed


def test_event_from_values():
    assert Event(1) is Event.UP
    assert Event(2) is Event.DOWN
    assert Event(4) is Event.MTU_UPDATE


def test_event_combination():
    combined = Event(5)
    assert combined == Event.UP | Event.MTU_UPDATE
    assert Event.UP in combined
    assert Event.MTU_UPDATE in combined
    assert Event.DOWN not in combined


def test_too_many_segments_message():
    err = TooManySegmentsError()
    assert str(err) == "too many segments"
    with pytest.raises(TooManySegmentsError, match="too many segments"):
        raise err