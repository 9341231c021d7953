"""Shared fixtures: a scriptable capture device and small pipeline configs."""

import time

import pytest

from framecast.camera import CameraError, CaptureDevice
from framecast.config import CaptureConfig


class FakeDevice(CaptureDevice):
    """
    Capture device driven by the test.

    Reads return queued frames first, then unique generated frames. The
    first `fail_reads` reads raise CameraError.
    """

    name = "fake"

    def __init__(self, frames=None, fail_reads=0, fail_open=False, fail_reopen=False):
        super().__init__()
        self.frames = list(frames or [])
        self.fail_reads = fail_reads
        self.fail_open = fail_open
        self.fail_reopen = fail_reopen
        self.read_times = []
        self.open_count = 0
        self.close_count = 0

    def _open(self):
        self.open_count += 1
        if self.fail_open or (self.fail_reopen and self.open_count > 1):
            raise CameraError("no such device")

    def read_frame(self) -> bytes:
        self.read_times.append(time.monotonic())
        if self.fail_reads > 0:
            self.fail_reads -= 1
            raise CameraError("read failed")
        if self.frames:
            return self.frames.pop(0)
        return b"frame-%d" % len(self.read_times)

    def _close(self):
        self.close_count += 1


@pytest.fixture
def fake_device():
    return FakeDevice()


@pytest.fixture
def small_config():
    """4x2 frames at 100fps: placeholders are 24 bytes, frame period 10ms."""
    return CaptureConfig(device_index=0, width=4, height=2, fps=100, backend="fake")


def wait_until(predicate, timeout=2.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
