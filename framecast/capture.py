"""
Capture loop.

The Capturer owns the device and runs a dedicated thread that:
  - reads a frame from the device
  - publishes it to the FrameChannel
  - on a read fault, publishes a black placeholder frame, waits the
    recovery interval and reopens the device stream
  - paces itself to the configured frame rate

Device reads block, so they never run on an HTTP request thread.
"""

import logging
import threading
import time
from typing import Optional

from . import FramecastError
from .camera import CameraError, CaptureDevice
from .channel import ChannelClosed, FrameChannel
from .config import RECOVERY_INTERVAL, CaptureConfig

logger = logging.getLogger(__name__)


class CaptureError(FramecastError):
    """Raised when the capture loop cannot start."""
    pass


class Capturer:
    """
    Pulls frames from a CaptureDevice and publishes them to a FrameChannel.

    Usage:
        capturer = Capturer(cfg, channel, device)
        capturer.start()
        ...
        capturer.stop()
        capturer.join()

    The stop_event is the cancellation token for the loop. It is checked
    once per iteration and also interrupts the pacing and recovery waits.
    """

    def __init__(
        self,
        config: CaptureConfig,
        channel: FrameChannel,
        device: CaptureDevice,
        stop_event: Optional[threading.Event] = None,
        recovery_interval: float = RECOVERY_INTERVAL,
    ):
        self.config = config
        self.channel = channel
        self.device = device
        self.recovery_interval = recovery_interval
        self._stop_event = stop_event or threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._placeholder = bytes(config.placeholder_size)
        self._unobserved = False

        self._frame_count = 0
        self._read_failures = 0
        self._placeholders_sent = 0
        self._reopen_failures = 0
        self._last_frame_time = 0.0

    def start(self) -> threading.Thread:
        """
        Open the device and start the capture thread.

        Returns:
            The running capture thread

        Raises:
            CaptureError: Invalid device index, device open failure, or the
                capturer was already stopped
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Capturer already running")
            return self._thread
        if self._stop_event.is_set():
            raise CaptureError("Capturer was stopped and cannot be restarted")

        cfg = self.config
        if cfg.device_index < 0:
            raise CaptureError(f"Invalid device index: {cfg.device_index}")

        try:
            self.device.open(cfg.device_index, cfg.width, cfg.height, cfg.fps)
        except CameraError as e:
            raise CaptureError(f"Camera initialization failed: {e}") from e

        logger.info(
            "Capturing from %r at %dx%d @ %dfps",
            self.device, cfg.width, cfg.height, cfg.fps,
        )
        self._thread = threading.Thread(
            target=self._run, name="framecast-capture", daemon=True
        )
        self._thread.start()
        return self._thread

    def stop(self):
        """Ask the loop to exit after its current iteration. Does not wait."""
        self._stop_event.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the capture thread to finish.

        Returns:
            True if the thread has exited (or never started)
        """
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self):
        interval = self.config.frame_interval
        try:
            while not self._stop_event.is_set():
                self._capture_once()
                self._stop_event.wait(interval)
        except ChannelClosed:
            logger.info("Channel closed, stopping capture")
        except Exception:
            logger.exception("Capture loop crashed")
        finally:
            self._close_device()
            logger.info("Capture stopped after %d frames", self._frame_count)

    def _capture_once(self):
        try:
            frame = self.device.read_frame()
        except Exception as e:
            # Any backend failure (cv2.error, OSError on unplug, ...) is a faulted read
            self._read_failures += 1
            logger.error("Frame capture error: %s, sending black frame", e)
            self._publish(self._placeholder)
            self._placeholders_sent += 1
            self._recover()
            return

        self._frame_count += 1
        self._last_frame_time = time.time()
        self._publish(frame)

    def _recover(self):
        if self._stop_event.wait(self.recovery_interval):
            return
        try:
            self.device.reopen()
        except Exception as e:
            self._reopen_failures += 1
            logger.error("Failed to restart stream: %s, will retry", e)

    def _publish(self, frame: bytes):
        receivers = self.channel.publish(frame)
        # Frames keep flowing with no viewers so a new viewer starts on a live frame
        if receivers == 0 and not self._unobserved:
            logger.debug("No viewers connected, discarding frames")
            self._unobserved = True
        elif receivers and self._unobserved:
            logger.debug("Viewer connected, %d subscriber(s)", receivers)
            self._unobserved = False

    def _close_device(self):
        try:
            self.device.close()
        except Exception as e:
            logger.error("Failed to stop stream: %s", e)

    def get_stats(self) -> dict:
        """Get capture statistics."""
        cfg = self.config
        return {
            "running": self.is_running(),
            "frames": self._frame_count,
            "read_failures": self._read_failures,
            "placeholders": self._placeholders_sent,
            "reopen_failures": self._reopen_failures,
            "last_frame_time": self._last_frame_time,
            "resolution": f"{cfg.width}x{cfg.height}",
            "target_fps": cfg.fps,
            "backend": cfg.backend,
        }
