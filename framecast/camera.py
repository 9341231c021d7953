"""
Capture device backends.

Every backend exposes the same small capability used by the capture loop:
  - open(index, width, height, fps) starts the device stream
  - read_frame() returns one JPEG-encoded frame as bytes
  - close() releases the device
  - reopen() restarts the stream with the last opened settings

Backends:
  - OpenCVDevice     V4L2/UVC webcams through cv2.VideoCapture
  - Picamera2Device  Raspberry Pi camera module with the hardware MJPEG encoder
  - DummyDevice      Test pattern frames, no hardware needed
"""

import io
import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional, Tuple

import cv2
import numpy as np
from PIL import Image

from . import FramecastError
from .config import CaptureConfig

# Picamera2 is only available on Raspberry Pi OS with libcamera
try:
    from picamera2 import Picamera2
    from picamera2.encoders import MJPEGEncoder
    from picamera2.outputs import FileOutput
    PICAMERA2_AVAILABLE = True
except ImportError:
    PICAMERA2_AVAILABLE = False

logger = logging.getLogger(__name__)


class CameraError(FramecastError):
    """Raised when camera operations fail."""
    pass


class CaptureDevice(ABC):
    """
    Base class for capture backends.

    Subclasses implement _open, read_frame and _close. The base class keeps
    the requested settings so the stream can be reopened after a fault.
    """

    name = "base"

    def __init__(self, quality: int = 80):
        self.quality = quality
        self.index: Optional[int] = None
        self.width = 0
        self.height = 0
        self.fps = 1
        self._opened = False

    def open(self, index: int, width: int, height: int, fps: int):
        """Open the device with the requested resolution and frame rate."""
        if index < 0:
            raise CameraError(f"Invalid device index: {index}")
        self.index = index
        self.width = width
        self.height = height
        self.fps = max(1, fps)
        self._open()
        self._opened = True

    def reopen(self):
        """Restart the device stream with the settings from the last open()."""
        if self.index is None:
            raise CameraError("Device was never opened")
        if self._opened:
            try:
                self.close()
            except CameraError as e:
                logger.debug("Ignoring close error during reopen: %s", e)
        self.open(self.index, self.width, self.height, self.fps)

    def close(self):
        """Release the device. Safe to call more than once."""
        if not self._opened:
            return
        self._opened = False
        self._close()

    def is_open(self) -> bool:
        return self._opened

    @abstractmethod
    def read_frame(self) -> bytes:
        """Return one JPEG-encoded frame, or raise CameraError."""
        pass

    @abstractmethod
    def _open(self):
        pass

    @abstractmethod
    def _close(self):
        pass

    def __repr__(self):
        return f"<{type(self).__name__} index={self.index} {self.width}x{self.height}@{self.fps}>"


class OpenCVDevice(CaptureDevice):
    """Webcam capture through OpenCV, re-encoded to JPEG per frame."""

    name = "opencv"

    def __init__(self, quality: int = 80):
        super().__init__(quality)
        self._capture: Optional[cv2.VideoCapture] = None

    def _open(self):
        logger.info(
            "Opening OpenCV camera index %d (%dx%d @ %dfps)",
            self.index, self.width, self.height, self.fps,
        )
        try:
            capture = cv2.VideoCapture(self.index)
        except cv2.error as e:
            raise CameraError(f"Failed to open camera index {self.index}: {e}") from e
        if not capture.isOpened():
            capture.release()
            raise CameraError(f"Failed to open camera index {self.index}")

        try:
            # Ask for MJPEG so USB bandwidth allows the higher resolutions
            capture.set(cv2.CAP_PROP_FOURCC, cv2.VideoWriter_fourcc(*"MJPG"))
            capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
            capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
            capture.set(cv2.CAP_PROP_FPS, self.fps)
        except cv2.error as e:
            capture.release()
            raise CameraError(f"Failed to configure camera index {self.index}: {e}") from e
        self._capture = capture

    def read_frame(self) -> bytes:
        if self._capture is None:
            raise CameraError("Camera is not open")

        try:
            ok, frame = self._capture.read()
        except cv2.error as e:
            raise CameraError(f"Read failed on camera index {self.index}: {e}") from e
        if not ok or frame is None:
            raise CameraError(f"Failed to read frame from camera index {self.index}")

        try:
            ok, buffer = cv2.imencode(
                ".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), self.quality]
            )
        except cv2.error as e:
            raise CameraError(f"JPEG encoding failed: {e}") from e
        if not ok:
            raise CameraError("JPEG encoding failed")
        return buffer.tobytes()

    def _close(self):
        capture, self._capture = self._capture, None
        if capture is not None:
            capture.release()


class StreamingOutput(io.BufferedIOBase):
    """
    A file-like output that stores the latest JPEG frame.
    Used by Picamera2's encoder to write frames.
    """

    def __init__(self):
        self.frame: Optional[bytes] = None
        self.condition = threading.Condition()
        self.frame_count = 0

    def write(self, buf: bytes) -> int:
        with self.condition:
            self.frame = bytes(buf)
            self.frame_count += 1
            self.condition.notify_all()
        return len(buf)

    def wait_for_frame(self, seen: int, timeout: float) -> Tuple[Optional[bytes], int]:
        """
        Wait for a frame newer than the `seen` frame count.

        Returns:
            (JPEG bytes, frame count), or (None, seen) if the timeout expired
        """
        with self.condition:
            if not self.condition.wait_for(lambda: self.frame_count > seen, timeout=timeout):
                return None, seen
            return self.frame, self.frame_count


class Picamera2Device(CaptureDevice):
    """Raspberry Pi camera module, JPEG frames from the hardware encoder."""

    name = "picamera2"

    def __init__(self, quality: int = 80, frame_timeout: float = 2.0):
        if not PICAMERA2_AVAILABLE:
            raise CameraError(
                "Picamera2 is not installed or not available.\n"
                "On Raspberry Pi OS install it with:\n"
                "  sudo apt install -y python3-picamera2\n"
                "and enable the camera with raspi-config."
            )
        super().__init__(quality)
        self.frame_timeout = frame_timeout
        self._picam2: Optional["Picamera2"] = None
        self._output: Optional[StreamingOutput] = None
        self._seen = 0

    def _open(self):
        logger.info(
            "Initializing Picamera2 camera %d (%dx%d @ %dfps)",
            self.index, self.width, self.height, self.fps,
        )
        try:
            self._picam2 = Picamera2(camera_num=self.index)
            video_config = self._picam2.create_video_configuration(
                main={"size": (self.width, self.height), "format": "RGB888"},
                controls={"FrameRate": self.fps},
            )
            self._picam2.configure(video_config)

            self._output = StreamingOutput()
            self._seen = 0
            encoder = MJPEGEncoder()
            encoder.output = FileOutput(self._output)

            self._picam2.start()
            self._picam2.start_encoder(encoder)
        except Exception as e:
            try:
                self._release()
            except CameraError as release_error:
                logger.debug("Cleanup after failed start: %s", release_error)
            raise CameraError(f"Failed to start camera: {e}") from e

    def read_frame(self) -> bytes:
        if self._output is None:
            raise CameraError("Camera is not open")
        frame, self._seen = self._output.wait_for_frame(self._seen, self.frame_timeout)
        if frame is None:
            raise CameraError(f"No frame within {self.frame_timeout}s")
        return frame

    def _close(self):
        self._release()

    def _release(self):
        picam2, self._picam2 = self._picam2, None
        self._output = None
        if picam2 is None:
            return
        errors = []
        for step in (picam2.stop_encoder, picam2.stop, picam2.close):
            try:
                step()
            except Exception as e:
                errors.append(f"{step.__name__}: {e}")
        if errors:
            raise CameraError("Errors while releasing camera: " + "; ".join(errors))


class DummyDevice(CaptureDevice):
    """
    A dummy camera for testing without hardware.
    Generates simple test pattern frames.
    """

    name = "dummy"

    def __init__(self, quality: int = 80):
        super().__init__(quality)
        self._frame_count = 0
        self._gradient: Optional[np.ndarray] = None

    def _open(self):
        logger.info("Starting dummy camera (no real hardware)")
        ramp = np.linspace(0.0, 1.0, self.height, dtype=np.float32)[:, None]
        img = np.zeros((self.height, self.width, 3), dtype=np.uint8)
        img[:, :, 0] = (255 * ramp).astype(np.uint8)        # Red gradient
        img[:, :, 2] = (255 * (1 - ramp)).astype(np.uint8)  # Blue gradient
        self._gradient = img

    def read_frame(self) -> bytes:
        if self._gradient is None:
            raise CameraError("Dummy camera is not open")

        # Green channel cycles so consecutive frames differ
        img = self._gradient.copy()
        t = self._frame_count % 100
        img[:, :, 1] = int(128 + 127 * (t / 100))

        buffer = io.BytesIO()
        Image.fromarray(img).save(buffer, format="JPEG", quality=self.quality)
        self._frame_count += 1
        return buffer.getvalue()

    def _close(self):
        self._gradient = None


BACKENDS = {
    OpenCVDevice.name: OpenCVDevice,
    Picamera2Device.name: Picamera2Device,
    DummyDevice.name: DummyDevice,
}


def create_device(cfg: CaptureConfig) -> CaptureDevice:
    """
    Factory function to create the configured capture backend.

    Args:
        cfg: Capture settings; cfg.backend selects the class

    Returns:
        An unopened CaptureDevice

    Raises:
        CameraError: Unknown backend, or backend unavailable on this host
    """
    try:
        device_cls = BACKENDS[cfg.backend]
    except KeyError:
        raise CameraError(
            f"Unknown backend '{cfg.backend}', expected one of: {', '.join(sorted(BACKENDS))}"
        ) from None
    return device_cls(quality=cfg.quality)
