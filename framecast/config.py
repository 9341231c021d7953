"""
Configuration management for framecast.

Defaults can be overridden via environment variables:
  FRAMECAST_HOST           - Server bind address (default: 0.0.0.0)
  FRAMECAST_PORT           - Server port (default: 8080)
  FRAMECAST_DEVICE         - Capture device index (default: 0)
  FRAMECAST_WIDTH          - Frame width in pixels (default: 640)
  FRAMECAST_HEIGHT         - Frame height in pixels (default: 480)
  FRAMECAST_FPS            - Target frames per second (default: 30)
  FRAMECAST_QUALITY        - JPEG quality 1-100 (default: 80)
  FRAMECAST_BACKEND        - Device backend: opencv, picamera2, dummy (default: opencv)
  FRAMECAST_CHANNEL_DEPTH  - Frames buffered by the fan-out channel (default: 10)
  FRAMECAST_DEDUP_WINDOW   - Recent frames remembered per connection (default: 64)
"""

import os
from dataclasses import dataclass, field
from typing import Tuple


def _env_int(name: str, default: int) -> int:
    """Get an integer from environment variable with fallback."""
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        print(f"[config] Warning: {name}={val} is not a valid integer, using default={default}")
        return default


def _env_str(name: str, default: str) -> str:
    """Get a string from environment variable with fallback."""
    return os.environ.get(name, default)


# Server settings
HOST = _env_str("FRAMECAST_HOST", "0.0.0.0")
PORT = _env_int("FRAMECAST_PORT", 8080)

# Camera settings
DEVICE_INDEX = _env_int("FRAMECAST_DEVICE", 0)
WIDTH = _env_int("FRAMECAST_WIDTH", 640)
HEIGHT = _env_int("FRAMECAST_HEIGHT", 480)
FPS = _env_int("FRAMECAST_FPS", 30)
JPEG_QUALITY = _env_int("FRAMECAST_QUALITY", 80)
BACKEND = _env_str("FRAMECAST_BACKEND", "opencv")

# Pipeline settings
CHANNEL_DEPTH = _env_int("FRAMECAST_CHANNEL_DEPTH", 10)
DEDUP_WINDOW = _env_int("FRAMECAST_DEDUP_WINDOW", 64)

# Seconds to wait after a failed read before reopening the device
RECOVERY_INTERVAL = 1.0

DEFAULT_RESOLUTION = (1280, 720)


def parse_resolution(value: str) -> Tuple[int, int]:
    """
    Parse a WIDTHxHEIGHT string.

    A part that is not a number falls back to the matching half of
    DEFAULT_RESOLUTION.

    Raises:
        ValueError: If the string is not of the form WIDTHxHEIGHT
    """
    parts = value.lower().split("x")
    if len(parts) != 2:
        raise ValueError(
            "Invalid resolution format. Use format WIDTHxHEIGHT (e.g., 1280x720)"
        )

    try:
        width = int(parts[0])
    except ValueError:
        width = DEFAULT_RESOLUTION[0]
    try:
        height = int(parts[1])
    except ValueError:
        height = DEFAULT_RESOLUTION[1]

    return width, height


@dataclass
class CaptureConfig:
    """What to capture and how fast."""

    device_index: int = DEVICE_INDEX
    width: int = WIDTH
    height: int = HEIGHT
    fps: int = FPS
    backend: str = BACKEND
    quality: int = JPEG_QUALITY

    def __post_init__(self):
        self.fps = max(1, int(self.fps))

    @property
    def frame_interval(self) -> float:
        """Seconds between capture attempts."""
        return 1.0 / self.fps

    @property
    def placeholder_size(self) -> int:
        """Byte size of the black frame sent while the device is faulted."""
        return self.width * self.height * 3


@dataclass
class StreamerConfig:
    """Everything the lifecycle controller needs to wire the pipeline."""

    capture: CaptureConfig = field(default_factory=CaptureConfig)
    host: str = HOST
    port: int = PORT
    channel_depth: int = CHANNEL_DEPTH
    dedup_window: int = DEDUP_WINDOW
    recovery_interval: float = RECOVERY_INTERVAL

    def __post_init__(self):
        if self.channel_depth < 1:
            raise ValueError(f"Channel depth must be >= 1, got {self.channel_depth}")
        if self.dedup_window < 1:
            raise ValueError(f"Dedup window must be >= 1, got {self.dedup_window}")


def print_config(cfg: StreamerConfig = None):
    """Print current configuration to stdout."""
    cfg = cfg or StreamerConfig()
    cap = cfg.capture
    print("[config] Current settings:")
    print(f"  HOST       = {cfg.host}")
    print(f"  PORT       = {cfg.port}")
    print(f"  BACKEND    = {cap.backend}")
    print(f"  DEVICE     = {cap.device_index}")
    print(f"  RESOLUTION = {cap.width}x{cap.height}")
    print(f"  FPS        = {cap.fps}")
    print(f"  QUALITY    = {cap.quality}")
    print(f"  DEPTH      = {cfg.channel_depth}")
    print(f"  DEDUP      = {cfg.dedup_window}")
