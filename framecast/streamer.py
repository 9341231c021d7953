"""
Lifecycle controller.

Wires the pipeline together in order:
  1. FrameChannel
  2. Capturer (opens the device, starts the capture thread)
  3. StreamingServer (subscribes viewers to the channel)

and tears it down in the same order on stop().
"""

import logging
from typing import Callable, Optional

from . import config
from .camera import CameraError, CaptureDevice, create_device
from .capture import CaptureError, Capturer
from .channel import FrameChannel
from .config import CaptureConfig, StreamerConfig
from .server import ServerError, StreamingServer

logger = logging.getLogger(__name__)


class Streamer:
    """
    Capture-and-serve pipeline.

    Usage:
        streamer = Streamer.builder().port(8080).resolution(1280, 720).fps(30).build()
        streamer.start()
        ...
        streamer.stop()
    """

    def __init__(
        self,
        cfg: Optional[StreamerConfig] = None,
        device_factory: Callable[[CaptureConfig], CaptureDevice] = create_device,
    ):
        self.config = cfg or StreamerConfig()
        self._device_factory = device_factory
        self._channel: Optional[FrameChannel] = None
        self._capturer: Optional[Capturer] = None
        self._server: Optional[StreamingServer] = None

    @staticmethod
    def builder() -> "StreamerBuilder":
        return StreamerBuilder()

    def start(self):
        """
        Start capturing and serving.

        Raises:
            CaptureError: Invalid device, unknown backend or device open failure
            ServerError: The listen address could not be bound
        """
        if self.is_running():
            logger.warning("Streamer already running")
            return

        cfg = self.config
        channel = FrameChannel(cfg.channel_depth)

        try:
            device = self._device_factory(cfg.capture)
        except CameraError as e:
            raise CaptureError(str(e)) from e

        capturer = Capturer(
            cfg.capture, channel, device, recovery_interval=cfg.recovery_interval
        )
        capturer.start()

        # The channel exists before the first viewer can connect
        server = StreamingServer(
            cfg.port,
            channel.subscribe,
            host=cfg.host,
            dedup_window=cfg.dedup_window,
            stats=self.get_stats,
            settings={
                "width": cfg.capture.width,
                "height": cfg.capture.height,
                "fps": cfg.capture.fps,
                "backend": cfg.capture.backend,
                "device": cfg.capture.device_index,
            },
        )
        try:
            server.start()
        except ServerError:
            capturer.stop()
            channel.close()
            capturer.join(self._stop_timeout())
            raise

        self._channel = channel
        self._capturer = capturer
        self._server = server

    def stop(self):
        """Stop capture, then the server. Safe to call at any time, any number of times."""
        capturer, channel, server = self._capturer, self._channel, self._server
        self._capturer = self._channel = self._server = None
        if capturer is None and server is None:
            return

        logger.info("Shutting down...")
        if capturer is not None:
            capturer.stop()
        if channel is not None:
            channel.close()
        if server is not None:
            try:
                server.stop()
            except Exception as e:
                logger.error("Error stopping server: %s", e)
        if capturer is not None and not capturer.join(self._stop_timeout()):
            logger.warning("Capture thread did not exit in time")
        logger.info("Stopped")

    def _stop_timeout(self) -> float:
        return self.config.capture.frame_interval + self.config.recovery_interval + 1.0

    def is_running(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> Optional[int]:
        """Port the server is bound to, None when stopped."""
        return self._server.port if self._server is not None else None

    def get_stats(self) -> dict:
        capturer, channel = self._capturer, self._channel
        return {
            "capture": capturer.get_stats() if capturer else {"running": False},
            "channel": channel.get_stats() if channel else {},
        }

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False


class StreamerBuilder:
    """Collects settings for a Streamer; unset values use the config module defaults."""

    def __init__(self):
        self._port = config.PORT
        self._host = config.HOST
        self._width = config.WIDTH
        self._height = config.HEIGHT
        self._fps = config.FPS
        self._device_index = config.DEVICE_INDEX
        self._backend = config.BACKEND
        self._quality = config.JPEG_QUALITY
        self._channel_depth = config.CHANNEL_DEPTH
        self._dedup_window = config.DEDUP_WINDOW
        self._device_factory = create_device

    def port(self, port: int) -> "StreamerBuilder":
        if not 0 <= port <= 65535:
            raise ValueError(f"Port out of range: {port}")
        self._port = port
        return self

    def host(self, host: str) -> "StreamerBuilder":
        self._host = host
        return self

    def resolution(self, width: int, height: int) -> "StreamerBuilder":
        if width <= 0 or height <= 0:
            raise ValueError(f"Resolution must be positive, got {width}x{height}")
        self._width = width
        self._height = height
        return self

    def fps(self, fps: int) -> "StreamerBuilder":
        self._fps = fps
        return self

    def device_index(self, index: int) -> "StreamerBuilder":
        self._device_index = index
        return self

    def backend(self, name: str) -> "StreamerBuilder":
        self._backend = name
        return self

    def quality(self, quality: int) -> "StreamerBuilder":
        self._quality = min(100, max(1, quality))
        return self

    def channel_depth(self, depth: int) -> "StreamerBuilder":
        if depth < 1:
            raise ValueError(f"Channel depth must be >= 1, got {depth}")
        self._channel_depth = depth
        return self

    def dedup_window(self, size: int) -> "StreamerBuilder":
        if size < 1:
            raise ValueError(f"Dedup window must be >= 1, got {size}")
        self._dedup_window = size
        return self

    def device_factory(self, factory: Callable[[CaptureConfig], CaptureDevice]) -> "StreamerBuilder":
        self._device_factory = factory
        return self

    def build_config(self) -> StreamerConfig:
        return StreamerConfig(
            capture=CaptureConfig(
                device_index=self._device_index,
                width=self._width,
                height=self._height,
                fps=self._fps,
                backend=self._backend,
                quality=self._quality,
            ),
            host=self._host,
            port=self._port,
            channel_depth=self._channel_depth,
            dedup_window=self._dedup_window,
        )

    def build(self) -> Streamer:
        return Streamer(self.build_config(), device_factory=self._device_factory)
