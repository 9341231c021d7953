"""
Entry point for running framecast as a module.

Usage:
    python3 -m framecast [--port 8080] [--device 0] [--resolution 1280x720] [--fps 30]

Options:
    --dummy    Use dummy camera for testing without hardware
"""

import argparse
import logging
import signal
import sys
import threading

from . import FramecastError, __version__, config
from .streamer import Streamer


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the streaming service."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )

    # One line per stream request is noise
    logging.getLogger("werkzeug").setLevel(logging.WARNING)


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="framecast",
        description="A simple video streamer that captures video from a device.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python -m framecast --port 8080 --device 0 --resolution 1280x720 --fps 30
    python -m framecast --dummy
    python -m framecast --backend picamera2 --resolution 640x480

Environment variables FRAMECAST_HOST, FRAMECAST_PORT, FRAMECAST_DEVICE,
FRAMECAST_WIDTH, FRAMECAST_HEIGHT, FRAMECAST_FPS, FRAMECAST_QUALITY,
FRAMECAST_BACKEND, FRAMECAST_CHANNEL_DEPTH and FRAMECAST_DEDUP_WINDOW set
the defaults.
        """
    )

    parser.add_argument(
        "--port", "-p",
        type=int,
        default=config.PORT,
        help=f"Port to bind the server to (default: {config.PORT})"
    )

    parser.add_argument(
        "--host",
        default=config.HOST,
        help=f"Address to bind the server to (default: {config.HOST})"
    )

    parser.add_argument(
        "--device", "-d",
        type=int,
        default=config.DEVICE_INDEX,
        help=f"Device index to capture video from (default: {config.DEVICE_INDEX})"
    )

    parser.add_argument(
        "--resolution", "-r",
        default=f"{config.WIDTH}x{config.HEIGHT}",
        help="Resolution of the captured video, e.g. 1280x720 "
             f"(default: {config.WIDTH}x{config.HEIGHT})"
    )

    parser.add_argument(
        "--fps", "-f",
        type=int,
        default=config.FPS,
        help=f"Frames per second to capture (default: {config.FPS})"
    )

    parser.add_argument(
        "--backend",
        choices=["opencv", "picamera2", "dummy"],
        default=config.BACKEND,
        help=f"Capture backend (default: {config.BACKEND})"
    )

    parser.add_argument(
        "--quality",
        type=int,
        default=config.JPEG_QUALITY,
        help=f"JPEG quality 1-100 (default: {config.JPEG_QUALITY})"
    )

    parser.add_argument(
        "--dummy",
        action="store_true",
        help="Use dummy camera for testing without hardware"
    )

    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    return parser.parse_args(argv)


def build_streamer(args) -> Streamer:
    """Turn parsed arguments into a Streamer."""
    width, height = config.parse_resolution(args.resolution)
    return (
        Streamer.builder()
        .host(args.host)
        .port(args.port)
        .device_index(args.device)
        .resolution(width, height)
        .fps(args.fps)
        .backend("dummy" if args.dummy else args.backend)
        .quality(args.quality)
        .build()
    )


def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)
    setup_logging(args.log_level)
    logger = logging.getLogger("framecast")

    try:
        streamer = build_streamer(args)
    except ValueError as e:
        logger.error("%s", e)
        return 1

    print("=" * 50)
    print("  FRAMECAST - Live MJPEG Stream")
    print("=" * 50)
    config.print_config(streamer.config)
    print()

    try:
        streamer.start()
    except FramecastError as e:
        logger.error("Startup failed: %s", e)
        return 1

    logger.info("Stream URL: http://<HOST>:%d/", streamer.port)
    logger.info("Viewer URL: http://<HOST>:%d/view", streamer.port)
    logger.info("Press Ctrl+C to stop")

    stop_requested = threading.Event()

    def request_stop(signum, frame):
        logger.info("Received %s", signal.Signals(signum).name)
        stop_requested.set()

    previous = {
        sig: signal.signal(sig, request_stop)
        for sig in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        # wait() in a loop so signals are handled promptly on every platform
        while not stop_requested.wait(0.5):
            pass
    finally:
        streamer.stop()
        for sig, handler in previous.items():
            signal.signal(sig, handler)
    return 0


if __name__ == "__main__":
    sys.exit(main())
