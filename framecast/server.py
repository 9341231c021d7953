"""
Flask-based MJPEG streaming server.

Provides:
  GET /            - Multipart MJPEG stream
  GET /stream.mjpg - Same stream, under the usual MJPEG file name
  GET /view        - HTML page showing the video stream
  GET /health      - JSON health check endpoint

Every connection gets its own channel subscription and its own record of
recently sent frames, so a repeated frame is never sent twice in a row to
the same viewer. Nothing else is shared between connections.
"""

import hashlib
import logging
import socket
import threading
from collections import deque
from typing import Callable, Iterator, Optional

from flask import Flask, Response, abort, jsonify, render_template_string
from werkzeug.serving import make_server

from . import FramecastError
from .channel import ChannelClosed, Subscription

logger = logging.getLogger(__name__)

BOUNDARY = "framecast_boundary"

# Headers for the stream response
NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


class ServerError(FramecastError):
    """Raised when the HTTP server cannot start."""
    pass


class RecentFrames:
    """
    Fixed-capacity record of recently sent frames.

    Frames are remembered by SHA-1 fingerprint. Once full, the oldest
    fingerprint is forgotten, which caps memory for long-lived viewers.
    """

    def __init__(self, capacity: int = 64):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._order = deque()
        self._seen = set()

    @staticmethod
    def fingerprint(frame: bytes) -> bytes:
        return hashlib.sha1(frame).digest()

    def add(self, frame: bytes) -> bool:
        """
        Record a frame.

        Returns:
            True if the frame is new, False if it was seen recently
        """
        key = self.fingerprint(frame)
        if key in self._seen:
            return False
        if len(self._order) >= self.capacity:
            self._seen.discard(self._order.popleft())
        self._order.append(key)
        self._seen.add(key)
        return True

    def __contains__(self, frame: bytes) -> bool:
        return self.fingerprint(frame) in self._seen

    def __len__(self) -> int:
        return len(self._order)


def encode_part(frame: bytes, boundary: str = BOUNDARY) -> bytes:
    """Wrap one JPEG frame as a multipart part."""
    header = (
        f"--{boundary}\r\n"
        f"Content-Type: image/jpeg\r\n"
        f"Content-Length: {len(frame)}\r\n"
        f"\r\n"
    ).encode("ascii")
    return header + frame + b"\r\n"


def closing_part(boundary: str = BOUNDARY) -> bytes:
    return f"--{boundary}--\r\n".encode("ascii")


def generate_parts(
    subscription: Subscription,
    recent: RecentFrames,
    boundary: str = BOUNDARY,
) -> Iterator[bytes]:
    """
    Generator that yields MJPEG parts for one connection.

    Frames already in `recent` are skipped without output. The closing
    boundary is sent when the channel closes. If the client goes away the
    WSGI server closes this generator and the subscription is released.

    A disconnect is only noticed on the next write, so while the device is
    faulted (repeated placeholders, all skipped) a departed viewer keeps its
    subscription until the next distinct frame or until the channel closes.
    """
    try:
        for frame in subscription:
            if not recent.add(frame):
                continue
            yield encode_part(frame, boundary)
        yield closing_part(boundary)
    finally:
        subscription.close()
        if subscription.lagged:
            logger.debug("Viewer skipped %d frames while lagging", subscription.lagged)


# HTML template for the viewer page
VIEW_HTML = """
<!DOCTYPE html>
<html>
<head>
    <title>framecast</title>
    <style>
        body {
            font-family: monospace;
            background: #000;
            color: #fff;
            display: flex;
            flex-direction: column;
            align-items: center;
            padding: 20px;
        }
        .stream-container {
            border: 1px solid #333;
            background: #111;
            padding: 10px;
        }
        img {
            display: block;
            max-width: 100%;
            height: auto;
        }
        .info {
            margin-top: 20px;
            color: #666;
            font-size: 12px;
        }
        .info a { color: #888; }
    </style>
</head>
<body>
    <h1>FRAMECAST</h1>
    <div class="stream-container">
        <img src="/stream.mjpg" alt="Camera Stream" id="stream">
    </div>
    <div class="info">
        <p>Resolution: {{ width }}x{{ height }} @ {{ fps }}fps</p>
        <p>Stream URL: <a href="/stream.mjpg">/stream.mjpg</a></p>
        <p>Health: <a href="/health">/health</a></p>
    </div>
    <script>
        const img = document.getElementById('stream');
        img.onerror = function() {
            setTimeout(() => { img.src = '/stream.mjpg?' + Date.now(); }, 2000);
        };
    </script>
</body>
</html>
"""


def create_app(
    subscribe: Callable[[], Subscription],
    boundary: str = BOUNDARY,
    dedup_window: int = 64,
    stats: Optional[Callable[[], dict]] = None,
    settings: Optional[dict] = None,
) -> Flask:
    """
    Create the Flask app serving one frame source.

    Args:
        subscribe: Factory returning a fresh Subscription per call
        boundary: Multipart boundary token
        dedup_window: Recent frames remembered per connection
        stats: Optional callable whose dict is reported by /health
        settings: Optional config values reported by /health and /view
    """
    app = Flask(__name__)
    settings = settings or {}

    def stream():
        try:
            subscription = subscribe()
        except ChannelClosed:
            abort(503)

        response = Response(
            generate_parts(subscription, RecentFrames(dedup_window), boundary),
            mimetype=f"multipart/x-mixed-replace; boundary={boundary}",
            headers=NO_CACHE_HEADERS,
        )
        # Covers a response that is closed before its generator ever ran
        response.call_on_close(subscription.close)
        return response

    app.add_url_rule("/", "stream", stream)
    app.add_url_rule("/stream.mjpg", "stream_mjpg", stream)

    @app.route("/view")
    def view():
        """Serve the page with the embedded video stream."""
        return render_template_string(
            VIEW_HTML,
            width=settings.get("width", "?"),
            height=settings.get("height", "?"),
            fps=settings.get("fps", "?"),
        )

    @app.route("/health")
    def health():
        """
        Health check endpoint.

        Returns JSON with server, capture and channel status.
        """
        body = {"status": "ok", "config": settings}
        if stats is not None:
            try:
                body["stats"] = stats()
            except Exception as e:
                logger.warning("Stats collection failed: %s", e)
                body["status"] = f"error: {e}"
        return jsonify(body)

    return app


def _bind_socket(host: str, port: int) -> socket.socket:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(128)
    except OSError:
        sock.close()
        raise
    return sock


class StreamingServer:
    """
    Runs the Flask app on a threaded Werkzeug server in a background thread.

    Usage:
        server = StreamingServer(8080, channel.subscribe)
        server.start()
        ...
        server.stop()
    """

    def __init__(
        self,
        port: int,
        subscribe: Callable[[], Subscription],
        host: str = "0.0.0.0",
        boundary: str = BOUNDARY,
        dedup_window: int = 64,
        stats: Optional[Callable[[], dict]] = None,
        settings: Optional[dict] = None,
    ):
        self.host = host
        self.port = port
        self.app = create_app(subscribe, boundary, dedup_window, stats, settings)
        self._server = None
        self._thread: Optional[threading.Thread] = None

    def start(self):
        """
        Bind the listening socket and start serving.

        Raises:
            ServerError: If the address cannot be bound
        """
        if self._server is not None:
            logger.warning("Streaming server already running")
            return

        # Bind here so a busy port raises instead of exiting inside Werkzeug
        try:
            sock = _bind_socket(self.host, self.port)
        except OSError as e:
            raise ServerError(f"Failed to bind {self.host}:{self.port}: {e}") from e

        try:
            self._server = make_server(
                self.host, self.port, self.app, threaded=True, fd=sock.fileno()
            )
        finally:
            # make_server duplicates the descriptor
            sock.close()

        # Port 0 asks the OS for a free port
        self.port = self._server.socket.getsockname()[1]
        self._thread = threading.Thread(
            target=self._server.serve_forever, name="framecast-http", daemon=True
        )
        self._thread.start()
        logger.info("Streaming server running on http://%s:%d", self.host, self.port)

    def stop(self, timeout: float = 2.0):
        """Stop accepting connections. Open streams are not drained."""
        server, self._server = self._server, None
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Streaming server stopped.")

    def is_running(self) -> bool:
        return self._server is not None
