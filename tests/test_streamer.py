"""End-to-end tests for the lifecycle controller over a real socket."""

import http.client
import json
import socket

import pytest

from conftest import FakeDevice, wait_until
from framecast.capture import CaptureError
from framecast.config import StreamerConfig
from framecast.server import ServerError
from framecast.streamer import Streamer

BOUNDARY_LINE = b"--framecast_boundary\r\n"


def build(device=None, port=0):
    device = device or FakeDevice()
    streamer = (
        Streamer.builder()
        .host("127.0.0.1")
        .port(port)
        .resolution(4, 2)
        .fps(50)
        .backend("fake")
        .channel_depth(10)
        .device_factory(lambda cfg: device)
        .build()
    )
    return streamer, device


@pytest.fixture
def streamer():
    s, device = build()
    s.start()
    yield s
    s.stop()


def get(port, path, timeout=5.0):
    conn = http.client.HTTPConnection("127.0.0.1", port, timeout=timeout)
    conn.request("GET", path)
    return conn, conn.getresponse()


def test_stream_serves_parts(streamer):
    conn, resp = get(streamer.port, "/")
    try:
        assert resp.status == 200
        assert resp.getheader("Content-Type") == (
            "multipart/x-mixed-replace; boundary=framecast_boundary"
        )
        assert resp.read(len(BOUNDARY_LINE)) == BOUNDARY_LINE
        assert resp.read(len(b"Content-Type: image/jpeg\r\n")) == b"Content-Type: image/jpeg\r\n"
    finally:
        conn.close()


def test_stop_ends_open_streams_with_closing_boundary():
    s, device = build()
    s.start()
    conn, resp = get(s.port, "/")
    try:
        assert resp.read(len(BOUNDARY_LINE)) == BOUNDARY_LINE
        s.stop()
        rest = resp.read()
    finally:
        conn.close()

    assert rest.endswith(b"--framecast_boundary--\r\n")
    assert device.close_count == 1


def test_viewers_are_independent(streamer):
    first_conn, first = get(streamer.port, "/")
    second_conn, second = get(streamer.port, "/stream.mjpg")
    try:
        assert first.read(len(BOUNDARY_LINE)) == BOUNDARY_LINE
        assert second.read(len(BOUNDARY_LINE)) == BOUNDARY_LINE
        assert wait_until(lambda: streamer.get_stats()["channel"]["subscribers"] == 2)

        first_conn.close()
        # The remaining viewer keeps receiving parts
        assert BOUNDARY_LINE in second.read(512)
        assert streamer.get_stats()["capture"]["running"]
    finally:
        second_conn.close()


def test_health_endpoint(streamer):
    conn, resp = get(streamer.port, "/health")
    try:
        body = json.loads(resp.read())
    finally:
        conn.close()

    assert body["status"] == "ok"
    assert body["config"]["width"] == 4
    assert body["stats"]["capture"]["running"] is True
    assert body["stats"]["channel"]["capacity"] == 10


def test_bind_failure_stops_capture():
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("127.0.0.1", 0))
    blocker.listen(1)
    try:
        s, device = build(port=blocker.getsockname()[1])
        with pytest.raises(ServerError):
            s.start()
    finally:
        blocker.close()

    assert not s.is_running()
    assert device.close_count == 1


def test_device_open_failure_prevents_start():
    s, device = build(FakeDevice(fail_open=True))
    with pytest.raises(CaptureError):
        s.start()
    assert not s.is_running()
    assert s.port is None


def test_unknown_backend_prevents_start():
    s = Streamer.builder().host("127.0.0.1").port(0).backend("nope").build()
    with pytest.raises(CaptureError):
        s.start()


def test_stop_is_idempotent():
    s, _ = build()
    s.stop()

    s.start()
    s.stop()
    s.stop()
    assert not s.is_running()


def test_context_manager():
    s, device = build()
    with s:
        assert s.is_running()
        assert s.port > 0
    assert not s.is_running()
    assert device.close_count == 1


class TestBuilder:

    def test_values(self):
        cfg = (
            Streamer.builder()
            .port(9000)
            .resolution(1280, 720)
            .fps(15)
            .device_index(2)
            .quality(150)
            .channel_depth(5)
            .dedup_window(8)
            .build_config()
        )
        assert cfg.port == 9000
        assert (cfg.capture.width, cfg.capture.height) == (1280, 720)
        assert cfg.capture.fps == 15
        assert cfg.capture.device_index == 2
        assert cfg.capture.quality == 100
        assert cfg.channel_depth == 5
        assert cfg.dedup_window == 8

    def test_rejects_bad_values(self):
        with pytest.raises(ValueError):
            Streamer.builder().port(70000)
        with pytest.raises(ValueError):
            Streamer.builder().resolution(0, 480)

    def test_rejects_empty_channel_and_dedup_window(self):
        with pytest.raises(ValueError):
            Streamer.builder().channel_depth(0)
        with pytest.raises(ValueError):
            Streamer.builder().dedup_window(0)

    def test_bad_pipeline_config_fails_before_device_is_created(self):
        created = []
        with pytest.raises(ValueError):
            Streamer(
                StreamerConfig(dedup_window=0),
                device_factory=lambda cfg: created.append(cfg) or FakeDevice(),
            )
        assert created == []
