"""Tests for configuration helpers."""

import pytest

from framecast import config
from framecast.config import CaptureConfig, StreamerConfig, parse_resolution


@pytest.mark.parametrize("value,expected", [
    ("1280x720", (1280, 720)),
    ("640X480", (640, 480)),
    ("abcx480", (1280, 480)),
    ("640xabc", (640, 720)),
])
def test_parse_resolution(value, expected):
    assert parse_resolution(value) == expected


@pytest.mark.parametrize("value", ["1280", "1280x720x3", ""])
def test_parse_resolution_rejects_bad_format(value):
    with pytest.raises(ValueError):
        parse_resolution(value)


def test_env_int(monkeypatch):
    monkeypatch.setenv("FRAMECAST_TEST_INT", "42")
    assert config._env_int("FRAMECAST_TEST_INT", 1) == 42

    monkeypatch.setenv("FRAMECAST_TEST_INT", "many")
    assert config._env_int("FRAMECAST_TEST_INT", 1) == 1

    monkeypatch.delenv("FRAMECAST_TEST_INT")
    assert config._env_int("FRAMECAST_TEST_INT", 7) == 7


def test_capture_config_derived_values():
    cfg = CaptureConfig(width=640, height=480, fps=25)
    assert cfg.placeholder_size == 640 * 480 * 3
    assert cfg.frame_interval == pytest.approx(0.04)


def test_capture_config_clamps_fps():
    assert CaptureConfig(fps=-5).fps == 1


def test_streamer_config_defaults():
    cfg = StreamerConfig()
    assert cfg.recovery_interval == 1.0
    assert isinstance(cfg.capture, CaptureConfig)


def test_print_config(capsys):
    config.print_config(StreamerConfig(port=9000))
    out = capsys.readouterr().out
    assert "PORT       = 9000" in out


@pytest.mark.parametrize("kwargs", [{"channel_depth": 0}, {"dedup_window": 0}, {"dedup_window": -3}])
def test_streamer_config_rejects_empty_buffers(kwargs):
    with pytest.raises(ValueError):
        StreamerConfig(**kwargs)
