"""StreamConfig / Settings のテスト."""

import logging

import pytest

from stream_webpage.config import (
    DEFAULT_RTMP_URL,
    DEFAULT_STATUS_CRON_SCHEDULE,
    DEFAULT_WEBSITE_URL,
    Framerate,
    Resolution,
    StreamConfig,
    bitrate_for,
    load_settings,
    resolve_framerate,
    resolve_resolution,
)
from stream_webpage.errors import ConfigurationError


@pytest.mark.parametrize(
    "value, expected, size",
    [
        ("720p", Resolution.HD, (1280, 720)),
        ("1080p", Resolution.FULL_HD, (1920, 1080)),
        ("2k", Resolution.QHD, (2560, 1440)),
        ("2K", Resolution.QHD, (2560, 1440)),
        ("4k", Resolution.HD, (1280, 720)),
        ("", Resolution.HD, (1280, 720)),
        (None, Resolution.HD, (1280, 720)),
    ],
)
def test_resolve_resolution(value, expected, size):
    resolution = resolve_resolution(value)
    assert resolution is expected
    assert resolution.dimensions == size


@pytest.mark.parametrize(
    "value, expected",
    [("30", Framerate.FPS_30), ("60", Framerate.FPS_60), (60, Framerate.FPS_60),
     ("24", Framerate.FPS_30), ("abc", Framerate.FPS_30), (None, Framerate.FPS_30)],
)
def test_resolve_framerate(value, expected):
    assert resolve_framerate(value) is expected


def test_unsupported_values_warn(caplog):
    """未対応値はエラーにせず警告を出す."""
    with caplog.at_level(logging.WARNING, logger="stream_webpage.config"):
        resolve_resolution("8k")
        resolve_framerate("120")
    messages = [r.getMessage() for r in caplog.records]
    assert any("defaulting to 720p" in m for m in messages)
    assert any("defaulting to 30fps" in m for m in messages)


class TestBitrate:
    def test_1080p60(self):
        rate = bitrate_for(Resolution.FULL_HD, Framerate.FPS_60)
        assert rate.video == "6000k"
        assert rate.bufsize == "12000k"
        assert rate.audio == "160k"

    @pytest.mark.parametrize(
        "resolution, framerate, video",
        [
            (Resolution.HD, Framerate.FPS_30, "3000k"),
            (Resolution.HD, Framerate.FPS_60, "4000k"),
            (Resolution.FULL_HD, Framerate.FPS_30, "4500k"),
            (Resolution.QHD, Framerate.FPS_30, "6000k"),
            (Resolution.QHD, Framerate.FPS_60, "8500k"),
        ],
    )
    def test_table(self, resolution, framerate, video):
        assert bitrate_for(resolution, framerate).video == video

    def test_bufsize_is_double(self):
        rate = bitrate_for(Resolution.QHD, Framerate.FPS_60)
        assert rate.bufsize == "17000k"


def test_keyframe_interval():
    assert StreamConfig(framerate=Framerate.FPS_30).keyframe_interval == 60
    assert StreamConfig(framerate=Framerate.FPS_60).keyframe_interval == 120


def test_stream_config_defaults():
    config = StreamConfig()
    assert config.website_url == DEFAULT_WEBSITE_URL
    assert config.rtmp_url == DEFAULT_RTMP_URL
    assert (config.width, config.height) == (1280, 720)
    assert config.display == ":99"
    assert config.bitrate.video == "3000k"


class TestLoadSettings:
    def test_defaults(self):
        settings = load_settings({})
        assert settings.stream == StreamConfig()
        assert settings.port == 8080
        assert settings.log_level == "info"
        assert settings.log_format == "json"
        assert settings.status_cron_schedule == DEFAULT_STATUS_CRON_SCHEDULE
        assert settings.xvfb_static
        assert not settings.monitor_enabled

    def test_custom(self):
        settings = load_settings(
            {
                "WEBSITE_URL": "https://custom.example.com",
                "RTMP_URL": "rtmp://custom.example.com/live/test",
                "RESOLUTION": "1080p",
                "FRAMERATE": "60",
                "DISPLAY": ":100",
                "PORT": "9000",
                "TWITCH_CHANNEL": "somechannel",
                "TWITCH_CLIENT_ID": "id",
                "TWITCH_CLIENT_SECRET": "secret",
                "STATUS_CRON_SCHEDULE": "*/5 * * * *",
                "XVFB_STATIC": "0",
            }
        )
        stream = settings.stream
        assert stream.website_url == "https://custom.example.com"
        assert stream.rtmp_url == "rtmp://custom.example.com/live/test"
        assert stream.resolution is Resolution.FULL_HD
        assert stream.framerate is Framerate.FPS_60
        assert stream.display == ":100"
        assert settings.port == 9000
        assert settings.monitor_enabled
        assert settings.twitch_channel == "somechannel"
        assert settings.status_cron_schedule == "*/5 * * * *"
        assert not settings.xvfb_static

    def test_empty_values_use_defaults(self):
        settings = load_settings({"WEBSITE_URL": "", "RESOLUTION": "", "PORT": ""})
        assert settings.stream.website_url == DEFAULT_WEBSITE_URL
        assert settings.stream.resolution is Resolution.HD
        assert settings.port == 8080

    def test_invalid_enums_are_normalized(self):
        settings = load_settings({"RESOLUTION": "8k", "FRAMERATE": "25"})
        assert settings.stream.resolution is Resolution.HD
        assert settings.stream.framerate is Framerate.FPS_30

    def test_invalid_cron_falls_back(self):
        settings = load_settings({"STATUS_CRON_SCHEDULE": "not a cron"})
        assert settings.status_cron_schedule == DEFAULT_STATUS_CRON_SCHEDULE

    @pytest.mark.parametrize("port", ["abc", "0", "70000"])
    def test_invalid_port_is_fatal(self, port):
        with pytest.raises(ConfigurationError):
            load_settings({"PORT": port})
