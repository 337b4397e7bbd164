"""ストリーミング設定.

環境変数から読み込み、解像度・フレームレートを検証してパイプライン設定を組み立てる。
"""

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

from croniter import croniter

from stream_webpage.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_WEBSITE_URL = "https://google.com"
DEFAULT_RTMP_URL = "rtmp://localhost:1935/live/stream"
DEFAULT_DISPLAY = ":99"
DEFAULT_PORT = 8080
DEFAULT_LOG_LEVEL = "info"
DEFAULT_LOG_FORMAT = "json"
DEFAULT_STATUS_CRON_SCHEDULE = "*/10 * * * *"  # 10 分ごと

# 音声ビットレートは解像度に関係なく固定
AUDIO_BITRATE = "160k"


class Resolution(str, Enum):
    """配信解像度."""

    HD = "720p"
    FULL_HD = "1080p"
    QHD = "2k"

    @property
    def dimensions(self) -> tuple[int, int]:
        """(幅, 高さ) px."""
        return _DIMENSIONS[self]


_DIMENSIONS = {
    Resolution.HD: (1280, 720),
    Resolution.FULL_HD: (1920, 1080),
    Resolution.QHD: (2560, 1440),
}


class Framerate(int, Enum):
    """配信フレームレート (fps)."""

    FPS_30 = 30
    FPS_60 = 60


# Twitch 推奨値: (解像度, fps) → 映像ビットレート (kbps)
# https://help.twitch.tv/s/article/broadcasting-guidelines
_VIDEO_KBPS = {
    (Resolution.HD, Framerate.FPS_30): 3000,
    (Resolution.HD, Framerate.FPS_60): 4000,
    (Resolution.FULL_HD, Framerate.FPS_30): 4500,
    (Resolution.FULL_HD, Framerate.FPS_60): 6000,
    (Resolution.QHD, Framerate.FPS_30): 6000,
    (Resolution.QHD, Framerate.FPS_60): 8500,
}


@dataclass(frozen=True)
class EncoderBitrate:
    """エンコーダのレート設定.

    Attributes:
        video: 映像ビットレート (例: "6000k")
        audio: 音声ビットレート (常に "160k")
        bufsize: レート制御バッファ (映像ビットレートの 2 倍)
    """

    video: str
    audio: str
    bufsize: str


def bitrate_for(resolution: Resolution, framerate: Framerate) -> EncoderBitrate:
    """解像度とフレームレートからビットレートを決定する."""
    kbps = _VIDEO_KBPS[(resolution, framerate)]
    return EncoderBitrate(
        video=f"{kbps}k",
        audio=AUDIO_BITRATE,
        bufsize=f"{kbps * 2}k",
    )


def resolve_resolution(value: str | None) -> Resolution:
    """解像度文字列を検証する. 未対応の値は警告して 720p にフォールバック."""
    normalized = (value or "").strip().lower()
    for resolution in Resolution:
        if resolution.value == normalized:
            width, height = resolution.dimensions
            logger.debug(
                "Using resolution %s (%dx%d)", resolution.value, width, height
            )
            return resolution
    logger.warning("Unsupported resolution %r, defaulting to 720p", value)
    return Resolution.HD


def resolve_framerate(value: str | int | None) -> Framerate:
    """フレームレートを検証する. 未対応の値は警告して 30fps にフォールバック."""
    try:
        framerate = Framerate(int(str(value).strip()))
    except (TypeError, ValueError):
        logger.warning("Unsupported framerate %r, defaulting to 30fps", value)
        return Framerate.FPS_30
    logger.debug("Using framerate %d", framerate.value)
    return framerate


@dataclass(frozen=True)
class StreamConfig:
    """1 回のパイプライン実行に使う設定 (不変).

    Attributes:
        website_url: キャプチャするページの URL
        rtmp_url: 配信先 RTMP エンドポイント
        resolution: 配信解像度
        framerate: 配信フレームレート
        display: X11 ディスプレイ (例: ":99")
    """

    website_url: str = DEFAULT_WEBSITE_URL
    rtmp_url: str = DEFAULT_RTMP_URL
    resolution: Resolution = Resolution.HD
    framerate: Framerate = Framerate.FPS_30
    display: str = DEFAULT_DISPLAY

    @property
    def width(self) -> int:
        return self.resolution.dimensions[0]

    @property
    def height(self) -> int:
        return self.resolution.dimensions[1]

    @property
    def keyframe_interval(self) -> int:
        """2 秒 GOP のキーフレーム間隔 (フレーム数)."""
        return self.framerate.value * 2

    @property
    def bitrate(self) -> EncoderBitrate:
        return bitrate_for(self.resolution, self.framerate)


@dataclass(frozen=True)
class Settings:
    """プロセス全体の設定.

    Attributes:
        stream: パイプライン設定
        port: HTTP サーバーのポート
        log_level: ログレベル名
        log_format: "json" または "console"
        twitch_channel: 配信ステータスを監視するチャンネル (空なら監視しない)
        twitch_client_id: Twitch API クライアント ID
        twitch_client_secret: Twitch API クライアントシークレット
        status_cron_schedule: ステータス確認の cron 式
        xvfb_static: True なら既存の DISPLAY を使い、False なら Xvfb を自前で起動
    """

    stream: StreamConfig
    port: int = DEFAULT_PORT
    log_level: str = DEFAULT_LOG_LEVEL
    log_format: str = DEFAULT_LOG_FORMAT
    twitch_channel: str = ""
    twitch_client_id: str = ""
    twitch_client_secret: str = ""
    status_cron_schedule: str = DEFAULT_STATUS_CRON_SCHEDULE
    xvfb_static: bool = True

    @property
    def monitor_enabled(self) -> bool:
        return bool(self.twitch_channel)


def _env(environ: Mapping[str, str], key: str, default: str) -> str:
    """環境変数を取得する. 空文字列は未設定として扱う."""
    value = environ.get(key, "")
    return value if value else default


def resolve_cron_schedule(value: str) -> str:
    """cron 式を検証する. 不正な式はエラーログを出してデフォルトに戻す."""
    if croniter.is_valid(value):
        return value
    logger.error(
        "Invalid status cron schedule %r, using default %r",
        value,
        DEFAULT_STATUS_CRON_SCHEDULE,
    )
    return DEFAULT_STATUS_CRON_SCHEDULE


def _parse_port(value: str) -> int:
    try:
        port = int(value)
    except ValueError as e:
        raise ConfigurationError(f"PORT must be an integer, got {value!r}") from e
    if not 0 < port < 65536:
        raise ConfigurationError(f"PORT out of range: {port}")
    return port


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """環境変数から Settings を読み込む.

    Args:
        environ: 環境変数 (省略時は os.environ)

    Raises:
        ConfigurationError: 回復できない設定値 (不正な PORT など)
    """
    if environ is None:
        environ = os.environ

    stream = StreamConfig(
        website_url=_env(environ, "WEBSITE_URL", DEFAULT_WEBSITE_URL),
        rtmp_url=_env(environ, "RTMP_URL", DEFAULT_RTMP_URL),
        resolution=resolve_resolution(_env(environ, "RESOLUTION", "720p")),
        framerate=resolve_framerate(_env(environ, "FRAMERATE", "30")),
        display=_env(environ, "DISPLAY", DEFAULT_DISPLAY),
    )

    return Settings(
        stream=stream,
        port=_parse_port(_env(environ, "PORT", str(DEFAULT_PORT))),
        log_level=_env(environ, "LOG_LEVEL", DEFAULT_LOG_LEVEL),
        log_format=_env(environ, "LOG_FORMAT", DEFAULT_LOG_FORMAT),
        twitch_channel=_env(environ, "TWITCH_CHANNEL", ""),
        twitch_client_id=_env(environ, "TWITCH_CLIENT_ID", ""),
        twitch_client_secret=_env(environ, "TWITCH_CLIENT_SECRET", ""),
        status_cron_schedule=resolve_cron_schedule(
            _env(environ, "STATUS_CRON_SCHEDULE", DEFAULT_STATUS_CRON_SCHEDULE)
        ),
        xvfb_static=_env(environ, "XVFB_STATIC", "1") == "1",
    )
