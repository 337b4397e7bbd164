"""stream-webpage: Web ページを Xvfb + Chromium + FFmpeg で RTMP に配信し続ける."""

from stream_webpage.config import Framerate, Resolution, Settings, StreamConfig, load_settings
from stream_webpage.encoder import EncoderProcess
from stream_webpage.monitor import LivenessMonitor
from stream_webpage.renderer import PlaywrightRenderer, RendererSession
from stream_webpage.supervisor import Supervisor, SupervisorState
from stream_webpage.twitch import TwitchClient
from stream_webpage.xvfb import VirtualDisplay

__all__ = [
    "EncoderProcess",
    "Framerate",
    "LivenessMonitor",
    "PlaywrightRenderer",
    "RendererSession",
    "Resolution",
    "Settings",
    "StreamConfig",
    "Supervisor",
    "SupervisorState",
    "TwitchClient",
    "VirtualDisplay",
    "load_settings",
]
