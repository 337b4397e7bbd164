"""FFmpeg x11grab + 音声 → RTMP エンコーダプロセス.

仮想ディスプレイの映像と PulseAudio (ALSA 経由) の音声をキャプチャし、
H.264 + AAC を FLV で RTMP エンドポイントに送出する。
"""

import asyncio
import logging
import os
import re
import signal
from dataclasses import dataclass

from stream_webpage.config import StreamConfig
from stream_webpage.errors import SpawnError, UnexpectedExit

logger = logging.getLogger(__name__)

FFMPEG_BINARY = "ffmpeg"
AUDIO_SAMPLE_RATE = 44100
STDERR_CHUNK_SIZE = 4096
STDERR_MAX_LINE = 64 * 1024

_LINE_BREAK = re.compile(rb"[\r\n]")


@dataclass(frozen=True)
class AudioSource:
    """FFmpeg の音声入力.

    デフォルトは ALSA の default デバイス (PulseAudio にルーティング済み)。
    """

    fmt: str = "alsa"
    device: str = "default"


def build_ffmpeg_command(
    config: StreamConfig,
    audio: AudioSource | None = None,
    binary: str = FFMPEG_BINARY,
) -> list[str]:
    """FFmpeg コマンドを構築する.

    映像 (入力 0) と音声 (入力 1) を -map で明示的に結び付ける。
    どちらかのストリームが無ければ FFmpeg は即座にエラー終了する。
    """
    audio = audio or AudioSource()
    rate = config.bitrate
    return [
        binary,
        "-nostdin",
        "-nostats",
        "-loglevel", "warning",
        "-f", "x11grab",
        "-video_size", f"{config.width}x{config.height}",
        "-framerate", str(config.framerate.value),
        "-draw_mouse", "0",
        "-i", f"{config.display}+0,0",
        "-f", audio.fmt,
        "-i", audio.device,
        "-map", "0:v:0",
        "-map", "1:a:0",
        "-vf", "crop=in_w:in_h:0:0",
        "-c:v", "libx264",
        "-preset", "veryfast",
        "-tune", "zerolatency",
        "-crf", "23",
        "-maxrate", rate.video,
        "-bufsize", rate.bufsize,
        "-pix_fmt", "yuv420p",
        "-g", str(config.keyframe_interval),
        "-c:a", "aac",
        "-b:a", rate.audio,
        "-ar", str(AUDIO_SAMPLE_RATE),
        "-f", "flv",
        config.rtmp_url,
    ]


class EncoderProcess:
    """FFmpeg 子プロセスを管理する.

    Usage:
        encoder = EncoderProcess(config)
        await encoder.start()
        await encoder.wait()   # 終了まで待つ
        encoder.kill()         # 別タスクから強制停止
    """

    def __init__(
        self,
        config: StreamConfig,
        audio: AudioSource | None = None,
        binary: str = FFMPEG_BINARY,
    ):
        self._config = config
        self._audio = audio
        self._binary = binary
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task | None = None
        self._killed = False

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    @property
    def killed(self) -> bool:
        """kill() による停止が要求されたか."""
        return self._killed

    async def start(self) -> None:
        """FFmpeg を起動する.

        Raises:
            RuntimeError: 既に起動済みの場合
            SpawnError: 実行ファイルが見つからない等で起動できない場合
        """
        if self._process is not None:
            raise RuntimeError("EncoderProcess is already started")

        cmd = build_ffmpeg_command(self._config, self._audio, self._binary)
        rate = self._config.bitrate
        logger.debug(
            "Encoder settings: resolution=%s framerate=%d video=%s audio=%s bufsize=%s gop=%d",
            self._config.resolution.value,
            self._config.framerate.value,
            rate.video,
            rate.audio,
            rate.bufsize,
            self._config.keyframe_interval,
        )
        logger.info("Starting FFmpeg: %s", " ".join(cmd))

        try:
            # プロセスグループごと kill できるよう新しいセッションで起動
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnError(f"failed to start ffmpeg: {e}") from e

        logger.info("FFmpeg started (PID=%d), streaming...", self._process.pid)
        self._stderr_task = asyncio.create_task(
            self._log_stderr(), name=f"ffmpeg-stderr-{self._process.pid}"
        )

    async def _log_stderr(self) -> None:
        """FFmpeg stderr を DEBUG ログに出力する.

        進捗行は CR で終わるため readline ではなくチャンク単位で読み、
        CR / LF で分割する。パイプが詰まると FFmpeg が書き込みで止まるので、
        EOF まで読み続ける。
        """
        if not self._process or not self._process.stderr:
            return
        buf = b""
        while True:
            chunk = await self._process.stderr.read(STDERR_CHUNK_SIZE)
            if not chunk:
                break
            *lines, buf = _LINE_BREAK.split(buf + chunk)
            for line in lines:
                _log_ffmpeg_line(line)
            if len(buf) > STDERR_MAX_LINE:
                _log_ffmpeg_line(buf[:STDERR_MAX_LINE])
                buf = b""
        _log_ffmpeg_line(buf)

    async def wait(self) -> None:
        """プロセス終了まで待つ.

        kill() による終了、または正常終了 (0) なら None を返す。

        Raises:
            RuntimeError: 未起動の場合
            UnexpectedExit: それ以外の理由で終了した場合
        """
        if self._process is None:
            raise RuntimeError("EncoderProcess is not started")

        returncode = await self._process.wait()
        if self._stderr_task is not None:
            try:
                await asyncio.wait_for(self._stderr_task, timeout=1.0)
            except asyncio.TimeoutError:
                self._stderr_task.cancel()

        if self._killed:
            logger.info("FFmpeg stopped (PID=%d)", self._process.pid)
            return
        if returncode == 0:
            logger.info("FFmpeg exited normally (PID=%d)", self._process.pid)
            return
        raise UnexpectedExit(returncode)

    def kill(self) -> None:
        """FFmpeg を SIGKILL で強制終了する (冪等, 終了は待たない).

        RTMP には graceful shutdown がないため SIGTERM は送らない。
        """
        self._killed = True
        if self._process is None or self._process.returncode is not None:
            return

        pid = self._process.pid
        logger.debug("Killing FFmpeg (PID=%d)", pid)
        try:
            os.killpg(pid, signal.SIGKILL)
        except ProcessLookupError:
            logger.debug("FFmpeg already exited (PID=%d)", pid)
        except PermissionError:
            logger.warning("Failed to kill FFmpeg process group (PID=%d)", pid)
            self._process.kill()


def _log_ffmpeg_line(line: bytes) -> None:
    text = line.decode("utf-8", errors="replace").rstrip()
    if text:
        logger.debug("FFmpeg: %s", text)
