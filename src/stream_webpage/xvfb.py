"""Xvfb 仮想ディスプレイ.

ブラウザとエンコーダが共有する 1 つの仮想ディスプレイを扱う。
通常はコンテナの起動スクリプトが Xvfb を用意し (XVFB_STATIC=1)、
XVFB_STATIC=0 の場合のみ VirtualDisplay が自前で起動する。
ディスプレイはパイプラインの再起動をまたいで再利用される。
"""

import asyncio
import logging
import os
import signal
import subprocess

logger = logging.getLogger(__name__)


def check_display(display: str | None = None) -> bool:
    """X11 ディスプレイが利用可能か確認する."""
    display = display or os.environ.get("DISPLAY", ":99")
    try:
        result = subprocess.run(
            ["xdpyinfo", "-display", display],
            capture_output=True,
            timeout=5,
        )
        return result.returncode == 0
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return False


class VirtualDisplay:
    """単一の Xvfb プロセスを管理する.

    Usage:
        vd = VirtualDisplay(":99", 1280, 720)
        await vd.start()
        ...
        await vd.stop()
    """

    # 起動ポーリング: 0.2s 間隔 × 15 回 = 最大 3s
    _POLL_INTERVAL = 0.2
    _POLL_MAX_ATTEMPTS = 15

    _STOP_TIMEOUT = 3.0

    def __init__(
        self,
        display: str,
        width: int = 1280,
        height: int = 720,
        screen_depth: int = 24,
    ):
        self._display = display
        self._width = width
        self._height = height
        self._depth = screen_depth
        self._proc: asyncio.subprocess.Process | None = None

    @property
    def display(self) -> str:
        return self._display

    @property
    def is_running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def start(self) -> None:
        """Xvfb を起動し、接続可能になるまで待つ.

        Raises:
            RuntimeError: Xvfb が制限時間内に起動しなかった場合
        """
        if self.is_running:
            return

        self._cleanup_stale_lock()

        # プロセスグループリーダーとして起動
        self._proc = await asyncio.create_subprocess_exec(
            "Xvfb",
            self._display,
            "-screen",
            "0",
            f"{self._width}x{self._height}x{self._depth}",
            "-ac",
            "+extension",
            "GLX",
            "+render",
            "-noreset",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            start_new_session=True,
        )

        for _ in range(self._POLL_MAX_ATTEMPTS):
            await asyncio.sleep(self._POLL_INTERVAL)
            if await asyncio.to_thread(check_display, self._display):
                logger.info(
                    "Xvfb started on %s (%dx%d, PID=%d)",
                    self._display,
                    self._width,
                    self._height,
                    self._proc.pid,
                )
                return

        logger.error("Xvfb failed to start on %s", self._display)
        await self._kill()
        self._cleanup_stale_lock()
        raise RuntimeError(f"Xvfb failed to start on {self._display}")

    async def stop(self) -> None:
        """Xvfb を停止する (SIGTERM → タイムアウト → SIGKILL)."""
        proc, self._proc = self._proc, None
        if proc is None or proc.returncode is not None:
            return

        pid = proc.pid
        try:
            os.killpg(pid, signal.SIGTERM)
            try:
                await asyncio.wait_for(proc.wait(), timeout=self._STOP_TIMEOUT)
                logger.info("Xvfb exited gracefully on %s (PID=%d)", self._display, pid)
            except asyncio.TimeoutError:
                logger.warning(
                    "Xvfb did not exit in %.1fs on %s, sending SIGKILL (PID=%d)",
                    self._STOP_TIMEOUT,
                    self._display,
                    pid,
                )
                self._proc = proc
                await self._kill()
        except ProcessLookupError:
            logger.debug("Xvfb already exited on %s (PID=%d)", self._display, pid)
        self._cleanup_stale_lock()

    async def _kill(self) -> None:
        proc, self._proc = self._proc, None
        if proc is None:
            return
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        await proc.wait()

    def _cleanup_stale_lock(self) -> None:
        """stale なロックファイルを削除する.

        SIGKILL で Xvfb が終了するとロックファイルが残り、次回起動に失敗する。
        PID が生きていれば使用中とみなして触らない。
        """
        display_num = self._display.lstrip(":").split(".")[0]
        lock_file = f"/tmp/.X{display_num}-lock"
        socket_file = f"/tmp/.X11-unix/X{display_num}"

        if not os.path.exists(lock_file):
            return

        try:
            with open(lock_file) as f:
                pid = int(f.read().strip())
            os.kill(pid, 0)
            logger.warning(
                "Display %s lock exists and PID %d is alive, skipping cleanup",
                self._display,
                pid,
            )
        except (ProcessLookupError, ValueError, PermissionError):
            logger.warning("Cleaning stale lock for display %s", self._display)
            for path in (lock_file, socket_file):
                try:
                    os.unlink(path)
                except FileNotFoundError:
                    pass
