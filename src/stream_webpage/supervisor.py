"""ストリームパイプラインのライフサイクル管理.

ブラウザ (RendererSession) と FFmpeg (EncoderProcess) の組を 1 つだけ保持し、
起動・停止・再起動をすべて 1 つのロックで直列化する。

再起動の責務分担:
  - restart() / stop() は現在のパイプラインを破棄するだけ
  - 再生成するのは run() ループだけ

これにより外部トリガ (ステータス確認) とループの二重起動が起きない。
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from stream_webpage import metrics
from stream_webpage.config import StreamConfig
from stream_webpage.encoder import EncoderProcess
from stream_webpage.errors import UnexpectedExit
from stream_webpage.renderer import PlaywrightRenderer

if TYPE_CHECKING:
    from stream_webpage.renderer import RendererSession

logger = logging.getLogger(__name__)

# 予期しない終了・起動失敗後の待ち時間
DEFAULT_BACKOFF = 5.0

# 稼働中に start() された場合、停止後に OS リソース解放を待つ時間
DEFAULT_SETTLE_DELAY = 2.0

# ブラウザ終了の待ち上限
RENDERER_CLOSE_TIMEOUT = 10.0

# kill 後に FFmpeg の終了を回収する待ち上限
ENCODER_REAP_TIMEOUT = 5.0


class SupervisorState(str, enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class PipelineState:
    """稼働中パイプラインのハンドル.

    is_running が True のとき、3 つのハンドルはすべて設定されている。
    設定・クリアは常に同時に行う。
    """

    is_running: bool = False
    cancel: asyncio.Event | None = None
    renderer: RendererSession | None = None
    encoder: EncoderProcess | None = None

    def set(
        self,
        cancel: asyncio.Event,
        renderer: RendererSession,
        encoder: EncoderProcess,
    ) -> None:
        self.cancel = cancel
        self.renderer = renderer
        self.encoder = encoder
        self.is_running = True

    def clear(self) -> None:
        self.is_running = False
        self.cancel = None
        self.renderer = None
        self.encoder = None


class Supervisor:
    """単一パイプラインのスーパーバイザ.

    Usage:
        supervisor = Supervisor(config)
        task = asyncio.create_task(supervisor.run())
        ...
        await supervisor.restart()   # ループが次の周回で再起動する
        ...
        task.cancel()                # 停止して終了
    """

    def __init__(
        self,
        config: StreamConfig,
        renderer: PlaywrightRenderer | None = None,
        encoder_factory: Callable[[StreamConfig], EncoderProcess] = EncoderProcess,
        *,
        backoff: float = DEFAULT_BACKOFF,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
    ):
        self._config = config
        self._renderer = renderer or PlaywrightRenderer()
        self._encoder_factory = encoder_factory
        self._backoff = backoff
        self._settle_delay = settle_delay
        self._pipeline = PipelineState()
        self._state = SupervisorState.IDLE
        self._lock = asyncio.Lock()

    @property
    def config(self) -> StreamConfig:
        return self._config

    @property
    def state(self) -> SupervisorState:
        return self._state

    def is_running(self) -> bool:
        """パイプラインが稼働中か.

        状態はイベントループ内でのみ変更され、await を挟まずに
        まとめてクリアされるため、ロックなしで一貫した値が読める。
        """
        return self._pipeline.is_running

    async def start(self) -> None:
        """新しいパイプラインを起動する.

        稼働中なら先に停止し、settle_delay だけ待ってから起動する。
        ブラウザ → FFmpeg の順に起動し、両方そろってから状態を記録する。

        Raises:
            NavigationError: ページを開けなかった場合
            SpawnError: FFmpeg を起動できなかった場合
        """
        async with self._lock:
            if self._pipeline.is_running:
                logger.info("Stream is already running, stopping existing stream before restart")
                await self._teardown()
                await asyncio.sleep(self._settle_delay)

            self._state = SupervisorState.STARTING
            logger.info("Starting stream: %s -> %s", self._config.website_url, self._config.rtmp_url)

            renderer = None
            try:
                renderer = await self._renderer.start(self._config)
                encoder = self._encoder_factory(self._config)
                await encoder.start()
            except BaseException:
                if renderer is not None:
                    await self._close_renderer(renderer)
                self._state = SupervisorState.IDLE
                raise

            self._pipeline.set(asyncio.Event(), renderer, encoder)
            self._state = SupervisorState.RUNNING
            metrics.PIPELINE_RUNNING.set(1)
            metrics.PIPELINE_STARTS.inc()
            logger.info("Stream started (encoder PID=%s)", encoder.pid)

    async def stop(self) -> None:
        """パイプラインを停止する (冪等).

        FFmpeg を kill し、ブラウザを閉じ、パイプライン全体をキャンセルしてから
        状態をクリアする。戻った時点で is_running() は False。
        """
        async with self._lock:
            await self._teardown()

    async def restart(self) -> None:
        """現在のパイプラインを停止する. 再起動は run() ループが行う."""
        logger.info("Triggering stream restart...")
        async with self._lock:
            if await self._teardown():
                metrics.PIPELINE_RESTARTS.inc()

    async def _teardown(self) -> bool:
        """ロック取得済みの状態で呼ぶこと.

        Returns:
            停止したパイプラインがあれば True
        """
        if not self._pipeline.is_running:
            return False

        self._state = SupervisorState.STOPPING
        logger.info("Stopping existing stream...")
        pipeline = self._pipeline

        # 1. FFmpeg (終了は待たない. 回収は run ループ)
        pipeline.encoder.kill()

        # 2. ブラウザ
        await self._close_renderer(pipeline.renderer)

        # 3. パイプライン全体
        pipeline.cancel.set()

        pipeline.clear()
        self._state = SupervisorState.IDLE
        metrics.PIPELINE_RUNNING.set(0)
        logger.info("Existing stream stopped")
        return True

    async def _close_renderer(self, renderer: RendererSession) -> None:
        try:
            await asyncio.wait_for(renderer.close(), timeout=RENDERER_CLOSE_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Browser did not close in %.1fs", RENDERER_CLOSE_TIMEOUT)

    async def run(self) -> None:
        """タスクがキャンセルされるまでパイプラインを維持する.

        - 停止中なら start() する (失敗したら backoff 秒待って再試行)
        - FFmpeg の終了か stop()/restart() を待つ
        - stop()/restart() 以外の終了なら backoff 秒待って再起動
        - キャンセルされたら stop() を 1 回だけ呼んで CancelledError を送出
        """
        logger.info("Stream supervisor loop started")
        try:
            while True:
                if not self._pipeline.is_running:
                    try:
                        await self.start()
                    except Exception as e:
                        metrics.PIPELINE_FAILURES.labels(reason=type(e).__name__).inc()
                        logger.error(
                            "Failed to start stream, retrying in %.0f seconds: %s",
                            self._backoff,
                            e,
                        )
                        await asyncio.sleep(self._backoff)
                        continue

                encoder = self._pipeline.encoder
                cancel = self._pipeline.cancel
                if encoder is None or cancel is None:
                    # start() 直後に restart() された
                    continue

                expected = await self._wait_pipeline(encoder, cancel)
                if not expected:
                    logger.info("Stream ended, will restart in %.0f seconds", self._backoff)
                    await asyncio.sleep(self._backoff)
        except asyncio.CancelledError:
            logger.info("Stream supervisor cancelled, stopping stream")
            await self.stop()
            raise

    async def _wait_pipeline(
        self, encoder: EncoderProcess, cancel: asyncio.Event
    ) -> bool:
        """FFmpeg 終了または stop() を待つ.

        Returns:
            stop()/restart() による終了なら True
        """
        wait_task = asyncio.create_task(encoder.wait(), name="encoder-wait")
        cancel_task = asyncio.create_task(cancel.wait(), name="pipeline-cancel")
        try:
            await asyncio.wait(
                {wait_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            cancel_task.cancel()
            if not wait_task.done():
                # キャンセル時は FFmpeg の終了を待たない
                if not cancel.is_set():
                    wait_task.cancel()

        if cancel.is_set() or encoder.killed:
            # 同時に 2 つの FFmpeg が動かないよう、終了を回収してから戻る
            try:
                await asyncio.wait_for(wait_task, timeout=ENCODER_REAP_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("Encoder did not exit in %.1fs after kill", ENCODER_REAP_TIMEOUT)
            except UnexpectedExit:
                pass
            # stop() がブラウザを閉じ終えるまで待つ
            async with self._lock:
                pass
            logger.info("Stream stopped by request")
            return True

        try:
            wait_task.result()
            logger.warning("Encoder exited without error")
            metrics.PIPELINE_FAILURES.labels(reason="EncoderExited").inc()
        except UnexpectedExit as e:
            logger.error("%s", e)
            metrics.PIPELINE_FAILURES.labels(reason="UnexpectedExit").inc()
        except Exception:
            logger.exception("Error while waiting for encoder")
            metrics.PIPELINE_FAILURES.labels(reason="WaitError").inc()

        # 自然終了でもブラウザを閉じて状態をクリアする
        async with self._lock:
            if self._pipeline.encoder is encoder:
                await self._teardown()
        return False
