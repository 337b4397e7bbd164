"""FastAPI application.

Web ページの映像・音声を RTMP に配信し続けるプロセスのエントリポイント。
lifespan でスーパーバイザのループと配信ステータス確認を起動し、
/health と /metrics を提供する。
"""

import asyncio
import contextlib
import logging
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from stream_webpage.config import Settings, load_settings
from stream_webpage.errors import ConfigurationError
from stream_webpage.log import configure_logging
from stream_webpage.monitor import LivenessMonitor
from stream_webpage.supervisor import Supervisor
from stream_webpage.twitch import TwitchClient
from stream_webpage.xvfb import VirtualDisplay

logger = logging.getLogger(__name__)

START_TIME = time.time()


async def _cancel(task: asyncio.Task | None) -> None:
    if task is None or task.done():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


@asynccontextmanager
async def lifespan(app: FastAPI):
    """アプリケーションのライフサイクル管理.

    app.state.settings が事前に設定されていればそれを使い、
    なければ環境変数から読み込む。
    """
    settings: Settings = getattr(app.state, "settings", None) or load_settings()
    app.state.settings = settings
    configure_logging(settings.log_level, settings.log_format)

    stream = settings.stream
    logger.info(
        "Starting website stream capture: website=%s rtmp=%s resolution=%s framerate=%d (%dx%d)",
        stream.website_url,
        stream.rtmp_url,
        stream.resolution.value,
        stream.framerate.value,
        stream.width,
        stream.height,
    )

    display = None
    if not settings.xvfb_static:
        display = VirtualDisplay(stream.display, stream.width, stream.height)
        await display.start()

    supervisor = Supervisor(stream)
    app.state.supervisor = supervisor
    run_task = asyncio.create_task(supervisor.run(), name="stream-supervisor")

    client = None
    monitor_task = None
    if settings.monitor_enabled:
        client = TwitchClient(settings.twitch_client_id, settings.twitch_client_secret)
        monitor = LivenessMonitor(
            supervisor,
            client,
            settings.twitch_channel,
            settings.status_cron_schedule,
        )
        monitor_task = asyncio.create_task(monitor.run(), name="liveness-monitor")
    else:
        logger.debug("Stream status checker not configured, skipping setup")

    try:
        yield
    finally:
        logger.info("Received shutdown signal, stopping...")
        await _cancel(monitor_task)
        await _cancel(run_task)
        if client is not None:
            await client.aclose()
        if display is not None:
            await display.stop()
        logger.info("Shutdown complete")


app = FastAPI(
    title="stream-webpage",
    description="Stream a webpage's video and audio to an RTMP endpoint",
    version="0.1.0",
    lifespan=lifespan,
)


class Health(BaseModel):
    """ヘルスチェックのレスポンス."""

    uptime: float
    message: str
    date: datetime
    streaming: bool


@app.get("/health")
async def health(request: Request) -> Health:
    """ヘルスチェック."""
    supervisor: Supervisor | None = getattr(request.app.state, "supervisor", None)
    return Health(
        uptime=time.time() - START_TIME,
        message="OK",
        date=datetime.now(timezone.utc),
        streaming=supervisor.is_running() if supervisor else False,
    )


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus メトリクス."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def main() -> None:
    """python -m app.main で起動する.

    SIGINT/SIGTERM は uvicorn が受け取り、lifespan の終了処理に入る。
    """
    try:
        settings = load_settings()
    except ConfigurationError as e:
        configure_logging()
        logger.critical("Failed to load configuration: %s", e)
        sys.exit(1)

    configure_logging(settings.log_level, settings.log_format)
    app.state.settings = settings
    logger.info("Starting HTTP server on 0.0.0.0:%d", settings.port)
    uvicorn.run(app, host="0.0.0.0", port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
