"""Playwright Chromium によるページ描画セッション.

仮想ディスプレイ上に非 headless の Chromium を起動して対象ページを開き、
エンコーダが映像と音声をキャプチャできる状態に保つ。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from playwright.async_api import async_playwright

from stream_webpage.config import StreamConfig
from stream_webpage.errors import NavigationError

logger = logging.getLogger(__name__)

DEFAULT_NAVIGATION_TIMEOUT = 30.0
DEFAULT_SETTLE_DELAY = 3.0


def chromium_args(config: StreamConfig) -> list[str]:
    """キャプチャ用の Chromium 起動引数.

    ユーザー操作なしで音声・動画を自動再生させ、メディアデバイスは
    フェイクで許可する。音声は PulseAudio に出力する。
    """
    return [
        f"--display={config.display}",
        "--kiosk",
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-dev-shm-usage",
        "--disable-web-security",
        "--allow-running-insecure-content",
        "--autoplay-policy=no-user-gesture-required",
        "--use-fake-ui-for-media-stream",
        "--use-fake-device-for-media-stream",
        "--alsa-output-device=pulse",
        "--enable-features=VaapiVideoDecoder",
        "--disable-blink-features=AutomationControlled",
        f"--window-size={config.width},{config.height}",
        "--window-position=0,0",
    ]


class RendererSession:
    """起動済みブラウザのハンドル. close() でプロセスツリーごと終了する."""

    def __init__(self, pw: Any, browser: Any, page: Any, url: str):
        self._pw = pw
        self._browser = browser
        self._page = page
        self._url = url
        self._closed = False

    @property
    def url(self) -> str:
        return self._url

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        """ブラウザと Playwright を停止する (冪等).

        各ステップは独立 try/except（1つの失敗で他が止まらない）。
        browser.close() がタイムアウト等でキャンセルされても Playwright は
        必ず停止する (ドライバ終了で配下のブラウザプロセスも終了する)。
        """
        if self._closed:
            return
        self._closed = True

        try:
            await self._browser.close()
            logger.info("Browser closed (%s)", self._url)
        except Exception:
            logger.exception("Error closing browser")
        finally:
            await _stop_playwright(self._pw)


class PlaywrightRenderer:
    """RendererSession を生成する.

    Args:
        navigation_timeout: ページ表示待ちの上限 (秒)
        settle_delay: 表示後、キャプチャ開始までの待ち時間 (秒)
    """

    def __init__(
        self,
        navigation_timeout: float = DEFAULT_NAVIGATION_TIMEOUT,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
    ):
        self._navigation_timeout = navigation_timeout
        self._settle_delay = settle_delay

    async def start(self, config: StreamConfig) -> RendererSession:
        """ブラウザを起動して config.website_url を開く.

        Raises:
            NavigationError: 起動またはページ表示に失敗した場合
        """
        logger.info(
            "Starting Chromium on %s: %s (%dx%d)",
            config.display,
            config.website_url,
            config.width,
            config.height,
        )
        pw = None
        browser = None
        try:
            pw = await async_playwright().start()
            browser = await pw.chromium.launch(
                headless=False,
                args=chromium_args(config),
                ignore_default_args=["--enable-automation", "--mute-audio"],
            )
            page = await browser.new_page(
                viewport={"width": config.width, "height": config.height}
            )
            timeout_ms = self._navigation_timeout * 1000
            await page.goto(
                config.website_url,
                wait_until="domcontentloaded",
                timeout=timeout_ms,
            )
            await page.wait_for_selector("body", state="visible", timeout=timeout_ms)
        except asyncio.CancelledError:
            await _cleanup(pw, browser, config.website_url)
            raise
        except Exception as e:
            logger.error("Failed to navigate to %s: %s", config.website_url, e)
            await _cleanup(pw, browser, config.website_url)
            raise NavigationError(
                f"failed to navigate to {config.website_url}: {e}"
            ) from e

        session = RendererSession(pw, browser, page, config.website_url)

        # ページ内のメディアが再生を始めるまで少し待つ
        try:
            await asyncio.sleep(self._settle_delay)
        except asyncio.CancelledError:
            await session.close()
            raise

        logger.info("Page ready: %s", config.website_url)
        return session


async def _cleanup(pw: Any, browser: Any, url: str) -> None:
    """起動途中で失敗したブラウザを解放する."""
    if browser is not None:
        await RendererSession(pw, browser, None, url).close()
    elif pw is not None:
        await _stop_playwright(pw)


async def _stop_playwright(pw: Any) -> None:
    try:
        await pw.stop()
        logger.debug("Playwright stopped")
    except Exception:
        logger.exception("Error stopping playwright")
