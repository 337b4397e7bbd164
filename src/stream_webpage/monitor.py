"""配信ステータスの定期確認.

プラットフォームの最大配信時間で配信が切られた場合に備え、cron スケジュールで
配信中かどうかを確認し、配信されていなければパイプラインを再起動する。
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

from croniter import croniter

from stream_webpage import metrics
from stream_webpage.config import DEFAULT_STATUS_CRON_SCHEDULE
from stream_webpage.errors import ExternalQueryError

if TYPE_CHECKING:
    from stream_webpage.supervisor import Supervisor

logger = logging.getLogger(__name__)


class StatusClient(Protocol):
    async def is_live(self, channel: str) -> bool: ...


class LivenessMonitor:
    """cron スケジュールで配信状態を確認し、必要なら再起動を要求する.

    問い合わせ自体が失敗した場合は再起動しない
    (不安定な API による再起動の連発を避ける)。
    """

    def __init__(
        self,
        supervisor: Supervisor,
        client: StatusClient,
        channel: str,
        schedule: str = DEFAULT_STATUS_CRON_SCHEDULE,
    ):
        self._supervisor = supervisor
        self._client = client
        self._channel = channel
        self._schedule = schedule

    @property
    def schedule(self) -> str:
        return self._schedule

    async def check_once(self) -> bool | None:
        """1 回確認する.

        Returns:
            配信中なら True, 配信されておらず再起動したなら False,
            問い合わせに失敗したなら None
        """
        logger.info("Checking Twitch stream status for %s", self._channel)
        try:
            live = await self._client.is_live(self._channel)
        except ExternalQueryError as e:
            metrics.LIVENESS_CHECKS.labels(result="error").inc()
            logger.error("Failed to get Twitch stream status: %s", e)
            return None

        if live:
            metrics.LIVENESS_CHECKS.labels(result="live").inc()
            return True

        metrics.LIVENESS_CHECKS.labels(result="offline").inc()
        logger.warning("Stream is not live, restarting...")
        await self._supervisor.restart()
        return False

    def seconds_until_next(self, now: datetime | None = None) -> float:
        """次のスケジュール時刻までの秒数.

        スケジュールはローカルタイムゾーン (TZ) で評価する。
        """
        now = now or datetime.now().astimezone()
        next_fire = croniter(self._schedule, now).get_next(datetime)
        return max(0.0, (next_fire - now).total_seconds())

    async def run(self) -> None:
        """キャンセルされるまでスケジュールに従って確認を繰り返す."""
        logger.info(
            "Stream status checker started for %s (schedule=%r)",
            self._channel,
            self._schedule,
        )
        while True:
            await asyncio.sleep(self.seconds_until_next())
            try:
                await self.check_once()
            except Exception:
                logger.exception("Stream status check failed")
