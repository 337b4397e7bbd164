"""LivenessMonitor のテスト."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from stream_webpage.errors import ExternalQueryError
from stream_webpage.monitor import LivenessMonitor


class FakeSupervisor:
    def __init__(self):
        self.restarts = 0

    async def restart(self) -> None:
        self.restarts += 1


class FakeClient:
    def __init__(self, result):
        self.result = result
        self.channels: list[str] = []

    async def is_live(self, channel: str) -> bool:
        self.channels.append(channel)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class TestCheckOnce:
    @pytest.mark.asyncio
    async def test_live_does_not_restart(self):
        supervisor = FakeSupervisor()
        monitor = LivenessMonitor(supervisor, FakeClient(True), "somechannel")

        assert await monitor.check_once() is True
        assert supervisor.restarts == 0

    @pytest.mark.asyncio
    async def test_not_live_restarts(self):
        supervisor = FakeSupervisor()
        client = FakeClient(False)
        monitor = LivenessMonitor(supervisor, client, "somechannel")

        assert await monitor.check_once() is False
        assert supervisor.restarts == 1
        assert client.channels == ["somechannel"]

    @pytest.mark.asyncio
    async def test_query_failure_does_not_restart(self):
        supervisor = FakeSupervisor()
        monitor = LivenessMonitor(
            supervisor, FakeClient(ExternalQueryError("boom")), "somechannel"
        )

        assert await monitor.check_once() is None
        assert supervisor.restarts == 0


class TestSchedule:
    def test_default_every_ten_minutes(self):
        monitor = LivenessMonitor(FakeSupervisor(), FakeClient(True), "c")
        now = datetime(2024, 1, 1, 12, 3, 0, tzinfo=timezone.utc)
        assert monitor.seconds_until_next(now) == pytest.approx(420)

    def test_custom_schedule(self):
        monitor = LivenessMonitor(FakeSupervisor(), FakeClient(True), "c", "0 * * * *")
        now = datetime(2024, 1, 1, 12, 59, 30, tzinfo=timezone.utc)
        assert monitor.seconds_until_next(now) == pytest.approx(30)

    def test_schedule_follows_wall_clock_of_now(self):
        monitor = LivenessMonitor(FakeSupervisor(), FakeClient(True), "c", "0 9 * * *")
        jst = timezone(timedelta(hours=9))
        now = datetime(2024, 1, 1, 8, 30, 0, tzinfo=jst)
        assert monitor.seconds_until_next(now) == pytest.approx(1800)

    def test_default_now_is_local_time(self):
        class FixedDatetime(datetime):
            @classmethod
            def now(cls, tz=None):
                # ローカル時刻 08:30 (naive)
                return cls(2024, 1, 1, 8, 30, 0)

        monitor = LivenessMonitor(FakeSupervisor(), FakeClient(True), "c", "0 9 * * *")
        with patch("stream_webpage.monitor.datetime", FixedDatetime):
            assert monitor.seconds_until_next() == pytest.approx(1800)
