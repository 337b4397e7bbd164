"""テスト共通のフェイク.

実際のブラウザ・FFmpeg を起動せずにスーパーバイザの状態遷移を検証する。
"""

import asyncio
from collections.abc import Callable

import pytest

from stream_webpage.config import StreamConfig
from stream_webpage.errors import NavigationError, UnexpectedExit


class FakeSession:
    def __init__(self, url: str, events: list[str]):
        self.url = url
        self.closed = False
        self.close_calls = 0
        self._events = events

    async def close(self) -> None:
        self.close_calls += 1
        if not self.closed:
            self.closed = True
            self._events.append("renderer-close")


class FakeRenderer:
    """PlaywrightRenderer の代わり. fail_next でナビゲーション失敗を注入する."""

    def __init__(self, events: list[str]):
        self.sessions: list[FakeSession] = []
        self.fail_next = 0
        self.gate: asyncio.Event | None = None
        self._events = events

    async def start(self, config: StreamConfig) -> FakeSession:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_next:
            self.fail_next -= 1
            self._events.append("renderer-fail")
            raise NavigationError(f"failed to navigate to {config.website_url}")
        session = FakeSession(config.website_url, self._events)
        self.sessions.append(session)
        self._events.append("renderer-start")
        return session


class FakeEncoder:
    """EncoderProcess の代わり. exit_with() で FFmpeg の終了を模擬する."""

    def __init__(self, number: int, events: list[str], spawn_error: Exception | None = None):
        self.number = number
        self.pid = 1000 + number
        self.killed = False
        self.returncode: int | None = None
        self._events = events
        self._spawn_error = spawn_error
        self._exited = asyncio.Event()

    async def start(self) -> None:
        if self._spawn_error is not None:
            raise self._spawn_error
        self._events.append(f"spawn:{self.number}")

    def exit_with(self, returncode: int) -> None:
        self.returncode = returncode
        self._exited.set()

    def kill(self) -> None:
        if not self.killed:
            self._events.append(f"kill:{self.number}")
        self.killed = True
        if self.returncode is None:
            self.returncode = -9
        self._exited.set()

    @property
    def alive(self) -> bool:
        return not self._exited.is_set()

    async def wait(self) -> None:
        await self._exited.wait()
        if self.killed or self.returncode == 0:
            return
        raise UnexpectedExit(self.returncode)


class EncoderFactory:
    def __init__(self, events: list[str]):
        self.encoders: list[FakeEncoder] = []
        self.spawn_error: Exception | None = None
        self._events = events

    def __call__(self, config: StreamConfig) -> FakeEncoder:
        encoder = FakeEncoder(len(self.encoders) + 1, self._events, self.spawn_error)
        self.encoders.append(encoder)
        return encoder

    @property
    def alive(self) -> list[FakeEncoder]:
        return [e for e in self.encoders if e.alive]


@pytest.fixture
def events() -> list[str]:
    return []


@pytest.fixture
def renderer(events) -> FakeRenderer:
    return FakeRenderer(events)


@pytest.fixture
def encoder_factory(events) -> EncoderFactory:
    return EncoderFactory(events)


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """predicate が True になるまで待つ（テスト用）."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


@pytest.fixture
def wait_until():
    return _wait_until
