from __future__ import annotations

import asyncio
import logging
import math
from typing import AsyncIterator, Callable, Optional

from pydantic import BaseModel

from .db import SERVER_TIME_OFFSET_PATH, RealtimeDatabase
from .models import QuizSession
from .utils import now_ms

logger = logging.getLogger(__name__)

NowFn = Callable[[], int]


class ServerClock:
    """Estimate of the authoritative server time.

    Local wall clock plus the offset published by the database under
    ``.info/serverTimeOffset``. The offset is 0 until the feed delivers a
    value. Readings never go backwards, even when a new offset is smaller
    than the previous one.
    """

    def __init__(self, database: RealtimeDatabase, local_now: NowFn = now_ms):
        self._database = database
        self._local_now = local_now
        self._offset_ms = 0
        self._last_ms = 0
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def offset_ms(self) -> int:
        return self._offset_ms

    async def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = await self._database.subscribe(SERVER_TIME_OFFSET_PATH, self._on_offset)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_offset(self, value) -> None:
        offset = int(value or 0)
        if offset != self._offset_ms:
            logger.debug("Server clock offset changed from %sms to %sms", self._offset_ms, offset)
        self._offset_ms = offset

    def server_now(self) -> int:
        estimate = self._local_now() + self._offset_ms
        self._last_ms = max(self._last_ms, estimate)
        return self._last_ms

    async def ticks(self, interval: float = 0.25) -> AsyncIterator[int]:
        """Yield ``server_now()`` every ``interval`` seconds, forever."""
        while True:
            yield self.server_now()
            await asyncio.sleep(interval)


class Countdown(BaseModel):
    seconds_left: int
    label: str
    timed_out: bool


def seconds_left(timer_ends_at: int, now: int) -> int:
    if not timer_ends_at:
        return 0
    return max(0, math.ceil((timer_ends_at - now) / 1000))


def format_countdown(seconds: int) -> str:
    if seconds >= 60:
        return f"{seconds // 60}:{seconds % 60:02d}"
    return f"{seconds}s"


def timed_out(quiz: QuizSession, now: int) -> bool:
    return not quiz.accepting or now >= (quiz.timer_ends_at or 0)


def is_accepting(quiz: QuizSession, now: int) -> bool:
    return quiz.accepting and now < (quiz.timer_ends_at or 0)


def countdown(quiz: QuizSession, now: int) -> Countdown:
    remaining = seconds_left(quiz.timer_ends_at, now)
    return Countdown(seconds_left=remaining, label=format_countdown(remaining), timed_out=timed_out(quiz, now))
