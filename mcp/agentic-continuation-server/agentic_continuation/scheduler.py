"""
Continuation Scheduler

A short, visibly ticking countdown between "session went idle" and "send the
next instruction". Every countdown either fires once or is cancelled; it is
never extended. Once it starts firing, cancellation no longer applies.
"""

import asyncio
import logging
import math
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


TickCallback = Callable[[int], Awaitable[None]]
FireCallback = Callable[[], Awaitable[None]]


class Countdown:
    def __init__(
        self,
        seconds: float,
        on_fire: FireCallback,
        on_tick: Optional[TickCallback] = None,
        tick_interval: float = 1.0
    ):
        self.seconds = seconds
        self.on_fire = on_fire
        self.on_tick = on_tick
        self.tick_interval = tick_interval
        self.fired = False
        self.cancelled = False
        self._task: Optional[asyncio.Task] = None

    def start(self) -> "Countdown":
        self._task = asyncio.create_task(self._run())
        return self

    async def _run(self) -> None:
        remaining = self.seconds
        if self.on_tick:
            await self.on_tick(math.ceil(remaining))
        while remaining > 0:
            step = min(self.tick_interval, remaining)
            await asyncio.sleep(step)
            remaining -= step
            if remaining > 0 and self.on_tick:
                await self.on_tick(math.ceil(remaining))

        self.fired = True
        await self.on_fire()

    @property
    def pending(self) -> bool:
        return not (self.fired or self.cancelled)

    def cancel(self) -> bool:
        if not self.pending:
            return False
        self.cancelled = True
        if self._task and not self._task.done():
            self._task.cancel()
        return True

    async def wait(self) -> None:
        """Wait until the countdown has fired (and its callback finished) or was cancelled."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            if not self.cancelled:
                raise


class ContinuationScheduler:
    """At most one pending countdown per session."""

    def __init__(self):
        self._countdowns: dict[str, Countdown] = {}

    def schedule(
        self,
        session_id: str,
        seconds: float,
        on_fire: FireCallback,
        on_tick: Optional[TickCallback] = None
    ) -> Countdown:
        self.cancel(session_id)

        async def fire() -> None:
            if self._countdowns.get(session_id) is countdown:
                del self._countdowns[session_id]
            await on_fire()

        countdown = Countdown(seconds, fire, on_tick)
        self._countdowns[session_id] = countdown
        countdown.start()
        logger.debug(f"Countdown started for {session_id} ({seconds}s)")
        return countdown

    def cancel(self, session_id: str) -> bool:
        countdown = self._countdowns.pop(session_id, None)
        if countdown is None:
            return False
        cancelled = countdown.cancel()
        if cancelled:
            logger.debug(f"Countdown cancelled for {session_id}")
        return cancelled

    def is_pending(self, session_id: str) -> bool:
        countdown = self._countdowns.get(session_id)
        return bool(countdown and countdown.pending)

    def cancel_all(self) -> int:
        return sum(1 for session_id in list(self._countdowns) if self.cancel(session_id))
