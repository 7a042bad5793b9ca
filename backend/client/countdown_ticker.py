"""
Live trial countdown.

Re-derives the countdown from the canonical expiry at least once a minute.
When reconciliation replaces the expiry, ``update_end`` wakes the ticker so
the next label is computed from the new value instead of the old one.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from core.clock import utcnow
from core.countdown import EXPIRING_SOON_THRESHOLD, Countdown, derive
from infrastructure.config.settings import settings

logger = logging.getLogger(__name__)

MAX_TICK_SECONDS = 60.0


class CountdownTicker:
    """Background task that pushes a fresh ``Countdown`` to ``on_tick``."""

    def __init__(
        self,
        subscription_end: datetime,
        on_tick: Callable[[Countdown], None],
        interval: float | None = None,
        clock: Callable[[], datetime] = utcnow,
        expiring_soon_threshold: timedelta = EXPIRING_SOON_THRESHOLD,
    ):
        if interval is None:
            interval = settings.countdown_tick_seconds
        if interval <= 0 or interval > MAX_TICK_SECONDS:
            raise ValueError("interval must be between 0 and 60 seconds")
        self._end = subscription_end
        self._on_tick = on_tick
        self._interval = interval
        self._clock = clock
        self._threshold = expiring_soon_threshold
        self._wake = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.last: Countdown | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="trial-countdown")

    def update_end(self, subscription_end: datetime) -> None:
        """Swap in a new canonical expiry and re-derive immediately."""
        self._end = subscription_end
        self._wake.set()
        if not self.running:
            self.start()

    def tick(self) -> Countdown:
        countdown = derive(self._clock(), self._end, self._threshold)
        self.last = countdown
        self._on_tick(countdown)
        return countdown

    async def _run(self) -> None:
        while True:
            countdown = self.tick()
            if countdown.expired:
                logger.debug("Trial countdown reached expiry, stopping ticker")
                return
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

    async def stop(self) -> None:
        """Cancel the ticker; safe to call when it is not running."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
