"""Coordinated session clock for wall time and timers."""
from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Callable

import whenever


@dataclasses.dataclass
class SessionClock:
    """Shared time source for a session.

    Reconnect delays and request timeouts are scheduled through ``later()``
    instead of calling the event loop directly, so tests can swap in a
    simulated clock and advance it by hand.
    """

    def now(self) -> whenever.Instant:
        return whenever.Instant.now()

    def later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        """Run ``callback`` after ``delay`` seconds on the running loop."""
        return asyncio.get_running_loop().call_later(delay, callback)

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(delay)
