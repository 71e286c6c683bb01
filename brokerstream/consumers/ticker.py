"""Live price for one symbol with a short rolling history."""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field

import pandas as pd
from loguru import logger

from brokerstream.engine.defaults import DEFAULT_SYMBOL
from brokerstream.engine.primitives import Tick
from brokerstream.engine.session import Session


@dataclass(slots=True, weakref_slot=True)
class PriceTicker:
    """Tracks the current quote and the last ``historyLength`` ticks for a symbol.

    Parameters
    ----------
    session:
        Shared session the ticker reads from. The ticker never opens its own socket.
    symbol:
        Symbol to follow; change it with ``switch()``.
    historyLength:
        How many recent ticks to keep for charting.
    """

    session: Session
    symbol: str = DEFAULT_SYMBOL
    historyLength: int = 50

    current: float | None = None
    history: deque[Tick] = field(init=False)
    attached: bool = False

    def __post_init__(self) -> None:
        assert self.historyLength >= 1
        self.history = deque(maxlen=self.historyLength)

    def start(self) -> None:
        if self.attached:
            return

        self.session.tickEvent += self.onTick
        self.attached = True
        self.session.subscribeTicks(self.symbol)

    def stop(self) -> None:
        if not self.attached:
            return

        self.session.tickEvent -= self.onTick
        self.attached = False
        self.session.unsubscribeTicks(self.symbol)

    def switch(self, symbol: str) -> None:
        """Follow a different symbol, dropping the old stream and history."""
        if symbol == self.symbol:
            return

        logger.info("[ticker] Switching {} -> {}", self.symbol, symbol)

        if self.attached:
            self.session.unsubscribeTicks(self.symbol)

        self.symbol = symbol
        self.current = None
        self.history.clear()

        if self.attached:
            self.session.subscribeTicks(symbol)

    def onTick(self, tick: Tick) -> None:
        if tick.symbol != self.symbol:
            return

        self.current = tick.price
        self.history.append(tick)

    def change(self) -> float | None:
        """Price change across the retained history."""
        if len(self.history) < 2:
            return None

        return self.history[-1].price - self.history[0].price

    def frame(self) -> pd.DataFrame:
        """Retained history as a DataFrame of prices indexed by UTC tick time."""
        index = pd.to_datetime(
            [t.epoch for t in self.history], unit="s", utc=True
        ).rename("time")

        return pd.DataFrame({"price": [t.price for t in self.history]}, index=index)
