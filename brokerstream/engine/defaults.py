"""Tradable instruments and contract durations offered to consumers.

These are the synthetic indices the trading panel and strategy runner pick
from. The provider quotes them around the clock, so there is no calendar to
consult before subscribing.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final

from brokerstream.engine.primitives import DurationUnit


@dataclass(slots=True, frozen=True)
class Asset:
    symbol: str
    name: str
    category: str = "Synthetic"


@dataclass(slots=True, frozen=True)
class DurationChoice:
    duration: int
    unit: DurationUnit
    label: str

    @property
    def key(self) -> str:
        """Compact form used by forms and configs, e.g. "5-m"."""
        return f"{self.duration}-{self.unit}"


# ── Volatility indices ─────────────────────────────────────────────
# R_* tick every 2 seconds; 1HZ* variants tick every second.
ASSETS: Final = [
    Asset("R_10", "Volatility 10 Index"),
    Asset("R_25", "Volatility 25 Index"),
    Asset("R_50", "Volatility 50 Index"),
    Asset("R_75", "Volatility 75 Index"),
    Asset("R_100", "Volatility 100 Index"),
    Asset("1HZ10V", "Volatility 10 (1s)"),
    Asset("1HZ25V", "Volatility 25 (1s)"),
    Asset("1HZ50V", "Volatility 50 (1s)"),
    Asset("1HZ75V", "Volatility 75 (1s)"),
    Asset("1HZ100V", "Volatility 100 (1s)"),
]

ASSETS_BY_SYMBOL: Final = {a.symbol: a for a in ASSETS}

DEFAULT_SYMBOL: Final = "R_100"

# ── Durations ──────────────────────────────────────────────────────
DURATIONS: Final = [
    DurationChoice(1, "m", "1 Minute"),
    DurationChoice(2, "m", "2 Minutes"),
    DurationChoice(5, "m", "5 Minutes"),
    DurationChoice(15, "m", "15 Minutes"),
    DurationChoice(30, "m", "30 Minutes"),
    DurationChoice(1, "h", "1 Hour"),
]


def parseDuration(key: str) -> DurationChoice:
    """Resolve a "5-m" style key to one of the offered durations.

    Raises KeyError for durations we don't offer.
    """
    for choice in DURATIONS:
        if choice.key == key:
            return choice

    raise KeyError(f"Unsupported duration: {key}")
