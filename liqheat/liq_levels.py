"""
Liquidation level generation and tracking.

For every candle, a hypothetical long and short position is opened at the close.
The LevelTracker carries those levels forward, dropping them once price trades
through the liquidation price (the position would have been liquidated) or once
they drift too far from the current price to matter visually.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import List, Tuple

from liqheat.heatmap_config import MAX_LEVEL_DISTANCE_PCT

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candle:
    """A single OHLCV bar. Time is unix seconds."""
    time: float
    open: float
    high: float
    low: float
    close: float
    volume: float


class Side(Enum):
    """Position side a liquidation level belongs to."""
    LONG = "long"     # Liquidates below entry
    SHORT = "short"   # Liquidates above entry


@dataclass(frozen=True)
class LiquidationLevel:
    """One hypothetical liquidation trigger."""
    price: float
    intensity: float
    side: Side
    created_at: float

    def is_triggered(self, high: float, low: float) -> bool:
        """True if a bar with this high/low trades through the level."""
        if self.side is Side.LONG:
            return low <= self.price
        return high >= self.price


def volume_intensity(volume: float) -> float:
    """Log-dampened volume so single outlier bars don't dominate."""
    return math.log10(volume + 10)


def generate_levels(candle: Candle, leverage: float) -> Tuple[LiquidationLevel, LiquidationLevel]:
    """
    Long and short liquidation levels for positions opened at candle.close.

    Returns (long, short). A non-positive leverage yields two zero-intensity
    levels at the close instead of raising; leverage is validated upstream.
    """
    if leverage <= 0:
        return (
            LiquidationLevel(candle.close, 0.0, Side.LONG, candle.time),
            LiquidationLevel(candle.close, 0.0, Side.SHORT, candle.time),
        )

    intensity = volume_intensity(candle.volume)
    offset = 1.0 / leverage

    long_level = LiquidationLevel(
        price=candle.close * (1 - offset),
        intensity=intensity,
        side=Side.LONG,
        created_at=candle.time,
    )
    short_level = LiquidationLevel(
        price=candle.close * (1 + offset),
        intensity=intensity,
        side=Side.SHORT,
        created_at=candle.time,
    )
    return long_level, short_level


class LevelTracker:
    """
    Owns the active set of liquidation levels for one run.

    Candles must be fed strictly in time order: whether a level survives depends
    on every candle seen since it was created.
    """

    def __init__(self, leverage: float, max_distance_pct: float = MAX_LEVEL_DISTANCE_PCT):
        self.leverage = leverage
        self.max_distance_pct = max_distance_pct

        self._active: List[LiquidationLevel] = []

        # Stats
        self.steps = 0
        self.levels_created = 0
        self.levels_triggered = 0
        self.levels_pruned = 0

    @property
    def active_levels(self) -> List[LiquidationLevel]:
        """Current active levels (a copy; order carries no meaning)."""
        return list(self._active)

    def __len__(self) -> int:
        return len(self._active)

    def _filter(self, candle: Candle) -> None:
        """Rebuild the active set without triggered or far-away levels."""
        close = candle.close
        survivors = []
        triggered = 0
        pruned = 0

        for level in self._active:
            if level.is_triggered(candle.high, candle.low):
                triggered += 1
                continue
            if close > 0 and abs(level.price - close) / close > self.max_distance_pct:
                pruned += 1
                continue
            survivors.append(level)

        self._active = survivors
        self.levels_triggered += triggered
        self.levels_pruned += pruned

    def step(self, candle: Candle) -> List[LiquidationLevel]:
        """
        Advance one candle: filter, then insert the candle's two new levels.

        Returns the active set after insertion (the list is owned by the
        tracker and replaced on the next step, never mutated afterwards).
        """
        self._filter(candle)

        new_levels = generate_levels(candle, self.leverage)
        self._active.extend(new_levels)
        self.levels_created += len(new_levels)
        self.steps += 1

        return self._active

    def get_stats(self) -> dict:
        """Get debug stats for the tracker."""
        return {
            "steps": self.steps,
            "active_levels": len(self._active),
            "levels_created": self.levels_created,
            "levels_triggered": self.levels_triggered,
            "levels_pruned": self.levels_pruned,
            "leverage": self.leverage,
            "max_distance_pct": self.max_distance_pct,
        }
