"""
Snapshot aggregation: active liquidation levels -> price-bucketed density.

Each time step gets one HeatmapSnapshot whose buckets hold the summed intensity
of every active level that falls in the bucket's price range.
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from liqheat.liq_levels import LiquidationLevel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HeatmapBucket:
    """Fixed-width price bin. price_floor is a multiple of the bucket size."""
    price_floor: float
    density: float


@dataclass(frozen=True)
class HeatmapSnapshot:
    """Density profile at one time step."""
    time: float
    buckets: Tuple[HeatmapBucket, ...]

    @property
    def max_density(self) -> float:
        return max((b.density for b in self.buckets), default=0.0)

    @property
    def total_density(self) -> float:
        return sum(b.density for b in self.buckets)


@dataclass(frozen=True)
class EngineResult:
    """Complete output of one engine run over a candle series."""
    snapshots: Tuple[HeatmapSnapshot, ...]
    global_max_density: float
    bucket_size: float = 0.0
    leverage: float = 0.0

    def __len__(self) -> int:
        return len(self.snapshots)

    @classmethod
    def empty(cls, bucket_size: float = 0.0, leverage: float = 0.0) -> "EngineResult":
        return cls(snapshots=(), global_max_density=0.0, bucket_size=bucket_size, leverage=leverage)


def bucket_floor(price: float, bucket_size: float) -> float:
    """Lower edge of the bucket containing price."""
    return math.floor(price / bucket_size) * bucket_size


def aggregate_levels(
    levels: Iterable[LiquidationLevel],
    bucket_size: float,
    sort_buckets: bool = False
) -> Tuple[HeatmapBucket, ...]:
    """
    Group levels into buckets and sum intensity per bucket.

    Bucket order is first-seen order of the grouping pass unless sort_buckets
    is set, in which case buckets are ascending by price.
    """
    densities: Dict[float, float] = {}
    for level in levels:
        key = bucket_floor(level.price, bucket_size)
        densities[key] = densities.get(key, 0.0) + level.intensity

    items = densities.items()
    if sort_buckets:
        items = sorted(items)
    return tuple(HeatmapBucket(price_floor=p, density=d) for p, d in items)


class SnapshotAggregator:
    """
    Folds per-step active level sets into an ordered snapshot sequence.

    Tracks the running global maximum bucket density across all snapshots.
    """

    def __init__(self, bucket_size: float, sort_buckets: bool = False):
        self.bucket_size = bucket_size
        self.sort_buckets = sort_buckets

        self._snapshots: List[HeatmapSnapshot] = []
        self.global_max_density = 0.0

    def add(self, time: float, levels: Iterable[LiquidationLevel]) -> HeatmapSnapshot:
        """Aggregate one step's active levels and append the snapshot."""
        buckets = aggregate_levels(levels, self.bucket_size, self.sort_buckets)
        snapshot = HeatmapSnapshot(time=time, buckets=buckets)

        step_max = snapshot.max_density
        if step_max > self.global_max_density:
            self.global_max_density = step_max

        self._snapshots.append(snapshot)
        return snapshot

    @property
    def snapshots(self) -> Tuple[HeatmapSnapshot, ...]:
        return tuple(self._snapshots)

    def __len__(self) -> int:
        return len(self._snapshots)


def density_grid(
    result: EngineResult,
    price_range: Optional[Tuple[float, float]] = None
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Dense (time x price) intensity surface for an engine result.

    Args:
        result: EngineResult from a run
        price_range: Optional (min, max) to restrict the price axis

    Returns:
        (times, price_floors, grid) where grid[i, j] is the density of bucket
        price_floors[j] in snapshot i (0.0 where no bucket exists)
    """
    times = np.array([s.time for s in result.snapshots], dtype=np.float64)
    step = result.bucket_size

    floors = set()
    for snapshot in result.snapshots:
        for bucket in snapshot.buckets:
            if price_range is None or price_range[0] <= bucket.price_floor <= price_range[1]:
                floors.add(bucket.price_floor)

    if not floors or step <= 0:
        return times, np.empty(0, dtype=np.float64), np.zeros((len(times), 0), dtype=np.float64)

    # Index by bucket number so float noise in price_floor can't split columns
    lo_idx = min(int(round(p / step)) for p in floors)
    hi_idx = max(int(round(p / step)) for p in floors)
    prices = np.arange(lo_idx, hi_idx + 1, dtype=np.float64) * step

    grid = np.zeros((len(times), len(prices)), dtype=np.float64)
    for i, snapshot in enumerate(result.snapshots):
        for bucket in snapshot.buckets:
            if price_range is not None and not (price_range[0] <= bucket.price_floor <= price_range[1]):
                continue
            grid[i, int(round(bucket.price_floor / step)) - lo_idx] += bucket.density

    return times, prices, grid
