"""
Liquidation Density Engine

Replays a candle series through the LevelTracker and SnapshotAggregator to build
one density snapshot per candle. A run is a synchronous batch over the whole
series; there is no incremental update.

HeatmapEngine wraps run() for hosts that re-run on every parameter change: each
submission gets a generation number and only the newest generation is published.
"""

import logging
import threading
from typing import Callable, Optional, Sequence

from liqheat.heatmap_config import (
    DEFAULT_BUCKET_FRACTION,
    MAX_LEVEL_DISTANCE_PCT,
    HeatmapConfigError,
    validate_bucket_size,
    validate_leverage,
)
from liqheat.liq_levels import Candle, LevelTracker
from liqheat.liq_snapshots import EngineResult, SnapshotAggregator

logger = logging.getLogger(__name__)


def derive_bucket_size(candles: Sequence[Candle], fraction: float = DEFAULT_BUCKET_FRACTION) -> float:
    """Bucket size as a fraction of the last close."""
    if not candles:
        raise HeatmapConfigError("cannot derive bucket size from an empty candle series")
    size = candles[-1].close * fraction
    return validate_bucket_size(size)


def run(
    candles: Sequence[Candle],
    leverage: float,
    bucket_size: float,
    max_distance_pct: float = MAX_LEVEL_DISTANCE_PCT,
    sort_buckets: bool = False
) -> EngineResult:
    """
    Run the full simulation over an ordered candle series.

    Args:
        candles: Candles ascending by time
        leverage: Leverage multiplier (> 0)
        bucket_size: Price bucket width (> 0)
        max_distance_pct: Relative distance from close beyond which levels are dropped
        sort_buckets: Sort buckets by price inside each snapshot

    Returns:
        EngineResult with one snapshot per candle

    Raises:
        HeatmapConfigError: leverage or bucket_size not a positive finite number
    """
    leverage = validate_leverage(leverage)
    bucket_size = validate_bucket_size(bucket_size)

    if not candles:
        return EngineResult.empty(bucket_size=bucket_size, leverage=leverage)

    tracker = LevelTracker(leverage, max_distance_pct=max_distance_pct)
    aggregator = SnapshotAggregator(bucket_size, sort_buckets=sort_buckets)

    for candle in candles:
        active = tracker.step(candle)
        aggregator.add(candle.time, active)

    stats = tracker.get_stats()
    logger.debug(
        f"[LIQ_ENGINE] run complete candles={len(candles)} leverage={leverage} "
        f"bucket_size={bucket_size:.6g} global_max={aggregator.global_max_density:.4f} "
        f"active={stats['active_levels']} triggered={stats['levels_triggered']} "
        f"pruned={stats['levels_pruned']}"
    )

    return EngineResult(
        snapshots=aggregator.snapshots,
        global_max_density=aggregator.global_max_density,
        bucket_size=bucket_size,
        leverage=leverage,
    )


class HeatmapEngine:
    """
    Publishes engine results with last-write-wins semantics.

    Every submit() supersedes earlier ones. A run that finishes after a newer
    submission started is discarded, so a stale result never replaces a fresh one.

    Usage:
        engine = HeatmapEngine(on_result=redraw)
        engine.submit(candles, leverage=3, bucket_size=250.0)
        result = engine.latest()
    """

    def __init__(
        self,
        max_distance_pct: float = MAX_LEVEL_DISTANCE_PCT,
        sort_buckets: bool = False,
        on_result: Optional[Callable[[EngineResult], None]] = None
    ):
        self.max_distance_pct = max_distance_pct
        self.sort_buckets = sort_buckets
        self.on_result = on_result

        self._lock = threading.Lock()
        self._generation = 0
        self._published: Optional[EngineResult] = None
        self._published_generation = 0

        # Stats
        self.runs_published = 0
        self.runs_discarded = 0

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def latest(self) -> Optional[EngineResult]:
        """Most recently published result, or None before the first run."""
        with self._lock:
            return self._published

    def _next_generation(self) -> int:
        with self._lock:
            self._generation += 1
            return self._generation

    def _publish(self, generation: int, result: EngineResult) -> bool:
        with self._lock:
            if generation != self._generation:
                self.runs_discarded += 1
                logger.debug(
                    f"[LIQ_ENGINE] discarding run gen={generation} (latest={self._generation})"
                )
                return False
            self._published = result
            self._published_generation = generation
            self.runs_published += 1

        # Callback outside lock
        if self.on_result:
            self.on_result(result)
        return True

    def _execute(self, generation: int, candles, leverage, bucket_size) -> Optional[EngineResult]:
        result = run(
            candles,
            leverage,
            bucket_size,
            max_distance_pct=self.max_distance_pct,
            sort_buckets=self.sort_buckets,
        )
        return result if self._publish(generation, result) else None

    def submit(
        self,
        candles: Sequence[Candle],
        leverage: float,
        bucket_size: float
    ) -> Optional[EngineResult]:
        """
        Run synchronously and publish.

        Configuration errors are raised before a generation is claimed, so an
        invalid request never cancels the run that is currently published.

        Returns the result if it was published, None if it was superseded.
        """
        validate_leverage(leverage)
        validate_bucket_size(bucket_size)
        generation = self._next_generation()
        return self._execute(generation, candles, leverage, bucket_size)

    def submit_async(
        self,
        candles: Sequence[Candle],
        leverage: float,
        bucket_size: float
    ) -> threading.Thread:
        """Run on a daemon thread. Only the newest submission gets published."""
        validate_leverage(leverage)
        validate_bucket_size(bucket_size)
        generation = self._next_generation()
        candles = list(candles)

        def _worker():
            try:
                self._execute(generation, candles, leverage, bucket_size)
            except Exception as e:
                logger.error(f"[LIQ_ENGINE] background run gen={generation} failed: {e}", exc_info=True)

        thread = threading.Thread(target=_worker, name=f"liqheat-run-{generation}", daemon=True)
        thread.start()
        return thread

    def get_stats(self) -> dict:
        with self._lock:
            published = self._published
            return {
                "generation": self._generation,
                "published_generation": self._published_generation,
                "runs_published": self.runs_published,
                "runs_discarded": self.runs_discarded,
                "snapshots": len(published.snapshots) if published else 0,
                "global_max_density": published.global_max_density if published else 0.0,
            }
