"""
Density normalization for rendering.

Raw bucket densities are scaled against either the run's global maximum or the
maximum of whatever is currently visible ("auto-contrast"). Buckets whose scaled
value falls below the noise filter are not drawn at all; the rest get a
sensitivity gain and are clamped to 1.
"""

import logging
import math
from typing import Optional, Sequence, Tuple

from liqheat.heatmap_config import LUT_STEPS
from liqheat.liq_snapshots import HeatmapSnapshot

logger = logging.getLogger(__name__)


def visible_indices(logical_range: Tuple[float, float], count: int) -> range:
    """Snapshot indices covered by a (possibly fractional) logical range."""
    start = max(0, math.floor(logical_range[0]))
    end = min(count - 1, math.ceil(logical_range[1]))
    if end < start:
        return range(0)
    return range(start, end + 1)


def local_max_density(
    snapshots: Sequence[HeatmapSnapshot],
    time_range: Tuple[float, float],
    price_range: Tuple[float, float]
) -> float:
    """Max bucket density inside the visible time/price window (0.0 if none)."""
    price_min, price_max = price_range
    local_max = 0.0
    for i in visible_indices(time_range, len(snapshots)):
        for bucket in snapshots[i].buckets:
            if price_min <= bucket.price_floor <= price_max and bucket.density > local_max:
                local_max = bucket.density
    return local_max


def effective_max(
    snapshots: Sequence[HeatmapSnapshot],
    global_max_density: float,
    local_normalization: bool,
    time_range: Optional[Tuple[float, float]] = None,
    price_range: Optional[Tuple[float, float]] = None
) -> float:
    """
    Denominator for this render pass.

    Local normalization falls back to the global max when the visible window is
    empty or all-zero, or when no window was given.
    """
    if not local_normalization or time_range is None or price_range is None:
        return global_max_density

    local_max = local_max_density(snapshots, time_range, price_range)
    if local_max > 0:
        return local_max
    return global_max_density


def normalize_density(
    density: float,
    max_density: float,
    noise_filter: float,
    sensitivity: float
) -> Optional[float]:
    """
    Scale a raw density into [0, 1].

    Returns None when the bucket should not be drawn: either there is no
    density to scale against (max_density <= 0) or density / max_density is
    strictly below noise_filter.
    """
    if max_density <= 0:
        return None

    raw = density / max_density
    if raw < noise_filter:
        return None

    level = raw * sensitivity
    return 1.0 if level > 1.0 else level


def lut_index(level: float, steps: int = LUT_STEPS) -> int:
    """LUT slot for a normalized level."""
    idx = math.floor(level * steps)
    if idx < 0:
        return 0
    if idx > steps:
        return steps
    return idx
