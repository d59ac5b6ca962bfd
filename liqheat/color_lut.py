"""
Colour lookup tables for the density heatmap.

The LUT maps a quantized normalized density (0..LUT_STEPS) to a colour so the
render loop never interpolates per rectangle. Two modes:
  - gradient: piecewise-linear across the 4 theme anchors, alpha rises with density
  - banded:   density snapped to 4 tiers, one anchor each, fixed high alpha
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional, Tuple

from liqheat.heatmap_config import LUT_STEPS, Theme

logger = logging.getLogger(__name__)

RGB = Tuple[int, int, int]
RGBA = Tuple[float, float, float, float]

# Gradient segment breakpoints (low->medium, medium->high, high->extreme)
GRADIENT_BREAK_1 = 0.33
GRADIENT_BREAK_2 = 0.66
GRADIENT_ALPHA_FLOOR = 0.2

# Banded mode tiers
BAND_EDGES = (0.25, 0.50, 0.75)
BANDED_ALPHA = 0.85


def parse_hex_to_rgb(hex_color: str) -> RGB:
    """'#rrggbb' -> (r, g, b). Unparseable channels become 0."""
    hex_color = hex_color.replace("#", "")

    def channel(start: int) -> int:
        try:
            return int(hex_color[start:start + 2], 16)
        except ValueError:
            return 0

    return channel(0), channel(2), channel(4)


def _lerp(a: RGB, b: RGB, t: float) -> Tuple[float, float, float]:
    return (
        a[0] + (b[0] - a[0]) * t,
        a[1] + (b[1] - a[1]) * t,
        a[2] + (b[2] - a[2]) * t,
    )


def _round_channel(value: float) -> int:
    # Half-up, not banker's rounding
    return int(value + 0.5)


@dataclass(frozen=True)
class ColorLUT:
    """Precomputed colours indexed by floor(level * steps)."""
    css: Tuple[str, ...]      # "rgba(r,g,b,a)" strings
    rgba: Tuple[RGBA, ...]    # Same colours as matplotlib 0-1 floats
    theme: Theme
    banded: bool

    @property
    def steps(self) -> int:
        return len(self.css) - 1

    def __len__(self) -> int:
        return len(self.css)

    def __getitem__(self, index: int) -> str:
        return self.css[index]


def _gradient_color(d: float, low: RGB, med: RGB, high: RGB, ext: RGB):
    alpha = GRADIENT_ALPHA_FLOOR + d * (1.0 - GRADIENT_ALPHA_FLOOR)
    if d < GRADIENT_BREAK_1:
        rgb = _lerp(low, med, d / GRADIENT_BREAK_1)
    elif d < GRADIENT_BREAK_2:
        rgb = _lerp(med, high, (d - GRADIENT_BREAK_1) / (GRADIENT_BREAK_2 - GRADIENT_BREAK_1))
    else:
        rgb = _lerp(high, ext, (d - GRADIENT_BREAK_2) / (1.0 - GRADIENT_BREAK_2))
    return rgb, alpha


def _banded_color(d: float, low: RGB, med: RGB, high: RGB, ext: RGB):
    if d < BAND_EDGES[0]:
        rgb = low
    elif d < BAND_EDGES[1]:
        rgb = med
    elif d < BAND_EDGES[2]:
        rgb = high
    else:
        rgb = ext
    return rgb, BANDED_ALPHA


def build_color_lut(theme: Theme, banded: bool, steps: int = LUT_STEPS) -> ColorLUT:
    """Build a steps+1 entry LUT for the given theme and mode."""
    anchors = (
        parse_hex_to_rgb(theme.low),
        parse_hex_to_rgb(theme.medium),
        parse_hex_to_rgb(theme.high),
        parse_hex_to_rgb(theme.extreme),
    )
    color_fn = _banded_color if banded else _gradient_color

    css = []
    rgba = []
    for i in range(steps + 1):
        d = i / steps
        rgb, alpha = color_fn(d, *anchors)
        r, g, b = (_round_channel(c) for c in rgb)
        alpha = round(alpha, 2)
        css.append(f"rgba({r},{g},{b},{alpha:.2f})")
        rgba.append((r / 255.0, g / 255.0, b / 255.0, alpha))

    return ColorLUT(css=tuple(css), rgba=tuple(rgba), theme=theme, banded=banded)


class ColorLUTCache:
    """
    Rebuild-on-change holder for the active LUT.

    get() is called every frame; it only rebuilds when (theme, banded) differs
    from the cached key. The new table replaces the old one in a single
    reference swap, so readers holding the old LUT are unaffected.
    """

    def __init__(self, steps: int = LUT_STEPS):
        self.steps = steps
        self._lock = threading.Lock()
        # (key, lut) swapped as one reference
        self._entry: Optional[Tuple[Tuple[Theme, bool], ColorLUT]] = None
        self.rebuilds = 0

    @property
    def current(self) -> Optional[ColorLUT]:
        entry = self._entry
        return entry[1] if entry else None

    def get(self, theme: Theme, banded: bool) -> ColorLUT:
        key = (theme, banded)
        entry = self._entry
        if entry is not None and entry[0] == key:
            return entry[1]

        with self._lock:
            entry = self._entry
            if entry is None or entry[0] != key:
                entry = (key, build_color_lut(theme, banded, self.steps))
                self._entry = entry
                self.rebuilds += 1
                logger.debug(f"[COLOR_LUT] rebuilt LUT banded={banded} theme={theme}")
            return entry[1]
