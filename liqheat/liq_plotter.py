"""
Liquidation Density Heatmap Plotter

Draws engine snapshots as a time x price heatmap behind a candlestick chart.

ViewportRenderer is the per-frame path: it clips to the visible time/price window
before doing any work, normalizes each visible bucket, looks its colour up in the
prebuilt LUT and paints one rectangle per bucket. The drawing target is a
RenderSurface supplied by the host; MatplotlibSurface is the stock one.

HeatmapChart is a matplotlib host: candles, heatmap overlay, HUD with a
crosshair read-out, and an interactive redraw loop.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

import matplotlib.pyplot as plt
from matplotlib.lines import Line2D
from matplotlib.patches import Rectangle
from matplotlib.text import Text

from liqheat.color_lut import ColorLUT, ColorLUTCache, RGBA
from liqheat.heatmap_config import RenderSettings, validate_window
from liqheat.liq_levels import Candle
from liqheat.liq_normalizer import effective_max, lut_index, normalize_density, visible_indices
from liqheat.liq_snapshots import EngineResult, HeatmapBucket, HeatmapSnapshot

logger = logging.getLogger(__name__)

# Banded mode leaves a small gap around each cell (mesh look)
MESH_GAP_FRACTION = 0.125


@dataclass
class CrosshairData:
    """Cursor read-out for the bucket nearest to the pointer."""
    price: float
    density: float
    normalized_density: float


class RenderSurface:
    """
    Drawing target supplied by the host.

    Coordinate mappings may return None when the host can't provide them yet
    (e.g. the chart has not been laid out); the renderer then skips the frame.
    """

    # Pixel surfaces get whole-pixel cells at least 1px wide; data surfaces
    # use bar_spacing as-is
    pixel_units = True

    def visible_logical_range(self) -> Optional[Tuple[float, float]]:
        """Visible range in candle-index units (fractional allowed)."""
        raise NotImplementedError

    def visible_price_range(self) -> Optional[Tuple[float, float]]:
        """Visible (min_price, max_price)."""
        raise NotImplementedError

    def logical_to_x(self, index: int) -> Optional[float]:
        raise NotImplementedError

    def price_to_y(self, price: float) -> Optional[float]:
        raise NotImplementedError

    def bar_spacing(self) -> float:
        """Width of one time step in surface x units."""
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError

    def fill_rect(self, x: float, y: float, width: float, height: float, css: str, rgba: RGBA) -> None:
        raise NotImplementedError

    def finish(self) -> None:
        """Called once after all rectangles of a frame are painted."""


class MatplotlibSurface(RenderSurface):
    """
    RenderSurface over a matplotlib Axes in data coordinates.

    x is the candle index, y is price. Uses artist reuse: rectangles are kept in
    a pool and hidden when unused instead of being recreated every frame.
    """

    pixel_units = False

    def __init__(self, ax, zorder: float = 1.0):
        self.ax = ax
        self.zorder = zorder
        self._patches: List[Rectangle] = []
        self._used = 0

    def _is_laid_out(self) -> bool:
        bbox = self.ax.bbox
        return bbox.width > 0 and bbox.height > 0

    def visible_logical_range(self) -> Optional[Tuple[float, float]]:
        if not self._is_laid_out():
            return None
        x0, x1 = self.ax.get_xlim()
        return (min(x0, x1), max(x0, x1))

    def visible_price_range(self) -> Optional[Tuple[float, float]]:
        if not self._is_laid_out():
            return None
        y0, y1 = self.ax.get_ylim()
        return (min(y0, y1), max(y0, y1))

    def logical_to_x(self, index: int) -> Optional[float]:
        return float(index)

    def price_to_y(self, price: float) -> Optional[float]:
        return float(price)

    def bar_spacing(self) -> float:
        return 1.0

    def clear(self) -> None:
        self._used = 0

    def fill_rect(self, x: float, y: float, width: float, height: float, css: str, rgba: RGBA) -> None:
        if self._used >= len(self._patches):
            # add_artist (not add_patch) so the pool never affects autoscaling
            rect = Rectangle((0, 0), 1, 1, linewidth=0, zorder=self.zorder)
            self.ax.add_artist(rect)
            self._patches.append(rect)

        rect = self._patches[self._used]
        rect.set_xy((x, y))
        rect.set_width(width)
        rect.set_height(height)
        rect.set_facecolor(rgba)
        rect.set_visible(True)
        self._used += 1

    def finish(self) -> None:
        for rect in self._patches[self._used:]:
            rect.set_visible(False)

    @property
    def painted(self) -> int:
        return self._used

    @property
    def pool_size(self) -> int:
        return len(self._patches)


class ViewportRenderer:
    """Renders the visible part of a snapshot sequence onto a RenderSurface."""

    def __init__(self, surface: RenderSurface):
        self.surface = surface
        self.frames_rendered = 0
        self.frames_skipped = 0

    def render(
        self,
        snapshots: Sequence[HeatmapSnapshot],
        global_max_density: float,
        lut: ColorLUT,
        bucket_size: float,
        noise_filter: float,
        sensitivity: float,
        local_normalization: bool,
        time_range: Optional[Tuple[float, float]] = None,
        price_range: Optional[Tuple[float, float]] = None,
        banded: Optional[bool] = None
    ) -> int:
        """
        Paint one frame. Read-only with respect to snapshots.

        Args:
            time_range: Visible logical range; defaults to the surface's
            price_range: Visible price range; defaults to the surface's
            banded: Mesh gap between cells; defaults to the LUT mode

        Returns:
            Number of rectangles painted (0 for a skipped frame)
        """
        surface = self.surface
        surface.clear()

        if not snapshots:
            surface.finish()
            return 0

        if time_range is None:
            time_range = surface.visible_logical_range()
        if price_range is None:
            price_range = surface.visible_price_range()
        if time_range is None or price_range is None:
            logger.debug("[HEATMAP_RENDER] surface has no visible range yet, skipping frame")
            self.frames_skipped += 1
            surface.finish()
            return 0

        price_min, price_max = min(price_range), max(price_range)
        max_density = effective_max(
            snapshots, global_max_density, local_normalization,
            time_range, (price_min, price_max)
        )

        if banded is None:
            banded = lut.banded

        spacing = surface.bar_spacing()
        rect_width = max(1, math.ceil(spacing)) if surface.pixel_units else spacing
        if banded:
            cell_width = rect_width * (1 - MESH_GAP_FRACTION)
        else:
            cell_width = rect_width
        steps = lut.steps
        painted = 0

        for i in visible_indices(time_range, len(snapshots)):
            x = surface.logical_to_x(i)
            if x is None:
                continue
            left = x - rect_width / 2

            for bucket in snapshots[i].buckets:
                price = bucket.price_floor
                if price < price_min or price > price_max:
                    continue

                level = normalize_density(bucket.density, max_density, noise_filter, sensitivity)
                if level is None:
                    continue

                y0 = surface.price_to_y(price)
                y1 = surface.price_to_y(price + bucket_size)
                if y0 is None or y1 is None:
                    continue
                top = min(y0, y1)
                height = abs(y1 - y0)
                if banded:
                    height *= (1 - MESH_GAP_FRACTION)

                idx = lut_index(level, steps)
                surface.fill_rect(left, top, cell_width, height, lut.css[idx], lut.rgba[idx])
                painted += 1

        surface.finish()
        self.frames_rendered += 1
        return painted


def render(
    snapshots: Sequence[HeatmapSnapshot],
    global_max_density: float,
    visible_time_range: Optional[Tuple[float, float]],
    visible_price_range: Optional[Tuple[float, float]],
    noise_filter: float,
    sensitivity: float,
    local_normalization: bool,
    lut: ColorLUT,
    surface: RenderSurface,
    bucket_size: float,
    banded: Optional[bool] = None
) -> int:
    """One-shot render pass; see ViewportRenderer.render."""
    return ViewportRenderer(surface).render(
        snapshots,
        global_max_density,
        lut,
        bucket_size,
        noise_filter,
        sensitivity,
        local_normalization,
        time_range=visible_time_range,
        price_range=visible_price_range,
        banded=banded,
    )


def nearest_bucket(snapshot: HeatmapSnapshot, target_price: float) -> Optional[HeatmapBucket]:
    """Bucket with minimal |price_floor - target_price|; first one wins a tie."""
    closest = None
    min_diff = math.inf
    for bucket in snapshot.buckets:
        diff = abs(bucket.price_floor - target_price)
        if diff < min_diff:
            min_diff = diff
            closest = bucket
    return closest


def crosshair_readout(result: EngineResult, index: int, price: Optional[float]) -> Optional[CrosshairData]:
    """
    Read-out for a cursor at snapshot index / price.

    Normalized against the global max so the read-out stays stable while the
    viewport (and therefore any local max) changes.
    """
    if price is None or index < 0 or index >= len(result.snapshots):
        return None

    bucket = nearest_bucket(result.snapshots[index], price)
    if bucket is None:
        return None

    gmax = result.global_max_density
    return CrosshairData(
        price=bucket.price_floor,
        density=bucket.density,
        normalized_density=bucket.density / gmax if gmax > 0 else 0.0,
    )


class HeatmapChart:
    """
    Candlestick chart with the liquidation density heatmap underneath.

    Uses artist reuse for efficient updates - no clearing/replotting.
    """

    # Colors
    COLOR_UP = '#10b981'
    COLOR_DOWN = '#ef4444'
    COLOR_BG = '#050505'
    COLOR_GRID = '#1f1f23'
    COLOR_TEXT = '#a1a1aa'

    def __init__(
        self,
        candles: Sequence[Candle],
        result: EngineResult,
        settings: RenderSettings = None,
        window: Optional[int] = None,
        title: str = "Liquidation Density"
    ):
        self.candles = list(candles)
        self.result = result
        self.settings = settings or RenderSettings()
        self.window = validate_window(window)
        self.title = title

        self.lut_cache = ColorLUTCache()
        self._hover: Optional[CrosshairData] = None

        plt.style.use('dark_background')
        self.fig, self.ax = plt.subplots(figsize=(14, 8))
        self.fig.patch.set_facecolor(self.COLOR_BG)
        self.ax.set_facecolor(self.COLOR_BG)
        self.ax.grid(True, alpha=0.3, color=self.COLOR_GRID)
        self.ax.set_ylabel('Price', color=self.COLOR_TEXT)
        self.ax.tick_params(colors=self.COLOR_TEXT)

        self.surface = MatplotlibSurface(self.ax, zorder=1.0)
        self.renderer = ViewportRenderer(self.surface)

        self.candle_bodies: List[Rectangle] = []
        self.candle_wicks: List[Line2D] = []

        self.hud_mode: Optional[Text] = None
        self.hud_hover: Optional[Text] = None
        self._init_hud()

        self._draw_candles()
        self._set_initial_view()
        self.fig.canvas.mpl_connect('motion_notify_event', self._on_mouse_move)

    def _init_hud(self):
        """Initialize HUD text elements."""
        self.hud_mode = self.ax.text(
            0.02, 0.98, '', transform=self.ax.transAxes,
            fontsize=10, fontweight='bold', color=self.COLOR_TEXT,
            verticalalignment='top', fontfamily='monospace', zorder=5
        )
        self.hud_hover = self.ax.text(
            0.02, 0.93, '', transform=self.ax.transAxes,
            fontsize=9, color='white',
            verticalalignment='top', fontfamily='monospace', zorder=5
        )

    def _draw_candles(self):
        """Draw one body + wick per candle; x is the candle index."""
        width = 0.6
        for i, candle in enumerate(self.candles):
            color = self.COLOR_UP if candle.close >= candle.open else self.COLOR_DOWN
            body_bottom = min(candle.open, candle.close)
            body_height = max(abs(candle.close - candle.open), candle.close * 1e-4)

            rect = Rectangle(
                (i - width / 2, body_bottom), width, body_height,
                facecolor=color, edgecolor=color, linewidth=0.5, zorder=3
            )
            self.ax.add_patch(rect)
            self.candle_bodies.append(rect)

            wick, = self.ax.plot([i, i], [candle.low, candle.high], color=color, linewidth=1, zorder=2)
            self.candle_wicks.append(wick)

    def _set_initial_view(self):
        """Fit x to the window of latest candles and y to their range."""
        n = len(self.candles)
        if n == 0:
            return

        start = min(max(0, n - self.window), n - 1) if self.window else 0
        visible = self.candles[start:]
        y_min = min(c.low for c in visible)
        y_max = max(c.high for c in visible)
        padding = (y_max - y_min) * 0.15 or y_max * 0.01
        self.ax.set_xlim(start - 1, n)
        self.ax.set_ylim(y_min - padding, y_max + padding)

        ticks = list(range(start, n, max(1, (n - start) // 8)))
        self.ax.set_xticks(ticks)
        self.ax.set_xticklabels([self._format_time(self.candles[i].time) for i in ticks])

    @staticmethod
    def _format_time(ts: float) -> str:
        return datetime.fromtimestamp(ts, tz=timezone.utc).strftime('%Y-%m-%d %H:%M')

    def _on_mouse_move(self, event):
        if event.inaxes is not self.ax or event.xdata is None or event.ydata is None:
            self._hover = None
            return
        self._hover = crosshair_readout(self.result, int(round(event.xdata)), event.ydata)

    def _update_hud(self):
        mode = 'LOCAL DENSITY' if self.settings.local_normalization else 'GLOBAL DENSITY'
        style = 'BANDED' if self.settings.banded else 'GRADIENT'
        self.hud_mode.set_text(f'{mode} | {style} | lev {self.result.leverage:g}x')

        if self._hover:
            h = self._hover
            self.hud_hover.set_text(
                f'Price {h.price:,.2f}  Intensity {h.density:.1f}  ({h.normalized_density:.0%})'
            )
        else:
            self.hud_hover.set_text('')

    def update(self) -> int:
        """Redraw one frame. The LUT is only rebuilt when theme/mode changed."""
        s = self.settings
        lut = self.lut_cache.get(s.theme, s.banded)
        painted = self.renderer.render(
            self.result.snapshots,
            self.result.global_max_density,
            lut,
            self.result.bucket_size,
            s.noise_filter,
            s.sensitivity,
            s.local_normalization,
        )
        self._update_hud()
        self.ax.set_title(self.title, color=self.COLOR_TEXT, fontsize=12)
        self.fig.canvas.draw_idle()
        return painted

    def save(self, path: str, dpi: int = 120) -> None:
        """Render a frame and write it to an image file."""
        self.fig.canvas.draw()
        self.update()
        self.fig.savefig(path, dpi=dpi, facecolor=self.fig.get_facecolor())
        logger.info(f"[HEATMAP_RENDER] saved chart to {path}")

    def run(self, interval: float = 1 / 30):
        """Interactive loop: redraw every frame until the window is closed."""
        plt.ion()
        plt.show(block=False)

        try:
            while plt.fignum_exists(self.fig.number):
                self.update()
                self.fig.canvas.flush_events()
                plt.pause(interval)
        except KeyboardInterrupt:
            logger.info("Shutting down...")
        finally:
            plt.close(self.fig)

    def close(self):
        plt.close(self.fig)
