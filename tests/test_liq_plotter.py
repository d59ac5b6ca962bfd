"""
Tests for the viewport renderer, nearest-bucket query and matplotlib host.
"""

import matplotlib.pyplot as plt
import pytest

from liqheat.color_lut import build_color_lut
from liqheat.heatmap_config import DEFAULT_THEME, HeatmapConfigError, RenderSettings
from liqheat.liq_engine import run
from liqheat.liq_plotter import (
    HeatmapChart,
    MatplotlibSurface,
    RenderSurface,
    ViewportRenderer,
    crosshair_readout,
    nearest_bucket,
    render,
)
from liqheat.liq_snapshots import EngineResult, HeatmapBucket, HeatmapSnapshot


class RecordingSurface(RenderSurface):
    """In-memory surface: identity mapping, records every rectangle."""

    def __init__(self, time_range=(0.0, 10.0), price_range=(0.0, 1000.0), mapping=True):
        self.time_range = time_range
        self.price_range = price_range
        self.mapping = mapping
        self.rects = []
        self.clears = 0
        self.finishes = 0

    def visible_logical_range(self):
        return self.time_range

    def visible_price_range(self):
        return self.price_range

    def logical_to_x(self, index):
        return float(index) * 10 if self.mapping else None

    def price_to_y(self, price):
        # Pixel-style: y grows downward
        return 1000.0 - price if self.mapping else None

    def bar_spacing(self):
        return 10.0

    def clear(self):
        self.clears += 1
        self.rects = []

    def fill_rect(self, x, y, width, height, css, rgba):
        self.rects.append((x, y, width, height, css))

    def finish(self):
        self.finishes += 1


@pytest.fixture
def snapshots():
    return (
        HeatmapSnapshot(time=0, buckets=(HeatmapBucket(100.0, 10.0), HeatmapBucket(500.0, 0.5))),
        HeatmapSnapshot(time=1, buckets=(HeatmapBucket(100.0, 5.0), HeatmapBucket(900.0, 8.0))),
        HeatmapSnapshot(time=2, buckets=(HeatmapBucket(200.0, 2.0),)),
    )


@pytest.fixture
def gradient_lut():
    return build_color_lut(DEFAULT_THEME, banded=False)


def _render(surface, snapshots, lut, noise=0.1, sensitivity=1.0, local=False, gmax=10.0):
    return ViewportRenderer(surface).render(snapshots, gmax, lut, 10.0, noise, sensitivity, local)


class TestViewportRenderer:
    """Clipping, gating and LUT lookups for one frame."""

    def test_paints_visible_buckets(self, snapshots, gradient_lut):
        surface = RecordingSurface()
        painted = _render(surface, snapshots, gradient_lut)

        # 500.0 (0.05 of max) falls under the noise filter
        assert painted == 4
        assert len(surface.rects) == 4
        assert surface.finishes == 1

    def test_time_clipping(self, snapshots, gradient_lut):
        surface = RecordingSurface(time_range=(1.2, 1.8))
        _render(surface, snapshots, gradient_lut)

        xs = sorted({r[0] for r in surface.rects})
        # Indices 1 and 2 (floor/ceil of the range), each centred on x = 10*i
        assert xs == [5.0, 15.0]

    def test_price_clipping(self, snapshots, gradient_lut):
        surface = RecordingSurface(price_range=(150.0, 950.0))
        painted = _render(surface, snapshots, gradient_lut)
        assert painted == 2

    def test_rectangle_geometry(self, gradient_lut):
        snaps = (HeatmapSnapshot(time=0, buckets=(HeatmapBucket(100.0, 10.0),)),)
        surface = RecordingSurface()
        _render(surface, snaps, gradient_lut)

        x, y, width, height, css = surface.rects[0]
        assert x == -5.0
        assert width == 10
        assert y == pytest.approx(890.0)     # top edge of bucket 100..110
        assert height == pytest.approx(10.0)
        assert css == gradient_lut[100]

    def test_colour_from_lut(self, snapshots, gradient_lut):
        surface = RecordingSurface(time_range=(2, 2))
        _render(surface, snapshots, gradient_lut, sensitivity=1.0)
        # density 2 / max 10 -> 0.2 -> LUT[20]
        assert surface.rects[0][4] == gradient_lut[20]

    def test_local_normalization_rescales(self, snapshots, gradient_lut):
        surface = RecordingSurface(time_range=(2, 2))
        _render(surface, snapshots, gradient_lut, local=True)
        # The only visible bucket becomes the max
        assert surface.rects[0][4] == gradient_lut[100]

    def test_banded_mode_leaves_mesh_gap(self, gradient_lut):
        banded = build_color_lut(DEFAULT_THEME, banded=True)
        snaps = (HeatmapSnapshot(time=0, buckets=(HeatmapBucket(100.0, 10.0),)),)
        surface = RecordingSurface()
        _render(surface, snaps, banded)

        _, _, width, height, _ = surface.rects[0]
        assert width < 10
        assert height < 10.0

    def test_no_mapping_is_noop(self, snapshots, gradient_lut):
        surface = RecordingSurface(mapping=False)
        assert _render(surface, snapshots, gradient_lut) == 0
        assert surface.rects == []

    def test_no_visible_range_skips_frame(self, snapshots, gradient_lut):
        surface = RecordingSurface(time_range=None)
        renderer = ViewportRenderer(surface)
        painted = renderer.render(snapshots, 10.0, gradient_lut, 10.0, 0.1, 1.0, False)

        assert painted == 0
        assert renderer.frames_skipped == 1
        assert renderer.frames_rendered == 0

    def test_empty_snapshots(self, gradient_lut):
        surface = RecordingSurface()
        assert _render(surface, (), gradient_lut) == 0

    def test_zero_global_max_draws_nothing(self, snapshots, gradient_lut):
        surface = RecordingSurface()
        assert _render(surface, snapshots, gradient_lut, gmax=0.0) == 0

    def test_render_is_read_only(self, snapshots, gradient_lut):
        before = tuple(snapshots)
        surface = RecordingSurface()
        first = _render(surface, snapshots, gradient_lut)
        second = _render(surface, snapshots, gradient_lut)

        assert snapshots == before
        assert first == second

    def test_module_level_render(self, snapshots, gradient_lut):
        surface = RecordingSurface()
        painted = render(
            snapshots, 10.0, (0, 2), (0, 1000), 0.1, 1.0, False,
            gradient_lut, surface, 10.0
        )
        assert painted == 4

    def test_data_surface_uses_raw_spacing(self, gradient_lut):
        """Sub-unit spacing in data units is not rounded up to a whole pixel."""
        class DataSurface(RecordingSurface):
            pixel_units = False

            def bar_spacing(self):
                return 0.25

        snaps = (HeatmapSnapshot(time=0, buckets=(HeatmapBucket(100.0, 10.0),)),)
        surface = DataSurface()
        _render(surface, snaps, gradient_lut)

        x, _, width, _, _ = surface.rects[0]
        assert width == 0.25
        assert x == pytest.approx(-0.125)

    def test_explicit_banded_overrides_lut_mode(self, snapshots, gradient_lut):
        surface = RecordingSurface()
        render(
            snapshots, 10.0, (0, 0), (0, 1000), 0.1, 1.0, False,
            gradient_lut, surface, 10.0, banded=True
        )
        assert surface.rects[0][2] == pytest.approx(8.75)


class TestNearestBucket:

    def test_closest_price(self):
        snap = HeatmapSnapshot(time=0, buckets=(
            HeatmapBucket(100.0, 1.0), HeatmapBucket(200.0, 2.0), HeatmapBucket(300.0, 3.0)
        ))
        assert nearest_bucket(snap, 240.0).price_floor == 200.0
        assert nearest_bucket(snap, 10_000.0).price_floor == 300.0

    def test_tie_returns_first(self):
        snap = HeatmapSnapshot(time=0, buckets=(HeatmapBucket(200.0, 1.0), HeatmapBucket(100.0, 2.0)))
        assert nearest_bucket(snap, 150.0).price_floor == 200.0

    def test_empty_snapshot(self):
        assert nearest_bucket(HeatmapSnapshot(time=0, buckets=()), 100.0) is None


class TestCrosshairReadout:

    @pytest.fixture
    def result(self, snapshots):
        return EngineResult(snapshots=snapshots, global_max_density=10.0, bucket_size=10.0, leverage=3.0)

    def test_readout(self, result):
        data = crosshair_readout(result, 1, 880.0)
        assert data.price == 900.0
        assert data.density == 8.0
        assert data.normalized_density == pytest.approx(0.8)

    def test_out_of_range_index(self, result):
        assert crosshair_readout(result, 3, 100.0) is None
        assert crosshair_readout(result, -1, 100.0) is None

    def test_missing_price(self, result):
        assert crosshair_readout(result, 0, None) is None

    def test_zero_global_max(self, snapshots):
        result = EngineResult(snapshots=snapshots, global_max_density=0.0)
        assert crosshair_readout(result, 0, 100.0).normalized_density == 0.0


class TestMatplotlibSurface:
    """Artist reuse on a real Axes."""

    @pytest.fixture
    def ax(self):
        fig, ax = plt.subplots()
        ax.set_xlim(-1, 3)
        ax.set_ylim(0, 1000)
        yield ax
        plt.close(fig)

    def test_pool_is_reused(self, ax, snapshots, gradient_lut):
        surface = MatplotlibSurface(ax)
        renderer = ViewportRenderer(surface)
        first = renderer.render(snapshots, 10.0, gradient_lut, 10.0, 0.1, 1.0, False)
        pool = surface.pool_size
        renderer.render(snapshots, 10.0, gradient_lut, 10.0, 0.1, 1.0, False)

        assert first == 4
        assert surface.pool_size == pool

    def test_unused_patches_hidden(self, ax, snapshots, gradient_lut):
        surface = MatplotlibSurface(ax)
        renderer = ViewportRenderer(surface)
        renderer.render(snapshots, 10.0, gradient_lut, 10.0, 0.1, 1.0, False)
        renderer.render(snapshots, 10.0, gradient_lut, 10.0, 0.1, 1.0, False, time_range=(2, 2))

        visible = [p for p in surface._patches if p.get_visible()]
        assert len(visible) == surface.painted == 1

    def test_limits_untouched(self, ax, snapshots, gradient_lut):
        surface = MatplotlibSurface(ax)
        ViewportRenderer(surface).render(snapshots, 10.0, gradient_lut, 10.0, 0.0, 1.0, False)
        assert ax.get_xlim() == (-1, 3)
        assert ax.get_ylim() == (0, 1000)


class TestHeatmapChart:
    """Matplotlib host wiring."""

    def test_update_and_save(self, wavy_candles, tmp_path):
        result = run(wavy_candles, leverage=100, bucket_size=0.5)
        chart = HeatmapChart(wavy_candles, result, settings=RenderSettings(noise_filter=0.0), window=30)
        try:
            painted = chart.update()
            chart.update()
            out = tmp_path / "chart.png"
            chart.save(str(out))
        finally:
            chart.close()

        assert painted > 0
        assert out.exists() and out.stat().st_size > 0
        assert chart.lut_cache.rebuilds == 1

    def test_mode_change_rebuilds_lut_once(self, wavy_candles):
        result = run(wavy_candles, leverage=100, bucket_size=0.5)
        chart = HeatmapChart(wavy_candles, result)
        try:
            chart.update()
            chart.settings = RenderSettings(banded=False)
            chart.update()
            chart.update()
        finally:
            chart.close()

        assert chart.lut_cache.rebuilds == 2

    @pytest.mark.parametrize("window", [-3, 0])
    def test_invalid_window_rejected(self, wavy_candles, window):
        result = run(wavy_candles, leverage=100, bucket_size=0.5)
        with pytest.raises(HeatmapConfigError, match="window"):
            HeatmapChart(wavy_candles, result, window=window)

    def test_window_longer_than_series_shows_all(self, wavy_candles):
        result = run(wavy_candles, leverage=100, bucket_size=0.5)
        chart = HeatmapChart(wavy_candles, result, window=1000)
        try:
            assert chart.ax.get_xlim() == (-1, len(wavy_candles))
        finally:
            chart.close()

    def test_single_candle_window(self, wavy_candles):
        result = run(wavy_candles, leverage=100, bucket_size=0.5)
        chart = HeatmapChart(wavy_candles, result, window=1)
        try:
            assert chart.ax.get_xlim() == (len(wavy_candles) - 2, len(wavy_candles))
            assert chart.update() >= 0
        finally:
            chart.close()
