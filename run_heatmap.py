#!/usr/bin/env python3
"""
Run the liquidation density heatmap over a candle file.

Usage:
    python run_heatmap.py CANDLES [--leverage 3] [--output chart.png]

Examples:
    python run_heatmap.py btc_1d.json                     # Interactive window
    python run_heatmap.py btc_1d.json -o heatmap.png      # Render to PNG
    python run_heatmap.py btc_1h.csv --leverage 10 --gradient --global-norm
    python run_heatmap.py btc_1h.csv -l standard --grid-out density.npz
"""

import argparse
import logging
import sys
from typing import List, Optional, Sequence

import numpy as np

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from liqheat.candle_source import CandleSourceError, load_candles
from liqheat.heatmap_config import (
    DEFAULT_BUCKET_FRACTION,
    HeatmapConfigError,
    LeveragePreset,
    RenderSettings,
    THEME_PRESETS,
    get_theme,
    load_settings_from_env,
    parse_leverage,
    validate_leverage,
    validate_window,
)
from liqheat.liq_engine import derive_bucket_size, run
from liqheat.liq_levels import Candle
from liqheat.liq_snapshots import EngineResult, density_grid

logger = logging.getLogger("run_heatmap")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Liquidation density heatmap - simulate and render leveraged liquidation levels'
    )
    parser.add_argument('candles', help='Candle file (.json, .jsonl or .csv)')
    parser.add_argument(
        '--leverage', '-l', default=None,
        help=(
            'Leverage multiplier or preset name ('
            + ', '.join(f'{p.name.lower()}={p.value}' for p in LeveragePreset)
            + '; default: LIQHEAT_LEVERAGE or 3)'
        )
    )
    parser.add_argument(
        '--bucket-size', '-b', type=float, default=None,
        help='Price bucket width (default: last close * bucket fraction)'
    )
    parser.add_argument(
        '--bucket-fraction', type=float, default=None,
        help=f'Bucket width as a fraction of last close (default: {DEFAULT_BUCKET_FRACTION})'
    )
    parser.add_argument('--noise-filter', '-n', type=float, default=None, help='Noise floor in [0, 1)')
    parser.add_argument('--sensitivity', '-s', type=float, default=None, help='Gain applied after normalization')
    parser.add_argument(
        '--global-norm', action='store_true',
        help='Normalize against the global max instead of the visible window'
    )
    parser.add_argument('--gradient', action='store_true', help='Smooth gradient instead of banded colours')
    parser.add_argument('--theme', '-t', choices=sorted(THEME_PRESETS), default=None, help='Colour theme')
    parser.add_argument('--window', '-w', type=int, default=None, help='Show only the last N candles')
    parser.add_argument('--sorted', action='store_true', help='Sort buckets by price in each snapshot')
    parser.add_argument('--output', '-o', default=None, help='Write the chart to this image file')
    parser.add_argument(
        '--grid-out', default=None,
        help='Write the dense time x price density grid to this .npz file'
    )
    parser.add_argument('--top', type=int, default=5, help='Buckets listed in the summary (default: 5)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    return parser


def resolve_settings(args: argparse.Namespace, environ=None):
    """Merge environment defaults with command line overrides."""
    engine, render = load_settings_from_env(environ)

    leverage = parse_leverage(args.leverage) if args.leverage is not None else engine.leverage
    bucket_fraction = args.bucket_fraction if args.bucket_fraction is not None else engine.bucket_fraction
    bucket_size = args.bucket_size if args.bucket_size is not None else engine.bucket_size

    render = RenderSettings(
        noise_filter=args.noise_filter if args.noise_filter is not None else render.noise_filter,
        sensitivity=args.sensitivity if args.sensitivity is not None else render.sensitivity,
        local_normalization=False if args.global_norm else render.local_normalization,
        banded=False if args.gradient else render.banded,
        theme=get_theme(args.theme) if args.theme else render.theme,
    )
    return leverage, bucket_fraction, bucket_size, render


def build_summary(candles: Sequence[Candle], result: EngineResult, top: int = 5) -> Table:
    """Summary table for a finished run."""
    t = Table(title="Liquidation Density Run", box=box.SIMPLE, show_header=False, padding=(0, 1))
    t.add_column("Metric", style="cyan")
    t.add_column("Value", justify="right")

    t.add_row("Candles", str(len(candles)))
    t.add_row("Snapshots", str(len(result.snapshots)))
    t.add_row("Leverage", f"{result.leverage:g}x")
    t.add_row("Bucket size", f"{result.bucket_size:,.4f}")
    t.add_row("Global max density", f"{result.global_max_density:.4f}")

    if result.snapshots:
        last = result.snapshots[-1]
        t.add_row("Last close", f"{candles[-1].close:,.2f}")
        t.add_row("Buckets (last step)", str(len(last.buckets)))
        strongest = sorted(last.buckets, key=lambda b: b.density, reverse=True)[:top]
        for i, bucket in enumerate(strongest, 1):
            t.add_row(f"  #{i} bucket", f"{bucket.price_floor:,.2f}  density {bucket.density:.3f}")

    return t


def export_grid(result: EngineResult, path: str) -> None:
    """Save times, price floors and the density grid as arrays in one .npz file."""
    times, prices, grid = density_grid(result)
    np.savez(path, times=times, prices=prices, density=grid)
    logger.info(f"Saved {grid.shape[0]}x{grid.shape[1]} density grid to {path}")


def render_chart(
    candles: List[Candle],
    result: EngineResult,
    render_settings: RenderSettings,
    window: Optional[int],
    output: Optional[str],
    title: str
) -> None:
    import matplotlib
    if output:
        matplotlib.use('Agg')

    from liqheat.liq_plotter import HeatmapChart

    chart = HeatmapChart(candles, result, settings=render_settings, window=window, title=title)
    if output:
        chart.save(output)
        chart.close()
    else:
        chart.run()


def main(argv: Optional[Sequence[str]] = None, console: Console = None) -> int:
    args = build_parser().parse_args(argv)
    console = console or Console()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    try:
        leverage, bucket_fraction, bucket_size, render_settings = resolve_settings(args)
        window = validate_window(args.window)
        candles = load_candles(args.candles)
        if candles:
            if bucket_size is None:
                bucket_size = derive_bucket_size(candles, bucket_fraction)
            result = run(candles, leverage, bucket_size, sort_buckets=args.sorted)
        else:
            result = EngineResult.empty(bucket_size=bucket_size or 0.0, leverage=validate_leverage(leverage))
    except (HeatmapConfigError, CandleSourceError) as e:
        console.print(f"[red]Error: {escape(str(e))}[/]")
        return 2

    console.print(build_summary(candles, result, top=args.top))

    if args.grid_out:
        export_grid(result, args.grid_out)
        console.print(f"[green]Density grid written to {args.grid_out}[/]")

    if not candles:
        console.print("[yellow]No candles to render.[/]")
        return 0

    title = f"Liquidation Density ({leverage:g}x, bucket {result.bucket_size:,.2f})"
    render_chart(candles, result, render_settings, window, args.output, title)
    if args.output:
        console.print(f"[green]Chart written to {args.output}[/]")
    return 0


if __name__ == '__main__':
    sys.exit(main())
