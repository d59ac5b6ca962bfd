"""Shared fixtures for liqheat tests."""

import matplotlib
matplotlib.use('Agg')

import pytest

from liqheat.liq_levels import Candle


def make_candle(time, close, high=None, low=None, open_=None, volume=0.0):
    """Candle with sensible defaults around close."""
    return Candle(
        time=time,
        open=close if open_ is None else open_,
        high=close if high is None else high,
        low=close if low is None else low,
        close=close,
        volume=volume,
    )


@pytest.fixture
def candle_factory():
    return make_candle


@pytest.fixture
def wavy_candles():
    """60 candles oscillating around 100 with varying volume."""
    candles = []
    price = 100.0
    for i in range(60):
        step = (1.5 if (i // 5) % 2 == 0 else -1.3)
        close = price + step
        candles.append(Candle(
            time=1_700_000_000 + i * 3600,
            open=price,
            high=max(price, close) + 0.8,
            low=min(price, close) - 0.8,
            close=close,
            volume=100.0 + (i * 37) % 900,
        ))
        price = close
    return candles
