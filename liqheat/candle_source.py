"""
Candle loading from local files.

Accepts the Binance klines layout ([open_time_ms, open, high, low, close, volume,
...] with numeric strings) as well as plain objects / CSV rows with
time, open, high, low, close, volume columns. Output is always ascending by time.
"""

import csv
import json
import logging
import math
import os
from typing import Any, Iterable, List

from liqheat.liq_levels import Candle

logger = logging.getLogger(__name__)

CANDLE_FIELDS = ("time", "open", "high", "low", "close", "volume")

# Kline open times above this are milliseconds
_MS_THRESHOLD = 1e11


class CandleSourceError(ValueError):
    """Malformed or unreadable candle input."""


def _to_float(value: Any, field_name: str, row_no: int) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise CandleSourceError(f"row {row_no}: {field_name}={value!r} is not a number")
    if not math.isfinite(result):
        raise CandleSourceError(f"row {row_no}: {field_name}={value!r} is not finite")
    return result


def _normalize_time(ts: float) -> float:
    return ts / 1000.0 if ts > _MS_THRESHOLD else ts


def _row_to_candle(row: Any, row_no: int) -> Candle:
    if isinstance(row, (list, tuple)):
        if len(row) < 6:
            raise CandleSourceError(f"row {row_no}: kline has {len(row)} fields, need at least 6")
        values = [_to_float(row[i], CANDLE_FIELDS[i], row_no) for i in range(6)]
    elif isinstance(row, dict):
        missing = [f for f in CANDLE_FIELDS if f not in row]
        if missing:
            raise CandleSourceError(f"row {row_no}: missing fields {missing}")
        values = [_to_float(row[f], f, row_no) for f in CANDLE_FIELDS]
    else:
        raise CandleSourceError(f"row {row_no}: unsupported row type {type(row).__name__}")

    ts, o, h, l, c, v = values
    if v < 0:
        raise CandleSourceError(f"row {row_no}: negative volume {v}")
    return Candle(time=_normalize_time(ts), open=o, high=h, low=l, close=c, volume=v)


def parse_kline_rows(rows: Iterable[Any]) -> List[Candle]:
    """Convert kline arrays or candle dicts into Candles sorted by time."""
    candles = [_row_to_candle(row, i) for i, row in enumerate(rows)]
    candles.sort(key=lambda c: c.time)
    return candles


def _read_json(path: str) -> List[Any]:
    with open(path, 'r') as f:
        text = f.read()

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        # JSONL: one candle per line
        data = []
        for line_no, line in enumerate(text.splitlines()):
            line = line.strip()
            if not line:
                continue
            try:
                data.append(json.loads(line))
            except json.JSONDecodeError as e:
                raise CandleSourceError(f"{path}:{line_no + 1}: invalid JSON: {e}")

    if isinstance(data, dict):
        if "candles" in data:
            data = data["candles"]
        elif "data" in data:
            data = data["data"]
        else:
            # Single candle object, e.g. a one-line JSONL file
            data = [data]
    if not isinstance(data, list):
        raise CandleSourceError(f"{path}: expected a list of candles")
    if data and not isinstance(data[0], (list, tuple, dict)):
        # Single kline array
        data = [data]
    return data


def _read_csv(path: str) -> List[dict]:
    with open(path, 'r', newline='') as f:
        reader = csv.DictReader(f)
        if reader.fieldnames is None:
            return []
        rows = []
        for row in reader:
            rows.append({k.strip().lower(): v for k, v in row.items() if k is not None})
        return rows


def load_candles(path: str) -> List[Candle]:
    """
    Load candles from a .json / .jsonl / .csv file.

    Raises:
        CandleSourceError: file missing or rows malformed
    """
    if not os.path.exists(path):
        raise CandleSourceError(f"candle file not found: {path}")

    ext = os.path.splitext(path)[1].lower()
    rows = _read_csv(path) if ext == ".csv" else _read_json(path)
    candles = parse_kline_rows(rows)

    logger.info(f"Loaded {len(candles)} candles from {path}")
    return candles
