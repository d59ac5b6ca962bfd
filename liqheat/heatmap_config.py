"""
Heatmap configuration: defaults, leverage presets, colour themes and settings.

Engine settings are whatever changes the simulated levels, so changing one means a
full recompute. Render settings only change how the existing snapshots are drawn,
so they can change every frame.
"""

import logging
import math
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Mapping, Optional

logger = logging.getLogger(__name__)


class HeatmapConfigError(ValueError):
    """Invalid engine or render configuration (non-positive leverage, bucket size...)."""


# =============================================================================
# Defaults
# =============================================================================

DEFAULT_LEVERAGE = 3.0
DEFAULT_BUCKET_FRACTION = 0.0025   # Bucket size = last close * fraction
DEFAULT_NOISE_FILTER = 0.10
DEFAULT_SENSITIVITY = 1.5
DEFAULT_BANDED = True              # "cloud" mode: posterized bands
DEFAULT_LOCAL_NORMALIZATION = True

# Levels further than this (relative to close) are dropped from the active set
MAX_LEVEL_DISTANCE_PCT = 0.5

# Colour LUT resolution: LUT has LUT_STEPS + 1 entries
LUT_STEPS = 100


class LeveragePreset(Enum):
    """Common leverage choices."""
    SPOT = 1
    SAFE = 2
    LOW = 5
    MODERATE = 10
    STANDARD = 20
    HIGH = 50
    AGGRESSIVE = 75
    DEGEN = 100
    MAX = 125


@dataclass(frozen=True)
class Theme:
    """Four anchor colours (hex) for the density gradient / bands."""
    low: str
    medium: str
    high: str
    extreme: str


DEFAULT_THEME = Theme(
    low="#1e3a8a",      # Deep blue
    medium="#22c55e",   # Green
    high="#f97316",     # Orange
    extreme="#dc2626",  # Red
)

THEME_PRESETS: Dict[str, Theme] = {
    "mesh": DEFAULT_THEME,
    "thermal": Theme(low="#0f172a", medium="#7c3aed", high="#f59e0b", extreme="#fef08a"),
    "ocean": Theme(low="#082f49", medium="#0ea5e9", high="#67e8f9", extreme="#f0fdfa"),
    "mono": Theme(low="#27272a", medium="#71717a", high="#d4d4d8", extreme="#ffffff"),
}


def _is_positive(value: float) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value) and value > 0


def validate_leverage(leverage: float) -> float:
    if not _is_positive(leverage):
        raise HeatmapConfigError(f"leverage must be a finite number > 0, got {leverage!r}")
    return float(leverage)


def validate_bucket_size(bucket_size: float) -> float:
    if not _is_positive(bucket_size):
        raise HeatmapConfigError(f"bucket_size must be a finite number > 0, got {bucket_size!r}")
    return float(bucket_size)


def validate_window(window: Optional[int]) -> Optional[int]:
    """Visible candle count: None (all candles) or an int >= 1."""
    if window is None:
        return None
    if isinstance(window, bool) or not isinstance(window, int) or window < 1:
        raise HeatmapConfigError(f"window must be an integer >= 1, got {window!r}")
    return window


def parse_leverage(value) -> float:
    """
    Leverage from a number or a LeveragePreset name (case-insensitive).

    "20", 20 and "standard" all give 20.0.
    """
    if isinstance(value, str):
        name = value.strip().upper()
        if name in LeveragePreset.__members__:
            return float(LeveragePreset[name].value)
        try:
            value = float(value)
        except ValueError:
            presets = ", ".join(p.name.lower() for p in LeveragePreset)
            raise HeatmapConfigError(
                f"leverage must be a number or one of: {presets}; got {value!r}"
            )
    return validate_leverage(value)


@dataclass
class EngineSettings:
    """Parameters that require a full engine re-run when changed."""
    leverage: float = DEFAULT_LEVERAGE
    bucket_fraction: float = DEFAULT_BUCKET_FRACTION
    bucket_size: Optional[float] = None   # Explicit size overrides bucket_fraction
    max_distance_pct: float = MAX_LEVEL_DISTANCE_PCT

    def __post_init__(self):
        validate_leverage(self.leverage)
        if not _is_positive(self.bucket_fraction):
            raise HeatmapConfigError(
                f"bucket_fraction must be > 0, got {self.bucket_fraction!r}"
            )
        if self.bucket_size is not None:
            validate_bucket_size(self.bucket_size)
        if not _is_positive(self.max_distance_pct):
            raise HeatmapConfigError(
                f"max_distance_pct must be > 0, got {self.max_distance_pct!r}"
            )


@dataclass
class RenderSettings:
    """Per-frame visual parameters. Cheap to change, never trigger a re-run."""
    noise_filter: float = DEFAULT_NOISE_FILTER
    sensitivity: float = DEFAULT_SENSITIVITY
    local_normalization: bool = DEFAULT_LOCAL_NORMALIZATION
    banded: bool = DEFAULT_BANDED
    theme: Theme = field(default_factory=lambda: DEFAULT_THEME)

    def __post_init__(self):
        if not (isinstance(self.noise_filter, (int, float)) and 0 <= self.noise_filter < 1):
            raise HeatmapConfigError(
                f"noise_filter must be in [0, 1), got {self.noise_filter!r}"
            )
        if not _is_positive(self.sensitivity):
            raise HeatmapConfigError(
                f"sensitivity must be > 0, got {self.sensitivity!r}"
            )


# =============================================================================
# Environment overrides
# =============================================================================
# LIQHEAT_LEVERAGE (number or preset name), LIQHEAT_BUCKET_FRACTION, LIQHEAT_BUCKET_SIZE,
# LIQHEAT_NOISE_FILTER, LIQHEAT_SENSITIVITY, LIQHEAT_LOCAL_NORM (0/1),
# LIQHEAT_BANDED (0/1), LIQHEAT_THEME (preset name)
# =============================================================================

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_float(environ: Mapping[str, str], key: str, default):
    raw = environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise HeatmapConfigError(f"{key} must be a number, got {raw!r}")


def _env_leverage(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return parse_leverage(raw)
    except HeatmapConfigError as e:
        raise HeatmapConfigError(f"{key}: {e}")


def _env_bool(environ: Mapping[str, str], key: str, default: bool) -> bool:
    raw = environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUE_VALUES


def get_theme(name: str) -> Theme:
    """Look up a theme preset by name."""
    try:
        return THEME_PRESETS[name]
    except KeyError:
        raise HeatmapConfigError(
            f"Unknown theme {name!r}; available: {', '.join(sorted(THEME_PRESETS))}"
        )


def load_settings_from_env(environ: Mapping[str, str] = None):
    """
    Build (EngineSettings, RenderSettings) from LIQHEAT_* environment variables.

    Unset variables fall back to the module defaults.
    """
    if environ is None:
        environ = os.environ

    engine = EngineSettings(
        leverage=_env_leverage(environ, "LIQHEAT_LEVERAGE", DEFAULT_LEVERAGE),
        bucket_fraction=_env_float(environ, "LIQHEAT_BUCKET_FRACTION", DEFAULT_BUCKET_FRACTION),
        bucket_size=_env_float(environ, "LIQHEAT_BUCKET_SIZE", None),
    )
    theme_name = environ.get("LIQHEAT_THEME")
    render = RenderSettings(
        noise_filter=_env_float(environ, "LIQHEAT_NOISE_FILTER", DEFAULT_NOISE_FILTER),
        sensitivity=_env_float(environ, "LIQHEAT_SENSITIVITY", DEFAULT_SENSITIVITY),
        local_normalization=_env_bool(environ, "LIQHEAT_LOCAL_NORM", DEFAULT_LOCAL_NORMALIZATION),
        banded=_env_bool(environ, "LIQHEAT_BANDED", DEFAULT_BANDED),
        theme=get_theme(theme_name) if theme_name else DEFAULT_THEME,
    )
    logger.debug(f"Loaded settings from environment: {engine} {render}")
    return engine, render
