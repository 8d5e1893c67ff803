"""Technical indicators (pure math, no I/O)."""

from core.indicators.moving_average import (
    CrossoverDetector,
    IndicatorState,
    RollingWindow,
    sma,
)

__all__ = [
    "CrossoverDetector",
    "IndicatorState",
    "RollingWindow",
    "sma",
]
