"""Strategy and order configuration models."""

from __future__ import annotations

import re
from decimal import Decimal

from pydantic import BaseModel, Field, model_validator

_TIMEFRAME_RE = re.compile(r"^\s*(\d+)\s*([smh]?)\s*$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "": 60}


def parse_timeframe(value: int | str) -> int:
    """Convert a timeframe to seconds.

    Plain integers are minutes, as in the terminal's own chart settings.
    Strings may carry a unit suffix: ``"30s"``, ``"5m"``, ``"1h"``.

    Raises:
        ValueError: If the value is not a positive timeframe
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid timeframe: {value!r}")
    if isinstance(value, int):
        seconds = value * 60
    else:
        match = _TIMEFRAME_RE.match(str(value))
        if not match:
            raise ValueError(f"invalid timeframe: {value!r}")
        seconds = int(match.group(1)) * _UNIT_SECONDS[match.group(2)]
    if seconds <= 0:
        raise ValueError(f"timeframe must be positive, got {value!r}")
    return seconds


class StrategyConfig(BaseModel):
    """Crossover and hysteresis parameters."""

    timeframe_s: int = Field(default=300, gt=0)
    short_period: int = Field(default=8, ge=1)
    long_period: int = Field(default=21, ge=2)

    # Band width as a fraction of the long average (0.0001 == 0.01%)
    hysteresis_pct: Decimal = Field(default=Decimal("0.0001"), ge=0)
    # Candles a candidate must hold after the crossing candle
    hysteresis_periods: int = Field(default=1, ge=0)

    # Open candles are closed this long after their end without a new tick
    flush_grace_s: float = Field(default=5.0, ge=0)

    @model_validator(mode="after")
    def _validate(self):
        if self.long_period <= self.short_period:
            raise ValueError(
                f"long period ({self.long_period}) must be greater than "
                f"short period ({self.short_period})"
            )
        return self


class OrderConfig(BaseModel):
    """Order sizing and submission parameters."""

    class_code: str
    account: str = ""
    client_code: str = ""
    quantity: int = Field(default=1, ge=1)  # lots per entry
    allow_short: bool = True
    timeout_s: float = Field(default=30.0, gt=0)
    trans_id_start: int = Field(default=1, ge=1)
