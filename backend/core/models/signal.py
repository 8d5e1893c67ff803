"""Crossover events and confirmed trading signals."""

import hashlib
from datetime import datetime
from decimal import Decimal, localcontext
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class CrossDirection(str, Enum):
    """Direction of a raw moving-average crossing."""

    UP = "up"  # short average moved above the long one
    DOWN = "down"

    @property
    def opposite(self) -> "CrossDirection":
        return CrossDirection.DOWN if self is CrossDirection.UP else CrossDirection.UP


class SignalDirection(str, Enum):
    """Desired position after a confirmed signal."""

    LONG = "long"
    SHORT = "short"
    FLAT = "flat"

    @classmethod
    def from_cross(cls, direction: CrossDirection) -> "SignalDirection":
        return cls.LONG if direction is CrossDirection.UP else cls.SHORT


class IndicatorSnapshot(BaseModel):
    """Both moving-average windows of one instrument after a closed candle.

    Holds the exact window sums so that comparisons never divide.
    """

    model_config = ConfigDict(frozen=True)

    sec_code: str
    timestamp: datetime  # start of the candle that produced the snapshot
    short_total: Decimal
    short_len: int = Field(ge=1)
    long_total: Decimal
    long_len: int = Field(ge=1)

    @property
    def short_ma(self) -> Decimal:
        with localcontext() as ctx:
            ctx.prec = 40
            return self.short_total / self.short_len

    @property
    def long_ma(self) -> Decimal:
        with localcontext() as ctx:
            ctx.prec = 40
            return self.long_total / self.long_len

    def _scaled_spread(self) -> Decimal:
        # (short - long) * short_len * long_len, exact for any price precision
        with localcontext() as ctx:
            ctx.prec = 60
            return self.short_total * self.long_len - self.long_total * self.short_len

    def spread_sign(self) -> int:
        """Sign of ``short - long``: 1, -1 or 0."""
        spread = self._scaled_spread()
        if spread > 0:
            return 1
        if spread < 0:
            return -1
        return 0

    def exceeds_band(self, percentage: Decimal) -> bool:
        """Check ``|short - long| / long >= percentage`` without division.

        Args:
            percentage: Band width as a fraction (0.0001 == 0.01%)

        Returns:
            True if the spread is at least the band width
        """
        with localcontext() as ctx:
            ctx.prec = 80
            band = abs(percentage * self.long_total * self.short_len)
            return abs(self._scaled_spread()) >= band


class RawCrossoverEvent(BaseModel):
    """Unfiltered change of the sign of ``short - long``."""

    model_config = ConfigDict(frozen=True)

    sec_code: str
    direction: CrossDirection
    timestamp: datetime
    snapshot: IndicatorSnapshot


def _generate_signal_id(sec_code: str, timestamp: datetime, direction: str, source: str) -> str:
    """Generate deterministic signal ID based on signal attributes.

    The same candle stream replayed twice yields the same IDs.
    """
    ts_str = timestamp.strftime("%Y%m%d%H%M%S%f%z")
    key = f"{sec_code}:{ts_str}:{direction}:{source}"
    return hashlib.sha256(key.encode()).hexdigest()[:32]


class Signal(BaseModel):
    """Confirmed desire to hold a given position in an instrument."""

    model_config = ConfigDict(frozen=True)

    id: str = ""  # Will be set in model_post_init
    sec_code: str
    direction: SignalDirection
    timestamp: datetime  # start of the candle that confirmed it
    source: str = "crossover"

    def model_post_init(self, __context) -> None:
        """Generate deterministic ID after model initialization."""
        if not self.id:
            object.__setattr__(
                self,
                "id",
                _generate_signal_id(
                    self.sec_code, self.timestamp, self.direction.value, self.source
                ),
            )
