"""Simple moving averages and crossover detection over candle closes.

All arithmetic is exact ``Decimal``: each window keeps a running sum and
comparisons cross-multiply sums by window lengths instead of dividing.
"""

import logging
from collections import deque
from dataclasses import dataclass
from decimal import Decimal

from core.models import (
    Candle,
    CrossDirection,
    IndicatorSnapshot,
    RawCrossoverEvent,
)

logger = logging.getLogger(__name__)


class RollingWindow:
    """Fixed-length window of values with a running sum.

    Inserting into a full window evicts the oldest value.
    """

    __slots__ = ("period", "_values", "_total")

    def __init__(self, period: int):
        if period < 1:
            raise ValueError(f"period must be >= 1, got {period}")
        self.period = period
        self._values: deque[Decimal] = deque(maxlen=period)
        self._total = Decimal("0")

    def push(self, value: Decimal) -> None:
        if len(self._values) == self.period:
            self._total -= self._values[0]
        self._values.append(value)
        self._total += value

    @property
    def total(self) -> Decimal:
        return self._total

    @property
    def is_full(self) -> bool:
        return len(self._values) == self.period

    def mean(self) -> Decimal | None:
        """Current average, or None while the window is filling."""
        if not self.is_full:
            return None
        return self._total / self.period

    def values(self) -> list[Decimal]:
        return list(self._values)

    def __len__(self) -> int:
        return len(self._values)


def sma(values: list[Decimal], period: int) -> list[Decimal | None]:
    """Simple moving average series.

    Args:
        values: Input series (e.g. closes)
        period: Window length

    Returns:
        Series of the same length, None until the window is full
    """
    window = RollingWindow(period)
    result: list[Decimal | None] = []
    for value in values:
        window.push(value)
        result.append(window.mean())
    return result


@dataclass(slots=True)
class IndicatorState:
    """Per-instrument windows and the sign of the last non-zero spread."""

    sec_code: str
    short: RollingWindow
    long: RollingWindow
    prev_sign: int = 0
    last_snapshot: IndicatorSnapshot | None = None

    @property
    def is_ready(self) -> bool:
        return self.short.is_full and self.long.is_full


class CrossoverDetector:
    """Emits a RawCrossoverEvent whenever ``sign(short - long)`` changes.

    The sign before the first full bar is zero, so the first bar with both
    windows full and a non-zero spread emits an event. A zero spread never
    emits and does not replace the remembered sign: touching the long
    average and moving away again on the same side is not a crossing.
    """

    def __init__(self, short_period: int, long_period: int):
        if long_period <= short_period:
            raise ValueError(
                f"long_period ({long_period}) must exceed short_period ({short_period})"
            )
        self.short_period = short_period
        self.long_period = long_period
        self._states: dict[str, IndicatorState] = {}

    def _get_state(self, sec_code: str) -> IndicatorState:
        state = self._states.get(sec_code)
        if state is None:
            state = IndicatorState(
                sec_code=sec_code,
                short=RollingWindow(self.short_period),
                long=RollingWindow(self.long_period),
            )
            self._states[sec_code] = state
        return state

    def on_candle(self, candle: Candle) -> RawCrossoverEvent | None:
        """Push a closed candle's close into both windows.

        Args:
            candle: Closed candle

        Returns:
            Crossover event if the spread changed sign on this bar
        """
        state = self._get_state(candle.sec_code)
        state.short.push(candle.close)
        state.long.push(candle.close)

        if not state.is_ready:
            return None

        snapshot = IndicatorSnapshot(
            sec_code=candle.sec_code,
            timestamp=candle.start,
            short_total=state.short.total,
            short_len=self.short_period,
            long_total=state.long.total,
            long_len=self.long_period,
        )
        state.last_snapshot = snapshot

        sign = snapshot.spread_sign()
        if sign == 0 or sign == state.prev_sign:
            return None

        state.prev_sign = sign
        direction = CrossDirection.UP if sign > 0 else CrossDirection.DOWN
        logger.debug(
            "%s crossover %s at %s: short=%s long=%s",
            candle.sec_code, direction.value, candle.start,
            snapshot.short_ma, snapshot.long_ma,
        )
        return RawCrossoverEvent(
            sec_code=candle.sec_code,
            direction=direction,
            timestamp=candle.start,
            snapshot=snapshot,
        )

    def snapshot(self, sec_code: str) -> IndicatorSnapshot | None:
        """Latest snapshot for an instrument, None until both windows are full."""
        state = self._states.get(sec_code)
        return state.last_snapshot if state else None

    def get_state(self, sec_code: str) -> IndicatorState | None:
        return self._states.get(sec_code)

    def reset(self, sec_code: str | None = None) -> None:
        if sec_code is not None:
            self._states.pop(sec_code, None)
        else:
            self._states.clear()
