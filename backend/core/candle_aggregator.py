"""Tick to candle aggregation.

Ticks are folded into candles aligned to the timeframe boundary:

    start = floor(timestamp / timeframe) * timeframe

A candle is closed when the first tick of a later bucket arrives, or by
``flush()`` once its end plus a grace period has passed without one.
Late ticks never reopen a closed candle. Buckets without any tick
produce no candle.

This module is pure business logic with no I/O dependencies.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from decimal import Decimal

from core.models import Candle, Tick

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CandleBuilder:
    """Open (still mutable) candle of one instrument."""

    sec_code: str
    timeframe_s: int
    start_epoch: int
    tz: tzinfo
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal
    tick_count: int = 1

    @classmethod
    def from_tick(cls, tick: Tick, timeframe_s: int, start_epoch: int) -> "CandleBuilder":
        return cls(
            sec_code=tick.sec_code,
            timeframe_s=timeframe_s,
            start_epoch=start_epoch,
            tz=tick.timestamp.tzinfo,
            open=tick.price,
            high=tick.price,
            low=tick.price,
            close=tick.price,
            volume=tick.volume,
        )

    @property
    def end_epoch(self) -> int:
        return self.start_epoch + self.timeframe_s

    def add(self, tick: Tick) -> None:
        if tick.price > self.high:
            self.high = tick.price
        if tick.price < self.low:
            self.low = tick.price
        self.close = tick.price
        self.volume += tick.volume
        self.tick_count += 1

    def freeze(self) -> Candle:
        start = datetime.fromtimestamp(self.start_epoch, tz=self.tz)
        return Candle(
            sec_code=self.sec_code,
            timeframe_s=self.timeframe_s,
            start=start,
            end=start + timedelta(seconds=self.timeframe_s),
            open=self.open,
            high=self.high,
            low=self.low,
            close=self.close,
            volume=self.volume,
            tick_count=self.tick_count,
        )


class CandleAggregator:
    """Builds candles of a single timeframe for any number of instruments.

    Usage:
        aggregator = CandleAggregator(timeframe_s=300)
        for tick in ticks:
            candle = aggregator.ingest(tick)
            if candle is not None:
                ...
    """

    def __init__(self, timeframe_s: int, flush_grace_s: float = 0.0):
        if timeframe_s <= 0:
            raise ValueError(f"timeframe must be positive, got {timeframe_s}")
        self.timeframe_s = timeframe_s
        self.flush_grace_s = flush_grace_s

        self._open: dict[str, CandleBuilder] = {}
        # End of the last closed candle per instrument (unix seconds)
        self._closed_until: dict[str, int] = {}

    def bucket_start(self, epoch: float) -> int:
        """Get the aligned bucket start for a unix timestamp."""
        return (int(epoch) // self.timeframe_s) * self.timeframe_s

    def ingest(self, tick: Tick) -> Candle | None:
        """Fold a tick into its instrument's open candle.

        Args:
            tick: Next tick of any instrument

        Returns:
            The previously open candle if this tick starts a later bucket,
            None otherwise
        """
        sec_code = tick.sec_code
        epoch = tick.epoch
        start = self.bucket_start(epoch)

        closed_until = self._closed_until.get(sec_code)
        if closed_until is not None and epoch < closed_until:
            logger.debug(
                "Dropping late tick for %s at %s (closed until %s)",
                sec_code, tick.timestamp, closed_until,
            )
            return None

        current = self._open.get(sec_code)
        if current is None:
            self._open[sec_code] = CandleBuilder.from_tick(tick, self.timeframe_s, start)
            return None

        if start == current.start_epoch:
            current.add(tick)
            return None

        if start < current.start_epoch:
            logger.debug(
                "Dropping out-of-order tick for %s at %s", sec_code, tick.timestamp
            )
            return None

        closed = current.freeze()
        self._closed_until[sec_code] = current.end_epoch
        self._open[sec_code] = CandleBuilder.from_tick(tick, self.timeframe_s, start)
        return closed

    def flush(self, now: datetime) -> list[Candle]:
        """Close open candles whose end plus grace period is not later than ``now``.

        Args:
            now: Current time (timezone-aware)

        Returns:
            Closed candles ordered by instrument
        """
        deadline = now.timestamp() - self.flush_grace_s
        closed: list[Candle] = []
        for sec_code in sorted(self._open):
            builder = self._open[sec_code]
            if builder.end_epoch <= deadline:
                closed.append(builder.freeze())
                self._closed_until[sec_code] = builder.end_epoch
                del self._open[sec_code]
        return closed

    def get_open(self, sec_code: str) -> Candle | None:
        """Get a snapshot of the still-open candle for an instrument."""
        builder = self._open.get(sec_code)
        return builder.freeze() if builder else None

    def reset(self, sec_code: str | None = None) -> None:
        """Reset aggregation state.

        Args:
            sec_code: Reset only this instrument, or all if None
        """
        if sec_code is not None:
            self._open.pop(sec_code, None)
            self._closed_until.pop(sec_code, None)
        else:
            self._open.clear()
            self._closed_until.clear()
