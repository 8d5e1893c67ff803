"""Signal pipeline: ticks -> candles -> crossovers -> confirmed signals.

This module is pure business logic with no I/O dependencies.
The chain is synchronous and keeps per-instrument state, so it must be
driven from a single task. It is used both by the live poll loop and by
the replay engine.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from core.candle_aggregator import CandleAggregator
from core.hysteresis import HysteresisFilter
from core.indicators import CrossoverDetector
from core.models import Candle, RawCrossoverEvent, Signal, StrategyConfig, Tick
from core.recent_keys import RecentKeys

logger = logging.getLogger(__name__)

SignalCallback = Callable[[Signal], None]
CandleCallback = Callable[[Candle], None]


@dataclass
class ProcessResult:
    """Everything produced while processing one input."""

    candles: list[Candle] = field(default_factory=list)
    crossovers: list[RawCrossoverEvent] = field(default_factory=list)
    signals: list[Signal] = field(default_factory=list)

    def extend(self, other: "ProcessResult") -> None:
        self.candles.extend(other.candles)
        self.crossovers.extend(other.crossovers)
        self.signals.extend(other.signals)


class SignalGenerator:
    """Composes the candle aggregator, crossover detector and hysteresis filter.

    Usage:
        generator = SignalGenerator(StrategyConfig(timeframe_s=300))
        generator.on_signal(my_callback)
        for tick in ticks:
            generator.process_tick(tick)
        generator.flush(now)
    """

    def __init__(self, config: StrategyConfig, dedup_size: int = 10_000):
        self.config = config
        self.aggregator = CandleAggregator(config.timeframe_s, config.flush_grace_s)
        self.detector = CrossoverDetector(config.short_period, config.long_period)
        self.filter = HysteresisFilter(config.hysteresis_pct, config.hysteresis_periods)

        # Same instrument and timestamp is one trade, live, warm-up or replay
        self._seen = RecentKeys(dedup_size)
        self.duplicates_dropped = 0

        self._signal_callbacks: list[SignalCallback] = []
        self._candle_callbacks: list[CandleCallback] = []

    def on_signal(self, callback: SignalCallback) -> None:
        """Register a callback for confirmed signals."""
        if callback not in self._signal_callbacks:
            self._signal_callbacks.append(callback)

    def off_signal(self, callback: SignalCallback) -> None:
        if callback in self._signal_callbacks:
            self._signal_callbacks.remove(callback)

    def on_candle(self, callback: CandleCallback) -> None:
        """Register a callback for closed candles."""
        if callback not in self._candle_callbacks:
            self._candle_callbacks.append(callback)

    def process_tick(self, tick: Tick) -> ProcessResult:
        """Feed one tick through the chain; a repeated tick is ignored."""
        if not self._accept(tick):
            return ProcessResult()
        candle = self.aggregator.ingest(tick)
        if candle is None:
            return ProcessResult()
        return self.process_candle(candle)

    def flush(self, now: datetime) -> ProcessResult:
        """Close candles whose flush timeout has expired and process them."""
        result = ProcessResult()
        for candle in self.aggregator.flush(now):
            result.extend(self.process_candle(candle))
        return result

    def process_candle(self, candle: Candle) -> ProcessResult:
        """Run a closed candle through the indicator and the filter."""
        result = ProcessResult(candles=[candle])
        self._notify(self._candle_callbacks, candle)

        event = self.detector.on_candle(candle)
        if event is not None:
            result.crossovers.append(event)
            signal = self.filter.on_raw_event(event)
        else:
            snapshot = self.detector.snapshot(candle.sec_code)
            signal = self.filter.on_bar(snapshot) if snapshot is not None else None

        if signal is not None:
            result.signals.append(signal)
            logger.info(
                "Signal %s %s confirmed at %s (id=%s)",
                signal.sec_code, signal.direction.value, signal.timestamp, signal.id,
            )
            self._notify(self._signal_callbacks, signal)

        return result

    def warmup(self, ticks: list[Tick]) -> int:
        """Prime the moving-average windows from historical ticks.

        Only the aggregator and the detector see these ticks: no candidate
        is opened and no signal is emitted, so trading starts on the next
        fresh crossover.

        Returns:
            Number of candles that were pushed into the windows
        """
        count = 0
        for tick in ticks:
            if not self._accept(tick):
                continue
            candle = self.aggregator.ingest(tick)
            if candle is not None:
                self.detector.on_candle(candle)
                count += 1
        logger.info("Warm-up complete: %d ticks, %d candles", len(ticks), count)
        return count

    def _accept(self, tick: Tick) -> bool:
        if self._seen.add(tick.key):
            return True
        self.duplicates_dropped += 1
        logger.debug("Duplicate tick %s at %s dropped", tick.sec_code, tick.timestamp)
        return False

    @staticmethod
    def _notify(callbacks: list, item) -> None:
        for callback in callbacks:
            try:
                callback(item)
            except Exception as e:
                logger.error(f"Pipeline callback error: {e}")
