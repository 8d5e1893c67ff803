"""Hysteresis filter turning raw crossovers into confirmed signals.

A raw crossover becomes a candidate only if, at the crossing candle,

    |short - long| / long >= hysteresis_pct

The candidate is confirmed after it holds for ``hysteresis_periods``
further candles with no opposite crossover. An opposite crossover drops
the candidate (and may become the new candidate itself). A confirmed
direction equal to the previous confirmed direction is not emitted again.

This module is pure business logic with no I/O dependencies.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from core.models import (
    CrossDirection,
    IndicatorSnapshot,
    RawCrossoverEvent,
    Signal,
    SignalDirection,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HysteresisState:
    """Per-instrument filter state."""

    sec_code: str
    last_confirmed: SignalDirection | None = None
    candidate: CrossDirection | None = None
    candidate_since: datetime | None = None
    held: int = 0

    def clear_candidate(self) -> None:
        self.candidate = None
        self.candidate_since = None
        self.held = 0


class HysteresisFilter:
    """Suppresses marginal and short-lived crossovers."""

    def __init__(self, percentage: Decimal, periods: int):
        if percentage < 0:
            raise ValueError(f"percentage must be >= 0, got {percentage}")
        if periods < 0:
            raise ValueError(f"periods must be >= 0, got {periods}")
        self.percentage = percentage
        self.periods = periods
        self._states: dict[str, HysteresisState] = {}

    def _get_state(self, sec_code: str) -> HysteresisState:
        state = self._states.get(sec_code)
        if state is None:
            state = HysteresisState(sec_code=sec_code)
            self._states[sec_code] = state
        return state

    def on_raw_event(self, event: RawCrossoverEvent) -> Signal | None:
        """Handle a crossing candle.

        Args:
            event: Raw crossover from the indicator engine

        Returns:
            Confirmed signal if ``periods`` is zero and the event passes
            the band test, None otherwise
        """
        state = self._get_state(event.sec_code)

        if state.candidate is not None:
            logger.info(
                "%s candidate %s reversed after %d/%d candles",
                event.sec_code, state.candidate.value, state.held, self.periods,
            )
        state.clear_candidate()

        if not event.snapshot.exceeds_band(self.percentage):
            logger.debug(
                "%s crossover %s at %s inside band, ignored",
                event.sec_code, event.direction.value, event.timestamp,
            )
            return None

        state.candidate = event.direction
        state.candidate_since = event.timestamp
        if self.periods == 0:
            return self._confirm(state, event.timestamp)
        return None

    def on_bar(self, snapshot: IndicatorSnapshot) -> Signal | None:
        """Count a candle without a crossover towards the open candidate."""
        state = self._states.get(snapshot.sec_code)
        if state is None or state.candidate is None:
            return None

        state.held += 1
        if state.held >= self.periods:
            return self._confirm(state, snapshot.timestamp)
        return None

    def _confirm(self, state: HysteresisState, timestamp: datetime) -> Signal | None:
        direction = SignalDirection.from_cross(state.candidate)
        state.clear_candidate()

        if direction == state.last_confirmed:
            logger.debug("%s %s already confirmed, not re-emitted", state.sec_code, direction.value)
            return None

        state.last_confirmed = direction
        return Signal(sec_code=state.sec_code, direction=direction, timestamp=timestamp)

    def get_state(self, sec_code: str) -> HysteresisState | None:
        return self._states.get(sec_code)

    def reset(self, sec_code: str | None = None) -> None:
        if sec_code is not None:
            self._states.pop(sec_code, None)
        else:
            self._states.clear()
