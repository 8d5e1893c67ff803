"""Offline replay engine.

Runs a recorded tick stream through the same signal pipeline and order
state machine the live agent uses. Orders go to a paper broker that
executes them immediately at the last traded price of the instrument,
so a recording always replays to the same signals and fills.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable

from core.models import OrderAck, OrderConfig, OrderRequest, OrderSide, Signal, StrategyConfig, Tick
from core.orders import OrderStateMachine
from core.signal_generator import SignalGenerator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaperFill:
    """Execution of one order by the paper broker."""

    trans_id: int
    sec_code: str
    side: OrderSide
    quantity: int
    price: Decimal
    timestamp: datetime

    @property
    def signed_quantity(self) -> int:
        return self.quantity if self.side is OrderSide.BUY else -self.quantity


@dataclass
class ReplayResult:
    """Everything a replay produced."""

    ticks: int = 0
    candles: int = 0
    signals: list[Signal] = field(default_factory=list)
    orders: list[OrderRequest] = field(default_factory=list)
    fills: list[PaperFill] = field(default_factory=list)
    last_prices: dict[str, Decimal] = field(default_factory=dict)

    def net_position(self, sec_code: str) -> int:
        return sum(f.signed_quantity for f in self.fills if f.sec_code == sec_code)

    def pnl(self, sec_code: str) -> Decimal:
        """Cash flow of the fills plus the open position marked at the last price."""
        cash = sum(
            (-f.price * f.signed_quantity for f in self.fills if f.sec_code == sec_code),
            Decimal(0),
        )
        last = self.last_prices.get(sec_code)
        if last is not None:
            cash += last * self.net_position(sec_code)
        return cash

    def summary(self) -> dict:
        instruments = sorted({f.sec_code for f in self.fills} | set(self.last_prices))
        return {
            "ticks": self.ticks,
            "candles": self.candles,
            "signals": len(self.signals),
            "orders": len(self.orders),
            "instruments": {
                sec: {
                    "position": self.net_position(sec),
                    "pnl": str(self.pnl(sec)),
                    "last_price": str(self.last_prices[sec]) if sec in self.last_prices else None,
                }
                for sec in instruments
            },
        }


class ReplayEngine:
    """Replay ticks through the signal pipeline and a paper broker.

    Usage:
        engine = ReplayEngine(strategy_config, order_config)
        result = engine.run(load_ticks(path))
    """

    def __init__(self, strategy: StrategyConfig, orders: OrderConfig):
        self.generator = SignalGenerator(strategy)
        self.machine = OrderStateMachine(orders)
        self._strategy = strategy
        self._result = ReplayResult()
        self._clock: datetime | None = None
        self.generator.on_signal(self._on_signal)

    def run(self, ticks: Iterable[Tick], close_open_candles: bool = True) -> ReplayResult:
        """Replay a tick stream.

        Tick timestamps drive the flush clock, so a quiet instrument's
        candle closes exactly as it would have in a live poll cycle.

        Args:
            ticks: Ticks in feed order
            close_open_candles: Close the last open candle of every
                instrument at the end of the stream

        Returns:
            Replay result
        """
        result = self._result
        for tick in ticks:
            self._clock = tick.timestamp
            result.ticks += 1
            result.last_prices[tick.sec_code] = tick.price
            result.candles += len(self.generator.process_tick(tick).candles)
            result.candles += len(self.generator.flush(tick.timestamp).candles)

        if close_open_candles and self._clock is not None:
            end = self._clock + timedelta(
                seconds=self._strategy.timeframe_s + self._strategy.flush_grace_s
            )
            result.candles += len(self.generator.flush(end).candles)

        logger.info(
            "Replay done: %d ticks, %d candles, %d signals, %d fills",
            result.ticks, result.candles, len(result.signals), len(result.fills),
        )
        return result

    def _on_signal(self, signal: Signal) -> None:
        self._result.signals.append(signal)
        request = self.machine.on_signal(signal)
        while request is not None:
            self._execute(request)
            request = self.machine.resume(request.sec_code)

    def _execute(self, request: OrderRequest) -> None:
        result = self._result
        result.orders.append(request)
        price = result.last_prices.get(request.sec_code)
        if price is None:
            self.machine.on_submit_failed(request.trans_id, "no price")
            return

        self.machine.on_ack(OrderAck(trans_id=request.trans_id, accepted=True, reply_code=3))
        result.fills.append(
            PaperFill(
                trans_id=request.trans_id,
                sec_code=request.sec_code,
                side=request.side,
                quantity=request.quantity,
                price=price,
                timestamp=self._clock,
            )
        )
