"""Pure data models shared by the live trader and the replay engine."""

from core.models.config import OrderConfig, StrategyConfig, parse_timeframe
from core.models.order import (
    OrderAck,
    OrderIntent,
    OrderRequest,
    OrderSide,
    Position,
    PositionSide,
)
from core.models.signal import (
    CrossDirection,
    IndicatorSnapshot,
    RawCrossoverEvent,
    Signal,
    SignalDirection,
)
from core.models.tick import Candle, Tick

__all__ = [
    "Candle",
    "CrossDirection",
    "IndicatorSnapshot",
    "OrderAck",
    "OrderConfig",
    "OrderIntent",
    "OrderRequest",
    "OrderSide",
    "Position",
    "PositionSide",
    "RawCrossoverEvent",
    "Signal",
    "SignalDirection",
    "StrategyConfig",
    "Tick",
    "parse_timeframe",
]
