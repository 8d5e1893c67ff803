"""Data models."""

from core.models import (
    Candle,
    CrossDirection,
    IndicatorSnapshot,
    OrderAck,
    OrderConfig,
    OrderIntent,
    OrderRequest,
    OrderSide,
    Position,
    PositionSide,
    RawCrossoverEvent,
    Signal,
    SignalDirection,
    StrategyConfig,
    Tick,
)
from app.models.terminal import (
    ConnectionStatusEvent,
    OrderStatusEvent,
    TerminalMessage,
    TradeConfirmation,
    TransactionReply,
)

__all__ = [
    "Candle",
    "ConnectionStatusEvent",
    "CrossDirection",
    "IndicatorSnapshot",
    "OrderAck",
    "OrderConfig",
    "OrderIntent",
    "OrderRequest",
    "OrderSide",
    "OrderStatusEvent",
    "Position",
    "PositionSide",
    "RawCrossoverEvent",
    "Signal",
    "SignalDirection",
    "StrategyConfig",
    "TerminalMessage",
    "Tick",
    "TradeConfirmation",
    "TransactionReply",
]
