"""Business services."""

from app.services.notifier import (
    LogNotifier,
    NotificationEvent,
    NotificationKind,
    Notifier,
    TelegramNotifier,
)
from app.services.order_manager import OrderManager, OrderTimedOut
from app.services.terminal_connector import (
    CallbackBridge,
    ConnectorState,
    TerminalConnector,
    build_order_transaction,
)
from app.services.tick_source import TickSource
from app.services.trader import Trader

__all__ = [
    "CallbackBridge",
    "ConnectorState",
    "LogNotifier",
    "NotificationEvent",
    "NotificationKind",
    "Notifier",
    "OrderManager",
    "OrderTimedOut",
    "TelegramNotifier",
    "TerminalConnector",
    "Trader",
    "TickSource",
    "build_order_transaction",
]
