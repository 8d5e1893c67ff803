"""Messages built from native terminal callbacks.

Instances are created on the library's callback thread, so they are
plain frozen dataclasses holding already-decoded Python values.
"""

from dataclasses import dataclass
from decimal import Decimal

from core.models import OrderAck

# Transaction reply codes that mean the transaction was executed
REPLY_EXECUTED = 3
# Intermediate statuses: sent to / received by the server
REPLY_IN_PROGRESS = (0, 1)


@dataclass(frozen=True, slots=True)
class ConnectionStatusEvent:
    """Connection state change (TRANS2QUIK_DLL_* / TRANS2QUIK_QUIK_* code)."""

    event: int
    error_code: int
    message: str


@dataclass(frozen=True, slots=True)
class TransactionReply:
    """Reply to an asynchronous transaction."""

    result_code: int
    error_code: int
    reply_code: int
    trans_id: int
    order_num: int
    message: str

    @property
    def is_final(self) -> bool:
        return not (self.result_code == 0 and self.reply_code in REPLY_IN_PROGRESS)

    @property
    def is_executed(self) -> bool:
        return self.result_code == 0 and self.reply_code == REPLY_EXECUTED

    def to_ack(self) -> OrderAck:
        return OrderAck(
            trans_id=self.trans_id,
            accepted=self.is_executed,
            order_num=self.order_num or None,
            result_code=self.result_code,
            error_code=self.error_code,
            reply_code=self.reply_code,
            message=self.message,
        )


@dataclass(frozen=True, slots=True)
class OrderStatusEvent:
    """Order table update for a subscribed instrument."""

    mode: int  # 0 = live update, 1 = snapshot start, 2 = snapshot end
    trans_id: int
    order_num: int
    class_code: str
    sec_code: str
    price: Decimal
    balance: int
    value: Decimal
    is_sell: bool
    status: int  # 1 = active, 2 = cancelled, otherwise executed


@dataclass(frozen=True, slots=True)
class TradeConfirmation:
    """Trade (fill) for a subscribed instrument."""

    mode: int
    trade_num: int
    order_num: int
    class_code: str
    sec_code: str
    price: Decimal
    quantity: int
    value: Decimal
    is_sell: bool


TerminalMessage = ConnectionStatusEvent | TransactionReply | OrderStatusEvent | TradeConfirmation
