"""Order, acknowledgement and position models."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class OrderSide(str, Enum):
    """Order side, valued as the terminal's OPERATION field."""

    BUY = "B"
    SELL = "S"


class PositionSide(str, Enum):
    """Position side."""

    FLAT = "flat"
    LONG = "long"
    SHORT = "short"


class OrderIntent(str, Enum):
    """Whether an order opens or closes a position."""

    ENTRY = "entry"
    EXIT = "exit"


class Position(BaseModel):
    """Position held in one instrument."""

    model_config = ConfigDict(frozen=True)

    sec_code: str
    side: PositionSide = PositionSide.FLAT
    quantity: int = Field(default=0, ge=0)

    @property
    def is_flat(self) -> bool:
        return self.side is PositionSide.FLAT

    @property
    def signed_quantity(self) -> int:
        """Quantity in lots, negative for short positions."""
        if self.side is PositionSide.SHORT:
            return -self.quantity
        return self.quantity


class OrderRequest(BaseModel):
    """Market order sent to the terminal.

    ``trans_id`` is the client-side correlation id echoed back by the
    transaction reply callback.
    """

    model_config = ConfigDict(frozen=True)

    trans_id: int = Field(ge=1)
    class_code: str
    sec_code: str
    side: OrderSide
    quantity: int = Field(ge=1)
    intent: OrderIntent
    target: PositionSide  # position once this order is executed
    signal_id: str = ""


class OrderAck(BaseModel):
    """Final answer of the terminal for one transaction."""

    model_config = ConfigDict(frozen=True)

    trans_id: int
    accepted: bool
    order_num: int | None = None
    result_code: int = 0
    error_code: int = 0
    reply_code: int = 0
    message: str = ""
