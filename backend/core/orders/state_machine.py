"""Per-instrument order state machine.

States:

    FLAT -> PENDING_ENTRY -> LONG | SHORT -> PENDING_EXIT -> FLAT

At most one order is outstanding per instrument. A signal arriving while
an order is pending is stored as the desired direction, replacing any
earlier desire, and is acted on when the pending order resolves. A
reversal (LONG -> SHORT) is an exit order followed by an entry order.

Positions change only when the terminal confirms an order. Rejections,
local send failures and timeouts revert to the previous stable state and
are reported once; the failed order is never resent automatically.

This module is pure business logic with no I/O dependencies. Timers,
terminal access and notifications belong to the caller.
"""

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum

from core.models import (
    OrderAck,
    OrderConfig,
    OrderIntent,
    OrderRequest,
    OrderSide,
    Position,
    PositionSide,
    Signal,
    SignalDirection,
)

logger = logging.getLogger(__name__)

_RESOLVED_HISTORY = 1024


class OrderState(str, Enum):
    """Order state of one instrument."""

    FLAT = "flat"
    PENDING_ENTRY = "pending_entry"
    LONG = "long"
    SHORT = "short"
    PENDING_EXIT = "pending_exit"

    @property
    def is_pending(self) -> bool:
        return self in (OrderState.PENDING_ENTRY, OrderState.PENDING_EXIT)


class ResolutionKind(str, Enum):
    """How a pending order ended."""

    FILLED = "filled"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"
    NOT_SENT = "not_sent"


@dataclass(frozen=True)
class Resolution:
    """Outcome of a pending order."""

    order: OrderRequest
    kind: ResolutionKind
    position: Position  # position after the resolution
    ack: OrderAck | None = None
    reason: str = ""

    @property
    def succeeded(self) -> bool:
        return self.kind is ResolutionKind.FILLED


_STABLE_STATES = {
    PositionSide.FLAT: OrderState.FLAT,
    PositionSide.LONG: OrderState.LONG,
    PositionSide.SHORT: OrderState.SHORT,
}


@dataclass(slots=True)
class InstrumentBook:
    """Position, pending order and desired direction of one instrument."""

    sec_code: str
    position: Position
    pending: OrderRequest | None = None
    desired: SignalDirection | None = None
    desired_signal_id: str = ""
    # desire was (re)set while an order was pending
    queued: bool = False

    @property
    def state(self) -> OrderState:
        if self.pending is not None:
            if self.pending.intent is OrderIntent.ENTRY:
                return OrderState.PENDING_ENTRY
            return OrderState.PENDING_EXIT
        return _STABLE_STATES[self.position.side]


class OrderStateMachine:
    """Decides which orders to send for confirmed signals.

    Usage:
        machine = OrderStateMachine(OrderConfig(class_code="TQBR"))
        request = machine.on_signal(signal)
        if request is not None:
            ...  # send it, start a timer
        resolution = machine.on_ack(ack)
        follow_up = machine.resume(resolution.order.sec_code)
    """

    def __init__(self, config: OrderConfig):
        self.config = config
        self._next_trans_id = config.trans_id_start
        self._books: dict[str, InstrumentBook] = {}
        self._pending_by_trans_id: dict[int, str] = {}
        self._resolved: deque[int] = deque(maxlen=_RESOLVED_HISTORY)

    def _get_book(self, sec_code: str) -> InstrumentBook:
        book = self._books.get(sec_code)
        if book is None:
            book = InstrumentBook(sec_code=sec_code, position=Position(sec_code=sec_code))
            self._books[sec_code] = book
        return book

    def _allocate_trans_id(self) -> int:
        trans_id = self._next_trans_id
        self._next_trans_id += 1
        return trans_id

    def _target_side(self, direction: SignalDirection) -> PositionSide:
        if direction is SignalDirection.LONG:
            return PositionSide.LONG
        if direction is SignalDirection.SHORT and self.config.allow_short:
            return PositionSide.SHORT
        return PositionSide.FLAT

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def on_signal(self, signal: Signal) -> OrderRequest | None:
        """Accept a confirmed signal.

        Args:
            signal: Confirmed signal

        Returns:
            Order to send now, or None if nothing is to be sent (already
            in position, or an order is pending and the signal was queued)
        """
        book = self._get_book(signal.sec_code)
        book.desired = signal.direction
        book.desired_signal_id = signal.id

        if book.pending is not None:
            book.queued = True
            logger.info(
                "%s: %s queued while %s (trans_id=%d)",
                signal.sec_code, signal.direction.value,
                book.state.value, book.pending.trans_id,
            )
            return None

        return self._advance(book)

    def on_ack(self, ack: OrderAck) -> Resolution | None:
        """Apply the terminal's final answer for a transaction.

        Returns:
            Resolution, or None if the transaction is unknown or already
            resolved (late reply after a timeout, duplicate callback)
        """
        book = self._pop_pending(ack.trans_id)
        if book is None:
            level = logging.WARNING if ack.trans_id in self._resolved else logging.ERROR
            logger.log(
                level,
                "Dropping reply for unknown or resolved trans_id=%d (accepted=%s)",
                ack.trans_id, ack.accepted,
            )
            return None

        order = book.pending
        book.pending = None

        if ack.accepted:
            if order.target is PositionSide.FLAT:
                book.position = Position(sec_code=book.sec_code)
            else:
                book.position = Position(
                    sec_code=book.sec_code, side=order.target, quantity=order.quantity
                )
            logger.info(
                "%s: trans_id=%d executed (order_num=%s), position %s %d",
                book.sec_code, order.trans_id, ack.order_num,
                book.position.side.value, book.position.quantity,
            )
            return Resolution(
                order=order,
                kind=ResolutionKind.FILLED,
                position=book.position,
                ack=ack,
            )

        return self._fail(book, order, ResolutionKind.REJECTED, ack.message, ack)

    def on_timeout(self, trans_id: int) -> Resolution | None:
        """Give up on a pending order that got no reply in time."""
        book = self._pop_pending(trans_id)
        if book is None:
            return None
        order = book.pending
        book.pending = None
        return self._fail(book, order, ResolutionKind.TIMED_OUT, "no reply from terminal")

    def on_submit_failed(self, trans_id: int, reason: str) -> Resolution | None:
        """Revert an order the connector refused to transmit."""
        book = self._pop_pending(trans_id)
        if book is None:
            return None
        order = book.pending
        book.pending = None
        return self._fail(book, order, ResolutionKind.NOT_SENT, reason)

    def resume(self, sec_code: str) -> OrderRequest | None:
        """Act on the desired direction after a pending order resolved."""
        book = self._books.get(sec_code)
        if book is None or book.pending is not None:
            return None
        return self._advance(book)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def state(self, sec_code: str) -> OrderState:
        book = self._books.get(sec_code)
        return book.state if book else OrderState.FLAT

    def position(self, sec_code: str) -> Position:
        book = self._books.get(sec_code)
        return book.position if book else Position(sec_code=sec_code)

    def pending(self, sec_code: str) -> OrderRequest | None:
        book = self._books.get(sec_code)
        return book.pending if book else None

    def books(self) -> list[InstrumentBook]:
        return [self._books[k] for k in sorted(self._books)]

    @property
    def pending_trans_ids(self) -> list[int]:
        return sorted(self._pending_by_trans_id)

    def is_resolved(self, trans_id: int) -> bool:
        return trans_id in self._resolved

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _pop_pending(self, trans_id: int) -> InstrumentBook | None:
        sec_code = self._pending_by_trans_id.pop(trans_id, None)
        if sec_code is None:
            return None
        self._resolved.append(trans_id)
        return self._books[sec_code]

    def _fail(
        self,
        book: InstrumentBook,
        order: OrderRequest,
        kind: ResolutionKind,
        reason: str,
        ack: OrderAck | None = None,
    ) -> Resolution:
        # A desire that arrived while pending is kept; the one that
        # produced the failed order is dropped so it is not resent.
        if not book.queued:
            book.desired = None
            book.desired_signal_id = ""
        book.queued = False

        logger.warning(
            "%s: trans_id=%d %s (%s), back to %s",
            book.sec_code, order.trans_id, kind.value, reason or "no reason",
            book.state.value,
        )
        return Resolution(
            order=order, kind=kind, position=book.position, ack=ack, reason=reason
        )

    def _advance(self, book: InstrumentBook) -> OrderRequest | None:
        book.queued = False
        if book.desired is None:
            return None

        target = self._target_side(book.desired)
        position = book.position

        if position.side is target:
            logger.debug("%s: already %s, nothing to send", book.sec_code, target.value)
            book.desired = None
            book.desired_signal_id = ""
            return None

        if not position.is_flat:
            side = OrderSide.SELL if position.side is PositionSide.LONG else OrderSide.BUY
            request = OrderRequest(
                trans_id=self._allocate_trans_id(),
                class_code=self.config.class_code,
                sec_code=book.sec_code,
                side=side,
                quantity=position.quantity,
                intent=OrderIntent.EXIT,
                target=PositionSide.FLAT,
                signal_id=book.desired_signal_id,
            )
        else:
            side = OrderSide.BUY if target is PositionSide.LONG else OrderSide.SELL
            request = OrderRequest(
                trans_id=self._allocate_trans_id(),
                class_code=self.config.class_code,
                sec_code=book.sec_code,
                side=side,
                quantity=self.config.quantity,
                intent=OrderIntent.ENTRY,
                target=target,
                signal_id=book.desired_signal_id,
            )

        book.pending = request
        self._pending_by_trans_id[request.trans_id] = book.sec_code
        logger.info(
            "%s: %s -> %s, sending %s %d (trans_id=%d)",
            book.sec_code, position.side.value, book.state.value,
            request.side.name, request.quantity, request.trans_id,
        )
        return request
