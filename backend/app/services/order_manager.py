"""Order manager task.

One asyncio task owns the order state machine and therefore every
position and pending order. Everything that can change them arrives
through a single FIFO inbox:

- confirmed signals from the poll task (and manual flatten requests),
- terminal messages forwarded by the CallbackBridge,
- order timeouts scheduled with ``loop.call_later``.

No locks are needed because nothing else touches that state.
"""

import asyncio
import logging
from dataclasses import dataclass

from app.errors import ConnectorError
from app.models import (
    ConnectionStatusEvent,
    OrderRequest,
    OrderStatusEvent,
    Signal,
    TradeConfirmation,
    TransactionReply,
)
from app.services.notifier import NotificationEvent, NotificationKind, Notifier
from app.services.terminal_connector import TerminalConnector
from core.orders import OrderStateMachine, Resolution, ResolutionKind
from core.recent_keys import RecentKeys

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderTimedOut:
    """Timer message: no final reply for ``trans_id`` in time."""

    trans_id: int


class _Stop:
    """Inbox sentinel that ends the run loop."""


_STOP = _Stop()


def _describe_order(order: OrderRequest) -> str:
    return f"{order.side.name} {order.quantity} {order.sec_code} (trans_id={order.trans_id})"


class OrderManager:
    """Drains the inbox and drives orders through the terminal connector."""

    def __init__(
        self,
        machine: OrderStateMachine,
        connector: TerminalConnector,
        notifier: Notifier,
        timeout_s: float,
        cancel_on_timeout: bool = True,
        history_size: int = 10_000,
    ):
        self.machine = machine
        self.connector = connector
        self.notifier = notifier
        self.timeout_s = timeout_s
        self.cancel_on_timeout = cancel_on_timeout

        self.inbox: asyncio.Queue = asyncio.Queue()
        self._timers: dict[int, asyncio.TimerHandle] = {}
        # trans_id -> exchange order number, learned from order status callbacks
        self._order_nums: dict[int, int] = {}
        # exchange order number -> our order, for attributing fills; oldest evicted
        self._orders_by_num = RecentKeys(history_size)
        self._seen_trades = RecentKeys(history_size)
        self._accepting = True
        self._running = False

        self.signals_received = 0
        self.signals_dropped = 0
        self.orders_sent = 0
        self.orders_filled = 0
        self.orders_failed = 0

    @property
    def accepting(self) -> bool:
        return self._accepting

    # ------------------------------------------------------------------
    # Producers (event loop thread)
    # ------------------------------------------------------------------

    def post_signal(self, signal: Signal) -> None:
        self.inbox.put_nowait(signal)

    def post_message(self, message) -> None:
        """Sink for the CallbackBridge."""
        self.inbox.put_nowait(message)

    # ------------------------------------------------------------------
    # Task
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Process inbox items until stopped."""
        self._running = True
        try:
            while True:
                item = await self.inbox.get()
                try:
                    if item is _STOP:
                        break
                    self.handle(item)
                except Exception:
                    logger.exception("Order manager failed to handle %r", item)
                finally:
                    self.inbox.task_done()
        finally:
            self._running = False
            for handle in self._timers.values():
                handle.cancel()
            self._timers.clear()

    def close(self) -> None:
        """Refuse new orders; queued messages are still handled."""
        self._accepting = False

    async def stop(self, task: asyncio.Task | None = None, timeout: float = 10.0) -> None:
        """Stop accepting orders, drain queued messages, then end the task."""
        self.close()
        self.inbox.put_nowait(_STOP)
        if task is not None:
            try:
                await asyncio.wait_for(task, timeout=timeout)
            except asyncio.TimeoutError:
                logger.error("Order manager did not drain in %.0fs, cancelling", timeout)
                task.cancel()
        pending = self.machine.pending_trans_ids
        if pending:
            logger.warning("Stopping with unresolved orders: trans_id=%s", pending)

    def handle(self, item) -> None:
        """Dispatch one inbox item."""
        if isinstance(item, Signal):
            self._handle_signal(item)
        elif isinstance(item, TransactionReply):
            self._handle_reply(item)
        elif isinstance(item, OrderTimedOut):
            self._handle_timeout(item)
        elif isinstance(item, ConnectionStatusEvent):
            self._handle_connection(item)
        elif isinstance(item, OrderStatusEvent):
            self._handle_order_status(item)
        elif isinstance(item, TradeConfirmation):
            self._handle_trade(item)
        else:
            logger.warning("Unknown inbox item %r", item)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _handle_signal(self, signal: Signal) -> None:
        self.signals_received += 1
        if not self._accepting:
            self.signals_dropped += 1
            logger.warning("Shutting down, dropping signal %s %s", signal.sec_code, signal.direction.value)
            return

        self._publish(
            NotificationKind.SIGNAL,
            f"Сигнал {signal.direction.value.upper()} {signal.sec_code} ({signal.timestamp:%Y-%m-%d %H:%M})",
            signal.sec_code,
            signal_id=signal.id,
        )
        self._submit(self.machine.on_signal(signal))

    def _submit(self, request: OrderRequest | None) -> None:
        while request is not None:
            try:
                if not self._accepting:
                    raise ConnectorError("shutting down")
                self.connector.submit_order(request)
            except ConnectorError as e:
                resolution = self.machine.on_submit_failed(request.trans_id, str(e))
                if resolution is not None:
                    self._report(resolution)
                request = self.machine.resume(request.sec_code)
                continue

            self.orders_sent += 1
            loop = asyncio.get_running_loop()
            self._timers[request.trans_id] = loop.call_later(
                self.timeout_s, self.inbox.put_nowait, OrderTimedOut(request.trans_id)
            )
            return

    def _handle_reply(self, reply: TransactionReply) -> None:
        if self.connector.is_cancel_trans_id(reply.trans_id):
            logger.info(
                "Cancel trans_id=%d: reply_code=%d %s", reply.trans_id, reply.reply_code, reply.message
            )
            return
        if not reply.is_final:
            logger.debug("trans_id=%d in progress (reply_code=%d)", reply.trans_id, reply.reply_code)
            return

        self._cancel_timer(reply.trans_id)
        resolution = self.machine.on_ack(reply.to_ack())
        if resolution is None:
            return
        if resolution.succeeded and reply.order_num:
            self._orders_by_num.add(reply.order_num, resolution.order)
        self._order_nums.pop(reply.trans_id, None)
        self._report(resolution)
        self._submit(self.machine.resume(resolution.order.sec_code))

    def _handle_timeout(self, message: OrderTimedOut) -> None:
        self._timers.pop(message.trans_id, None)
        resolution = self.machine.on_timeout(message.trans_id)
        if resolution is None:
            return

        order_num = self._order_nums.pop(message.trans_id, None)
        if self.cancel_on_timeout and order_num:
            try:
                self.connector.cancel_order(resolution.order, order_num)
            except ConnectorError as e:
                logger.warning("Cannot cancel order %d: %s", order_num, e)

        self._report(resolution)
        self._submit(self.machine.resume(resolution.order.sec_code))

    def _handle_connection(self, event: ConnectionStatusEvent) -> None:
        state = self.connector.apply_connection_event(event)
        if state is not None:
            self._publish(NotificationKind.CONNECTION, f"Терминал: {state.value}")

    def _handle_order_status(self, event: OrderStatusEvent) -> None:
        if event.order_num and event.trans_id in self.machine.pending_trans_ids:
            self._order_nums[event.trans_id] = event.order_num
            logger.debug("trans_id=%d has order_num=%d", event.trans_id, event.order_num)

    def _handle_trade(self, trade: TradeConfirmation) -> None:
        if not self._seen_trades.add(trade.trade_num):
            logger.debug("Duplicate trade %d dropped", trade.trade_num)
            return

        order = self._orders_by_num.get(trade.order_num)
        if order is None and trade.order_num in self._order_nums.values():
            order = self.machine.pending(trade.sec_code)
        if order is None:
            logger.debug("Trade %d for foreign order %d", trade.trade_num, trade.order_num)
            return

        side = "SELL" if trade.is_sell else "BUY"
        logger.info(
            "Fill %s %s %d @ %s (trade %d, order %d)",
            trade.sec_code, side, trade.quantity, trade.price, trade.trade_num, trade.order_num,
        )
        self._publish(
            NotificationKind.TRADE,
            f"Сделка {side} {trade.quantity} {trade.sec_code} @ {trade.price}",
            trade.sec_code,
            trade_num=trade.trade_num,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _cancel_timer(self, trans_id: int) -> None:
        handle = self._timers.pop(trans_id, None)
        if handle is not None:
            handle.cancel()

    def _report(self, resolution: Resolution) -> None:
        order = resolution.order
        if resolution.kind is ResolutionKind.FILLED:
            self.orders_filled += 1
            self._publish(
                NotificationKind.ORDER_FILLED,
                f"Исполнено: {_describe_order(order)}, позиция "
                f"{resolution.position.side.value} {resolution.position.quantity}",
                order.sec_code,
                trans_id=order.trans_id,
            )
        else:
            self.orders_failed += 1
            self._publish(
                NotificationKind.ORDER_FAILED,
                f"Ошибка ({resolution.kind.value}): {_describe_order(order)}: {resolution.reason}",
                order.sec_code,
                trans_id=order.trans_id,
            )

    def _publish(self, kind: NotificationKind, text: str, sec_code: str = "", **metadata) -> None:
        try:
            self.notifier.publish(NotificationEvent(kind, text, sec_code, metadata))
        except Exception as e:
            logger.warning(f"Notification dropped: {e}")

    def status(self) -> dict:
        """Snapshot for the status endpoint."""
        return {
            "accepting": self._accepting,
            "running": self._running,
            "inbox": self.inbox.qsize(),
            "signals_received": self.signals_received,
            "signals_dropped": self.signals_dropped,
            "orders_sent": self.orders_sent,
            "orders_filled": self.orders_filled,
            "orders_failed": self.orders_failed,
            "instruments": [
                {
                    "sec_code": book.sec_code,
                    "state": book.state.value,
                    "position": book.position.side.value,
                    "quantity": book.position.quantity,
                    "pending_trans_id": book.pending.trans_id if book.pending else None,
                    "desired": book.desired.value if book.desired else None,
                }
                for book in self.machine.books()
            ],
        }
