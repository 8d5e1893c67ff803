"""Terminal connector: owns the trans2quik library handle.

Lifecycle:

    UNLOADED -> CONNECTING -> CONNECTED <-> DISCONNECTED
                          \\-> FAILED

``connect()`` failing is fatal. After a DLL disconnect the supervisor
task reconnects with exponential backoff.

Native callbacks arrive on a library thread. The CallbackBridge only
forwards the decoded message to the event loop with
``call_soon_threadsafe``; all state changes happen on the loop, in the
order the library raised the callbacks.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable

from app.clients.trans2quik import (
    CallResult,
    TerminalLibrary,
    Trans2QuikLibrary,
    Trans2QuikResult,
)
from app.errors import ConnectorError, LibraryLoadError, TerminalConnectError
from app.models import ConnectionStatusEvent, OrderConfig, OrderRequest, TerminalMessage

logger = logging.getLogger(__name__)

# Cancel transactions use their own TRANS_ID range
CANCEL_TRANS_ID_BASE = 1_000_000_000

LibraryLoader = Callable[[str], TerminalLibrary]


class ConnectorState(str, Enum):
    """Connector lifecycle state."""

    UNLOADED = "unloaded"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


class CallbackBridge:
    """Hands terminal messages from the library thread to the event loop.

    ``submit`` is the only method called off the loop thread. It performs
    no logic beyond scheduling delivery, so messages reach the sink in
    the order the library raised them. ``close`` refuses new callbacks;
    messages already scheduled are still delivered.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, sink: Callable[[TerminalMessage], None]):
        # Store loop at init time; callbacks run on a foreign thread
        self._loop = loop
        self._sink = sink
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def submit(self, message: TerminalMessage) -> None:
        """Called by the native library on its own thread."""
        if self._closed:
            return
        try:
            self._loop.call_soon_threadsafe(self._deliver, message)
        except RuntimeError:
            # Loop already closed during shutdown
            logger.debug("Event loop closed, dropping %s", type(message).__name__)

    def _deliver(self, message: TerminalMessage) -> None:
        self._sink(message)

    def close(self) -> None:
        """Refuse further callbacks; ones raised before this are still delivered."""
        self._closed = True


def build_order_transaction(request: OrderRequest, account: str, client_code: str) -> str:
    """Build a NEW_ORDER market transaction string.

    Example:
        ACCOUNT=L01-00000F00; CLIENT_CODE=10677; TYPE=M; TRANS_ID=1;
        CLASSCODE=TQBR; SECCODE=SBER; ACTION=NEW_ORDER; OPERATION=B;
        PRICE=0; QUANTITY=1;
    """
    fields = []
    if account:
        fields.append(f"ACCOUNT={account}")
    if client_code:
        fields.append(f"CLIENT_CODE={client_code}")
    fields.extend([
        "TYPE=M",
        f"TRANS_ID={request.trans_id}",
        f"CLASSCODE={request.class_code}",
        f"SECCODE={request.sec_code}",
        "ACTION=NEW_ORDER",
        f"OPERATION={request.side.value}",
        "PRICE=0",
        f"QUANTITY={request.quantity}",
    ])
    return "; ".join(fields) + ";"


def build_cancel_transaction(trans_id: int, class_code: str, sec_code: str, order_num: int) -> str:
    """Build a KILL_ORDER transaction string."""
    return (
        f"TRANS_ID={trans_id}; CLASSCODE={class_code}; SECCODE={sec_code}; "
        f"ACTION=KILL_ORDER; ORDER_KEY={order_num};"
    )


class TerminalConnector:
    """Connection to the QUIK terminal through trans2quik.

    Usage:
        connector = TerminalConnector(order_config, ["SBER"])
        connector.connect(path_to_lib, path_to_quik, bridge.submit)
        connector.submit_order(request)   # result arrives as TransactionReply
    """

    def __init__(
        self,
        order_config: OrderConfig,
        sec_codes: list[str],
        loader: LibraryLoader = Trans2QuikLibrary.load,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 60.0,
    ):
        self.order_config = order_config
        self.sec_codes = list(sec_codes)
        self._loader = loader
        self._library: TerminalLibrary | None = None
        self._state = ConnectorState.UNLOADED
        self._path_to_quik = ""
        self._accepting = True
        self._subscribed = False
        self.server_connected = False

        self._base_delay = reconnect_delay
        self._max_delay = max_reconnect_delay
        self._next_cancel_id = CANCEL_TRANS_ID_BASE

    @property
    def state(self) -> ConnectorState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectorState.CONNECTED

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def connect(self, path_to_lib: str, path_to_quik: str, sink: Callable[[TerminalMessage], None]) -> None:
        """Load the library and connect to the terminal.

        Raises:
            LibraryLoadError: If the library cannot be loaded
            TerminalConnectError: If the terminal refuses the connection
        """
        self._state = ConnectorState.CONNECTING
        self._path_to_quik = path_to_quik
        try:
            self._library = self._loader(path_to_lib)
        except LibraryLoadError:
            self._state = ConnectorState.FAILED
            raise

        result = self._library.set_callbacks(sink)
        if not result.ok:
            self._state = ConnectorState.FAILED
            raise TerminalConnectError(
                f"Cannot register terminal callbacks: {result}", result.code, result.error_code
            )

        result = self._library.connect(path_to_quik)
        if result.code not in (Trans2QuikResult.SUCCESS, Trans2QuikResult.ALREADY_CONNECTED_TO_QUIK):
            self._state = ConnectorState.FAILED
            raise TerminalConnectError(
                f"Cannot connect to terminal at {path_to_quik}: {result}",
                result.code,
                result.error_code,
            )

        self._state = ConnectorState.CONNECTED
        self.server_connected = (
            self._library.is_quik_connected().code == Trans2QuikResult.QUIK_CONNECTED
        )
        self._subscribe()
        logger.info(
            "Connected to terminal at %s (server %s)",
            path_to_quik, "connected" if self.server_connected else "not connected",
        )

    def _subscribe(self) -> None:
        self._apply_subscription(self._library.subscribe(self.order_config.class_code, self.sec_codes))

    async def _subscribe_in_thread(self) -> None:
        result = await asyncio.to_thread(
            self._library.subscribe, self.order_config.class_code, self.sec_codes
        )
        self._apply_subscription(result)

    def _apply_subscription(self, result: CallResult) -> None:
        self._subscribed = result.ok
        if result.ok:
            logger.info(
                "Subscribed to orders and trades for %s %s",
                self.order_config.class_code, ",".join(self.sec_codes),
            )
        else:
            logger.warning("Order/trade subscription failed: %s", result)

    def apply_connection_event(self, event: ConnectionStatusEvent) -> ConnectorState | None:
        """Apply a connection status callback.

        Called from the order manager task. Returns the new state if it
        changed.
        """
        code = event.event
        if code == Trans2QuikResult.QUIK_CONNECTED:
            self.server_connected = True
            logger.info("Terminal connected to server")
        elif code == Trans2QuikResult.QUIK_DISCONNECTED:
            self.server_connected = False
            logger.warning("Terminal lost server connection: %s", event.message)
        elif code == Trans2QuikResult.DLL_CONNECTED:
            return self._set_state(ConnectorState.CONNECTED)
        elif code == Trans2QuikResult.DLL_DISCONNECTED:
            self.server_connected = False
            self._subscribed = False
            return self._set_state(ConnectorState.DISCONNECTED)
        else:
            logger.warning(
                "Unexpected connection event %s: %s",
                Trans2QuikResult.describe(code), event.message,
            )
        return None

    def _set_state(self, state: ConnectorState) -> ConnectorState | None:
        if self._state is state or self._state is ConnectorState.FAILED:
            return None
        logger.info("Terminal connector %s -> %s", self._state.value, state.value)
        self._state = state
        return state

    async def maintain_connection(self, check_interval: float = 5.0) -> None:
        """Supervisor: reconnect with exponential backoff after a disconnect.

        Library calls may block for seconds, so they run in a worker thread;
        state changes are applied back on the loop.
        """
        delay = self._base_delay
        while self._accepting:
            if self._state is ConnectorState.CONNECTED:
                delay = self._base_delay
                result = await asyncio.to_thread(self._library.is_dll_connected)
                if result.code == Trans2QuikResult.DLL_NOT_CONNECTED:
                    self._set_state(ConnectorState.DISCONNECTED)
                    continue
                if not self._subscribed:
                    await self._subscribe_in_thread()
                await asyncio.sleep(check_interval)
                continue

            if self._state is not ConnectorState.DISCONNECTED:
                await asyncio.sleep(check_interval)
                continue

            if await self.try_reconnect():
                delay = self._base_delay
                continue

            logger.warning("Terminal still disconnected, retrying in %.0fs", delay)
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._max_delay)

    async def try_reconnect(self) -> bool:
        """One reconnect attempt; returns True when connected again."""
        result = await asyncio.to_thread(self._library.connect, self._path_to_quik)
        if result.code not in (Trans2QuikResult.SUCCESS, Trans2QuikResult.ALREADY_CONNECTED_TO_QUIK):
            logger.warning("Reconnect to terminal failed: %s", result)
            return False
        self._set_state(ConnectorState.CONNECTED)
        await self._subscribe_in_thread()
        return True

    def close(self) -> None:
        """Refuse further transactions (start of shutdown)."""
        self._accepting = False

    def disconnect(self) -> None:
        """Unsubscribe and disconnect from the terminal."""
        self._accepting = False
        if self._library is None:
            return
        if self._subscribed:
            self._library.unsubscribe()
            self._subscribed = False
        if self._state in (ConnectorState.CONNECTED, ConnectorState.DISCONNECTED):
            result = self._library.disconnect()
            logger.info("Disconnected from terminal: %s", result)
        self._state = ConnectorState.DISCONNECTED

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def _send(self, transaction: str) -> CallResult:
        if not self._accepting:
            raise ConnectorError("connector is shutting down")
        if self._state is not ConnectorState.CONNECTED:
            raise ConnectorError(f"terminal is {self._state.value}")
        result = self._library.send_async_transaction(transaction)
        if not result.ok:
            raise ConnectorError(str(result), result.code, result.error_code)
        return result

    def submit_order(self, request: OrderRequest) -> None:
        """Send a market order.

        Returning normally only means the library accepted the
        transaction; its outcome arrives later as a TransactionReply.

        Raises:
            ConnectorError: If the transaction was not accepted
        """
        transaction = build_order_transaction(
            request, self.order_config.account, self.order_config.client_code
        )
        self._send(transaction)
        logger.info("Sent %s", transaction)

    def cancel_order(self, request: OrderRequest, order_num: int) -> int:
        """Send KILL_ORDER for an order; returns the cancel TRANS_ID."""
        self._next_cancel_id += 1
        trans_id = self._next_cancel_id
        transaction = build_cancel_transaction(
            trans_id, request.class_code, request.sec_code, order_num
        )
        self._send(transaction)
        logger.info("Sent %s", transaction)
        return trans_id

    @staticmethod
    def is_cancel_trans_id(trans_id: int) -> bool:
        return trans_id > CANCEL_TRANS_ID_BASE
