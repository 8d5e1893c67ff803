"""Tests for the terminal connector, the callback bridge and the ctypes client."""

import asyncio
import threading
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from app.clients.trans2quik import CallResult, Trans2QuikLibrary, Trans2QuikResult
from app.errors import ConnectorError, LibraryLoadError, TerminalConnectError
from app.models import (
    ConnectionStatusEvent,
    OrderConfig,
    OrderIntent,
    OrderRequest,
    OrderSide,
    PositionSide,
    TradeConfirmation,
    TransactionReply,
)
from app.services.terminal_connector import (
    CallbackBridge,
    ConnectorState,
    TerminalConnector,
    build_cancel_transaction,
    build_order_transaction,
)


class FakeLibrary:
    """In-memory stand-in for trans2quik.dll."""

    def __init__(self, connect_code: int = Trans2QuikResult.SUCCESS, send_code: int = Trans2QuikResult.SUCCESS):
        self.connect_code = connect_code
        self.send_code = send_code
        self.dll_connected = True
        self.sink = None
        self.sent: list[str] = []
        self.subscriptions: list[tuple[str, list[str]]] = []
        self.unsubscribed = False
        self.disconnected = False
        self.connect_calls = 0

    def connect(self, path_to_quik):
        self.connect_calls += 1
        return CallResult(self.connect_code, 0 if self.connect_code == 0 else 42, "")

    def disconnect(self):
        self.disconnected = True
        return CallResult(Trans2QuikResult.SUCCESS)

    def is_dll_connected(self):
        code = Trans2QuikResult.DLL_CONNECTED if self.dll_connected else Trans2QuikResult.DLL_NOT_CONNECTED
        return CallResult(code)

    def is_quik_connected(self):
        return CallResult(Trans2QuikResult.QUIK_CONNECTED)

    def send_async_transaction(self, transaction):
        self.sent.append(transaction)
        return CallResult(self.send_code)

    def set_callbacks(self, sink):
        self.sink = sink
        return CallResult(Trans2QuikResult.SUCCESS)

    def subscribe(self, class_code, sec_codes):
        self.subscriptions.append((class_code, list(sec_codes)))
        return CallResult(Trans2QuikResult.SUCCESS)

    def unsubscribe(self):
        self.unsubscribed = True
        return CallResult(Trans2QuikResult.SUCCESS)


class BlockingConnectLibrary(FakeLibrary):
    """connect() blocks until the test releases it."""

    def __init__(self):
        super().__init__()
        self.blocking = False
        self.entered = threading.Event()
        self.release = threading.Event()
        self.released_in_time = False

    def connect(self, path_to_quik):
        if self.blocking:
            self.entered.set()
            self.released_in_time = self.release.wait(timeout=2)
        return super().connect(path_to_quik)


def _request(trans_id: int = 7, side: OrderSide = OrderSide.BUY) -> OrderRequest:
    return OrderRequest(
        trans_id=trans_id,
        class_code="TQBR",
        sec_code="SBER",
        side=side,
        quantity=3,
        intent=OrderIntent.ENTRY,
        target=PositionSide.LONG,
    )


def _make_connector(library: FakeLibrary, **kwargs) -> TerminalConnector:
    config = OrderConfig(class_code="TQBR", account="L01-00000F00", client_code="10677")
    return TerminalConnector(config, ["SBER", "GAZP"], loader=lambda path: library, **kwargs)


class TestTransactionStrings:
    def test_market_order(self):
        text = build_order_transaction(_request(), "L01-00000F00", "10677")
        assert text == (
            "ACCOUNT=L01-00000F00; CLIENT_CODE=10677; TYPE=M; TRANS_ID=7; "
            "CLASSCODE=TQBR; SECCODE=SBER; ACTION=NEW_ORDER; OPERATION=B; "
            "PRICE=0; QUANTITY=3;"
        )

    def test_sell_without_account(self):
        text = build_order_transaction(_request(side=OrderSide.SELL), "", "")
        assert text.startswith("TYPE=M; TRANS_ID=7;")
        assert "OPERATION=S;" in text

    def test_cancel(self):
        text = build_cancel_transaction(1_000_000_001, "TQBR", "SBER", 12345)
        assert "ACTION=KILL_ORDER" in text
        assert "ORDER_KEY=12345;" in text


class TestTerminalConnector:
    """Tests for TerminalConnector."""

    def test_connect_subscribes(self):
        library = FakeLibrary()
        connector = _make_connector(library)
        sink = MagicMock()

        connector.connect("trans2quik.dll", r"C:\QUIK", sink)

        assert connector.state == ConnectorState.CONNECTED
        assert connector.server_connected
        assert library.sink is sink
        assert library.subscriptions == [("TQBR", ["SBER", "GAZP"])]

    def test_already_connected_is_ok(self):
        connector = _make_connector(FakeLibrary(connect_code=Trans2QuikResult.ALREADY_CONNECTED_TO_QUIK))
        connector.connect("trans2quik.dll", r"C:\QUIK", MagicMock())
        assert connector.is_connected

    def test_connect_failure_is_fatal(self):
        connector = _make_connector(FakeLibrary(connect_code=Trans2QuikResult.TERMINAL_NOT_FOUND))

        with pytest.raises(TerminalConnectError) as exc_info:
            connector.connect("trans2quik.dll", r"C:\QUIK", MagicMock())

        assert exc_info.value.result_code == Trans2QuikResult.TERMINAL_NOT_FOUND
        assert exc_info.value.error_code == 42
        assert connector.state == ConnectorState.FAILED

    def test_library_load_failure(self):
        def loader(path):
            raise LibraryLoadError(f"Cannot load {path}")

        connector = TerminalConnector(OrderConfig(class_code="TQBR"), ["SBER"], loader=loader)
        with pytest.raises(LibraryLoadError):
            connector.connect("missing.dll", r"C:\QUIK", MagicMock())
        assert connector.state == ConnectorState.FAILED

    def test_submit_order_sends_transaction(self):
        library = FakeLibrary()
        connector = _make_connector(library)
        connector.connect("trans2quik.dll", r"C:\QUIK", MagicMock())

        connector.submit_order(_request())

        assert len(library.sent) == 1
        assert "TRANS_ID=7;" in library.sent[0]

    def test_submit_rejected_by_library(self):
        library = FakeLibrary(send_code=Trans2QuikResult.QUIK_NOT_CONNECTED)
        connector = _make_connector(library)
        connector.connect("trans2quik.dll", r"C:\QUIK", MagicMock())

        with pytest.raises(ConnectorError) as exc_info:
            connector.submit_order(_request())
        assert exc_info.value.result_code == Trans2QuikResult.QUIK_NOT_CONNECTED

    def test_submit_while_disconnected(self):
        library = FakeLibrary()
        connector = _make_connector(library)
        connector.connect("trans2quik.dll", r"C:\QUIK", MagicMock())
        connector.apply_connection_event(
            ConnectionStatusEvent(Trans2QuikResult.DLL_DISCONNECTED, 0, "")
        )

        with pytest.raises(ConnectorError, match="disconnected"):
            connector.submit_order(_request())
        assert library.sent == []

    def test_submit_after_close(self):
        library = FakeLibrary()
        connector = _make_connector(library)
        connector.connect("trans2quik.dll", r"C:\QUIK", MagicMock())
        connector.close()

        with pytest.raises(ConnectorError, match="shutting down"):
            connector.submit_order(_request())

    def test_cancel_uses_own_trans_id_range(self):
        library = FakeLibrary()
        connector = _make_connector(library)
        connector.connect("trans2quik.dll", r"C:\QUIK", MagicMock())

        cancel_id = connector.cancel_order(_request(), 12345)

        assert connector.is_cancel_trans_id(cancel_id)
        assert not connector.is_cancel_trans_id(7)
        assert f"TRANS_ID={cancel_id};" in library.sent[0]

    def test_connection_events(self):
        connector = _make_connector(FakeLibrary())
        connector.connect("trans2quik.dll", r"C:\QUIK", MagicMock())

        assert connector.apply_connection_event(
            ConnectionStatusEvent(Trans2QuikResult.QUIK_DISCONNECTED, 0, "")
        ) is None
        assert not connector.server_connected
        assert connector.is_connected

        state = connector.apply_connection_event(
            ConnectionStatusEvent(Trans2QuikResult.DLL_DISCONNECTED, 0, "")
        )
        assert state == ConnectorState.DISCONNECTED

        # repeated event is not a change
        assert connector.apply_connection_event(
            ConnectionStatusEvent(Trans2QuikResult.DLL_DISCONNECTED, 0, "")
        ) is None

        state = connector.apply_connection_event(
            ConnectionStatusEvent(Trans2QuikResult.DLL_CONNECTED, 0, "")
        )
        assert state == ConnectorState.CONNECTED

    @pytest.mark.asyncio
    async def test_try_reconnect_resubscribes(self):
        library = FakeLibrary()
        connector = _make_connector(library)
        connector.connect("trans2quik.dll", r"C:\QUIK", MagicMock())
        connector.apply_connection_event(
            ConnectionStatusEvent(Trans2QuikResult.DLL_DISCONNECTED, 0, "")
        )

        assert await connector.try_reconnect()
        assert connector.is_connected
        assert len(library.subscriptions) == 2
        assert library.connect_calls == 2

    @pytest.mark.asyncio
    async def test_try_reconnect_failure(self):
        library = FakeLibrary()
        connector = _make_connector(library)
        connector.connect("trans2quik.dll", r"C:\QUIK", MagicMock())
        connector.apply_connection_event(
            ConnectionStatusEvent(Trans2QuikResult.DLL_DISCONNECTED, 0, "")
        )
        library.connect_code = Trans2QuikResult.FAILED

        assert not await connector.try_reconnect()
        assert connector.state == ConnectorState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_reconnect_does_not_block_the_loop(self):
        """A slow TRANS2QUIK_CONNECT runs while other tasks keep going."""
        library = BlockingConnectLibrary()
        connector = _make_connector(library)
        connector.connect("trans2quik.dll", r"C:\QUIK", MagicMock())
        connector.apply_connection_event(
            ConnectionStatusEvent(Trans2QuikResult.DLL_DISCONNECTED, 0, "")
        )
        library.blocking = True

        reconnect = asyncio.create_task(connector.try_reconnect())
        # only reachable while connect is still blocked if the loop is free
        await asyncio.to_thread(library.entered.wait, 2)
        library.release.set()

        assert await reconnect
        assert library.released_in_time
        assert connector.is_connected

    @pytest.mark.asyncio
    async def test_supervisor_reconnects_with_backoff(self, monkeypatch):
        library = FakeLibrary()
        connector = _make_connector(library, reconnect_delay=1.0, max_reconnect_delay=4.0)
        connector.connect("trans2quik.dll", r"C:\QUIK", MagicMock())
        connector.apply_connection_event(
            ConnectionStatusEvent(Trans2QuikResult.DLL_DISCONNECTED, 0, "")
        )
        library.connect_code = Trans2QuikResult.FAILED

        delays = []

        async def fake_sleep(delay):
            delays.append(delay)
            if len(delays) == 3:
                library.connect_code = Trans2QuikResult.SUCCESS
            if len(delays) == 4:
                connector.close()

        monkeypatch.setattr("app.services.terminal_connector.asyncio.sleep", fake_sleep)

        await connector.maintain_connection(check_interval=10.0)

        assert delays == [1.0, 2.0, 4.0, 10.0]
        assert connector.is_connected

    def test_disconnect(self):
        library = FakeLibrary()
        connector = _make_connector(library)
        connector.connect("trans2quik.dll", r"C:\QUIK", MagicMock())

        connector.disconnect()

        assert library.unsubscribed
        assert library.disconnected
        assert connector.state == ConnectorState.DISCONNECTED


class TestCallbackBridge:
    """Tests for CallbackBridge."""

    @pytest.mark.asyncio
    async def test_delivers_in_order_from_foreign_thread(self):
        loop = asyncio.get_running_loop()
        received = []
        done = asyncio.Event()

        def sink(message):
            received.append(message.trans_id)
            if len(received) == 100:
                done.set()

        bridge = CallbackBridge(loop, sink)

        def library_thread():
            for i in range(100):
                bridge.submit(TransactionReply(0, 0, 3, i, 0, ""))

        thread = threading.Thread(target=library_thread)
        thread.start()
        await asyncio.wait_for(done.wait(), timeout=5)
        thread.join()

        assert received == list(range(100))

    @pytest.mark.asyncio
    async def test_close_refuses_new_callbacks(self):
        loop = asyncio.get_running_loop()
        received = []
        bridge = CallbackBridge(loop, lambda m: received.append(m.trans_id))

        bridge.submit(TransactionReply(0, 0, 3, 1, 0, ""))
        bridge.close()
        bridge.submit(TransactionReply(0, 0, 3, 2, 0, ""))
        await asyncio.sleep(0)

        assert received == [1]
        assert bridge.closed

    @pytest.mark.asyncio
    async def test_callback_raised_before_close_is_delivered(self):
        """An executed reply scheduled from the library thread survives close()."""
        loop = asyncio.get_running_loop()
        received = []
        bridge = CallbackBridge(loop, received.append)
        reply = TransactionReply(0, 0, 3, 1, 42, "executed")

        thread = threading.Thread(target=bridge.submit, args=(reply,))
        thread.start()
        thread.join()
        bridge.close()
        await asyncio.sleep(0)

        assert received == [reply]

    def test_closed_loop_does_not_raise(self):
        loop = asyncio.new_event_loop()
        loop.close()
        bridge = CallbackBridge(loop, MagicMock())
        bridge.submit(TransactionReply(0, 0, 3, 1, 0, ""))


class TestTransactionReply:
    def test_executed(self):
        reply = TransactionReply(0, 0, 3, 5, 777, "ok")
        assert reply.is_final
        ack = reply.to_ack()
        assert ack.accepted
        assert ack.order_num == 777

    @pytest.mark.parametrize("reply_code", [0, 1])
    def test_in_progress(self, reply_code):
        assert not TransactionReply(0, 0, reply_code, 5, 0, "").is_final

    def test_rejected(self):
        reply = TransactionReply(0, 0, 4, 5, 0, "not enough money")
        assert reply.is_final
        ack = reply.to_ack()
        assert not ack.accepted
        assert ack.order_num is None
        assert ack.message == "not enough money"

    def test_library_failure(self):
        assert not TransactionReply(1, 12, 0, 5, 0, "").to_ack().accepted


class TestTrans2QuikLibrary:
    """Tests for the ctypes binding without a real DLL."""

    @pytest.fixture
    def library(self):
        dll = MagicMock()
        return Trans2QuikLibrary(dll)

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(LibraryLoadError):
            Trans2QuikLibrary.load(str(tmp_path / "trans2quik.dll"))

    def test_call_result(self, library):
        library._functions["TRANS2QUIK_CONNECT"].return_value = Trans2QuikResult.SUCCESS
        result = library.connect(r"C:\QUIK")
        assert result.ok
        assert result.error_code == 0

    def test_callbacks_decode_cp1251(self, library):
        library._functions["TRANS2QUIK_SET_CONNECTION_STATUS_CALLBACK"].return_value = 0
        library._functions["TRANS2QUIK_SET_TRANSACTIONS_REPLY_CALLBACK"].return_value = 0
        received = []
        assert library.set_callbacks(received.append).ok

        library._on_transaction_reply(0, 0, 3, 7, 123, "Заявка исполнена".encode("cp1251"), None)
        library._on_trade_status(0, 900, 123, b"TQBR", b"SBER", 250.35, 3, 751.05, 0, None)

        reply, trade = received
        assert reply == TransactionReply(0, 0, 3, 7, 123, "Заявка исполнена")
        assert isinstance(trade, TradeConfirmation)
        assert trade.price == Decimal("250.35")
        assert not trade.is_sell

    def test_sink_errors_do_not_propagate(self, library):
        library._sink = MagicMock(side_effect=RuntimeError("boom"))
        library._on_connection_status(Trans2QuikResult.DLL_CONNECTED, 0, b"")
