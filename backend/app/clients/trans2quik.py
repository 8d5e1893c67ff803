"""ctypes binding for the QUIK terminal's trans2quik.dll.

Only the calls the trader needs are bound: connection management,
asynchronous transactions, connection/reply callbacks, and the order and
trade subscription streams.

Every native callback is decoded into a frozen message and handed to a
single ``sink`` callable. The library invokes callbacks on its own
thread, so the sink must be thread-safe (see CallbackBridge).
"""

import ctypes
import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import IntEnum
from typing import Callable, Protocol

from app.errors import LibraryLoadError
from app.models import (
    ConnectionStatusEvent,
    OrderStatusEvent,
    TerminalMessage,
    TradeConfirmation,
    TransactionReply,
)

logger = logging.getLogger(__name__)

# The terminal talks Windows-1251
ENCODING = "cp1251"
ERROR_BUFFER_SIZE = 256

# trans2quik exports __stdcall functions on Windows
if hasattr(ctypes, "WINFUNCTYPE"):
    _FUNCTYPE = ctypes.WINFUNCTYPE
    _LIBRARY_LOADER = ctypes.WinDLL
else:
    _FUNCTYPE = ctypes.CFUNCTYPE
    _LIBRARY_LOADER = ctypes.CDLL

MessageSink = Callable[[TerminalMessage], None]


class Trans2QuikResult(IntEnum):
    """TRANS2QUIK_* result and event codes."""

    SUCCESS = 0
    FAILED = 1
    TERMINAL_NOT_FOUND = 2
    DLL_VERSION_NOT_SUPPORTED = 3
    ALREADY_CONNECTED_TO_QUIK = 4
    WRONG_SYNTAX = 5
    QUIK_NOT_CONNECTED = 6
    DLL_NOT_CONNECTED = 7
    QUIK_CONNECTED = 8
    QUIK_DISCONNECTED = 9
    DLL_CONNECTED = 10
    DLL_DISCONNECTED = 11
    MEMORY_ALLOCATION_ERROR = 12
    WRONG_CONNECTION_HANDLE = 13
    WRONG_INPUT_PARAMS = 14

    @classmethod
    def describe(cls, code: int) -> str:
        try:
            return cls(code).name
        except ValueError:
            return f"UNKNOWN({code})"


@dataclass(frozen=True)
class CallResult:
    """Return value of a trans2quik call."""

    code: int
    error_code: int = 0
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.code == Trans2QuikResult.SUCCESS

    def __str__(self) -> str:
        text = Trans2QuikResult.describe(self.code)
        if self.error_code or self.message:
            text += f" (error_code={self.error_code}, {self.message!r})"
        return text


class TerminalLibrary(Protocol):
    """Operations the connector needs from the native library."""

    def connect(self, path_to_quik: str) -> CallResult: ...

    def disconnect(self) -> CallResult: ...

    def is_dll_connected(self) -> CallResult: ...

    def is_quik_connected(self) -> CallResult: ...

    def send_async_transaction(self, transaction: str) -> CallResult: ...

    def set_callbacks(self, sink: MessageSink) -> CallResult: ...

    def subscribe(self, class_code: str, sec_codes: list[str]) -> CallResult: ...

    def unsubscribe(self) -> CallResult: ...


# Native callback prototypes
CONNECTION_STATUS_CALLBACK = _FUNCTYPE(
    None, ctypes.c_long, ctypes.c_long, ctypes.c_char_p
)
TRANSACTION_REPLY_CALLBACK = _FUNCTYPE(
    None,
    ctypes.c_long,       # result code
    ctypes.c_long,       # extended error code
    ctypes.c_long,       # reply code
    ctypes.c_ulong,      # trans id
    ctypes.c_ulonglong,  # order number
    ctypes.c_char_p,     # reply message
    ctypes.c_void_p,     # reply descriptor
)
ORDER_STATUS_CALLBACK = _FUNCTYPE(
    None,
    ctypes.c_long,       # mode
    ctypes.c_ulong,      # trans id
    ctypes.c_ulonglong,  # order number
    ctypes.c_char_p,     # class code
    ctypes.c_char_p,     # sec code
    ctypes.c_double,     # price
    ctypes.c_longlong,   # balance
    ctypes.c_double,     # value
    ctypes.c_long,       # is sell
    ctypes.c_long,       # status
    ctypes.c_void_p,     # order descriptor
)
TRADE_STATUS_CALLBACK = _FUNCTYPE(
    None,
    ctypes.c_long,       # mode
    ctypes.c_ulonglong,  # trade number
    ctypes.c_ulonglong,  # order number
    ctypes.c_char_p,     # class code
    ctypes.c_char_p,     # sec code
    ctypes.c_double,     # price
    ctypes.c_longlong,   # quantity
    ctypes.c_double,     # value
    ctypes.c_long,       # is sell
    ctypes.c_void_p,     # trade descriptor
)

_ERR_ARGS = [ctypes.POINTER(ctypes.c_long), ctypes.c_char_p, ctypes.c_ulong]

# name -> argtypes (all return long)
_SIGNATURES = {
    "TRANS2QUIK_CONNECT": [ctypes.c_char_p, *_ERR_ARGS],
    "TRANS2QUIK_DISCONNECT": _ERR_ARGS,
    "TRANS2QUIK_IS_QUIK_CONNECTED": _ERR_ARGS,
    "TRANS2QUIK_IS_DLL_CONNECTED": _ERR_ARGS,
    "TRANS2QUIK_SEND_ASYNC_TRANSACTION": [ctypes.c_char_p, *_ERR_ARGS],
    "TRANS2QUIK_SET_CONNECTION_STATUS_CALLBACK": [CONNECTION_STATUS_CALLBACK, *_ERR_ARGS],
    "TRANS2QUIK_SET_TRANSACTIONS_REPLY_CALLBACK": [TRANSACTION_REPLY_CALLBACK, *_ERR_ARGS],
    "TRANS2QUIK_SUBSCRIBE_ORDERS": [ctypes.c_char_p, ctypes.c_char_p],
    "TRANS2QUIK_SUBSCRIBE_TRADES": [ctypes.c_char_p, ctypes.c_char_p],
    "TRANS2QUIK_START_ORDERS": [ORDER_STATUS_CALLBACK],
    "TRANS2QUIK_START_TRADES": [TRADE_STATUS_CALLBACK],
    "TRANS2QUIK_UNSUBSCRIBE_ORDERS": [],
    "TRANS2QUIK_UNSUBSCRIBE_TRADES": [],
}


def _decode(raw: bytes | None) -> str:
    if not raw:
        return ""
    return raw.decode(ENCODING, errors="replace").rstrip("\x00")


def _encode(text: str) -> bytes:
    return text.encode(ENCODING)


def _to_decimal(value: float) -> Decimal:
    # str() gives the shortest repr, so 250.35 stays 250.35
    return Decimal(str(value))


class Trans2QuikLibrary:
    """Loaded trans2quik.dll.

    Usage:
        lib = Trans2QuikLibrary.load(r"C:\\QUIK\\trans2quik.dll")
        lib.set_callbacks(bridge.submit)
        result = lib.connect(r"C:\\QUIK")
    """

    def __init__(self, dll):
        self._dll = dll
        self._functions = {}
        for name, argtypes in _SIGNATURES.items():
            function = getattr(dll, name)
            function.argtypes = argtypes
            function.restype = ctypes.c_long
            self._functions[name] = function

        self._sink: MessageSink | None = None
        # ctypes callback objects must outlive their registration
        self._callback_refs: list = []

    @classmethod
    def load(cls, path: str) -> "Trans2QuikLibrary":
        """Load the library from ``path``.

        Raises:
            LibraryLoadError: If the file cannot be loaded or lacks an export
        """
        try:
            dll = _LIBRARY_LOADER(path)
        except OSError as e:
            raise LibraryLoadError(f"Cannot load {path}: {e}") from e
        try:
            library = cls(dll)
        except AttributeError as e:
            raise LibraryLoadError(f"{path} is missing an export: {e}") from e
        logger.info("Loaded trans2quik library from %s", path)
        return library

    def _call_with_error(self, name: str, *args) -> CallResult:
        error_code = ctypes.c_long(0)
        buffer = ctypes.create_string_buffer(ERROR_BUFFER_SIZE)
        code = self._functions[name](*args, ctypes.byref(error_code), buffer, ERROR_BUFFER_SIZE)
        result = CallResult(code=code, error_code=error_code.value, message=_decode(buffer.value))
        logger.debug("%s -> %s", name, result)
        return result

    def connect(self, path_to_quik: str) -> CallResult:
        return self._call_with_error("TRANS2QUIK_CONNECT", _encode(path_to_quik))

    def disconnect(self) -> CallResult:
        return self._call_with_error("TRANS2QUIK_DISCONNECT")

    def is_dll_connected(self) -> CallResult:
        return self._call_with_error("TRANS2QUIK_IS_DLL_CONNECTED")

    def is_quik_connected(self) -> CallResult:
        return self._call_with_error("TRANS2QUIK_IS_QUIK_CONNECTED")

    def send_async_transaction(self, transaction: str) -> CallResult:
        return self._call_with_error("TRANS2QUIK_SEND_ASYNC_TRANSACTION", _encode(transaction))

    def set_callbacks(self, sink: MessageSink) -> CallResult:
        """Register connection status and transaction reply callbacks."""
        self._sink = sink
        status_cb = CONNECTION_STATUS_CALLBACK(self._on_connection_status)
        reply_cb = TRANSACTION_REPLY_CALLBACK(self._on_transaction_reply)
        self._callback_refs.extend([status_cb, reply_cb])

        result = self._call_with_error("TRANS2QUIK_SET_CONNECTION_STATUS_CALLBACK", status_cb)
        if not result.ok:
            return result
        return self._call_with_error("TRANS2QUIK_SET_TRANSACTIONS_REPLY_CALLBACK", reply_cb)

    def subscribe(self, class_code: str, sec_codes: list[str]) -> CallResult:
        """Subscribe to order and trade streams for the given instruments."""
        codes = _encode("|".join(sec_codes))
        for name in ("TRANS2QUIK_SUBSCRIBE_ORDERS", "TRANS2QUIK_SUBSCRIBE_TRADES"):
            code = self._functions[name](_encode(class_code), codes)
            if code != Trans2QuikResult.SUCCESS:
                return CallResult(code=code, message=f"{name} failed")

        order_cb = ORDER_STATUS_CALLBACK(self._on_order_status)
        trade_cb = TRADE_STATUS_CALLBACK(self._on_trade_status)
        self._callback_refs.extend([order_cb, trade_cb])

        code = self._functions["TRANS2QUIK_START_ORDERS"](order_cb)
        if code != Trans2QuikResult.SUCCESS:
            return CallResult(code=code, message="TRANS2QUIK_START_ORDERS failed")
        code = self._functions["TRANS2QUIK_START_TRADES"](trade_cb)
        return CallResult(code=code)

    def unsubscribe(self) -> CallResult:
        code = self._functions["TRANS2QUIK_UNSUBSCRIBE_ORDERS"]()
        trades_code = self._functions["TRANS2QUIK_UNSUBSCRIBE_TRADES"]()
        return CallResult(code=code or trades_code)

    # ------------------------------------------------------------------
    # Native callbacks (library thread)
    # ------------------------------------------------------------------

    def _emit(self, message: TerminalMessage) -> None:
        sink = self._sink
        if sink is None:
            return
        try:
            sink(message)
        except Exception:
            # An exception must not unwind into the native caller
            logger.exception("Terminal callback sink failed")

    def _on_connection_status(self, event, error_code, message) -> None:
        self._emit(ConnectionStatusEvent(event=event, error_code=error_code, message=_decode(message)))

    def _on_transaction_reply(
        self, result_code, error_code, reply_code, trans_id, order_num, message, _descriptor
    ) -> None:
        self._emit(
            TransactionReply(
                result_code=result_code,
                error_code=error_code,
                reply_code=reply_code,
                trans_id=trans_id,
                order_num=order_num,
                message=_decode(message),
            )
        )

    def _on_order_status(
        self, mode, trans_id, order_num, class_code, sec_code, price, balance, value,
        is_sell, status, _descriptor,
    ) -> None:
        self._emit(
            OrderStatusEvent(
                mode=mode,
                trans_id=trans_id,
                order_num=order_num,
                class_code=_decode(class_code),
                sec_code=_decode(sec_code),
                price=_to_decimal(price),
                balance=balance,
                value=_to_decimal(value),
                is_sell=bool(is_sell),
                status=status,
            )
        )

    def _on_trade_status(
        self, mode, trade_num, order_num, class_code, sec_code, price, quantity, value,
        is_sell, _descriptor,
    ) -> None:
        self._emit(
            TradeConfirmation(
                mode=mode,
                trade_num=trade_num,
                order_num=order_num,
                class_code=_decode(class_code),
                sec_code=_decode(sec_code),
                price=_to_decimal(price),
                quantity=quantity,
                value=_to_decimal(value),
                is_sell=bool(is_sell),
            )
        )
