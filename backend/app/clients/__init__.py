"""Terminal clients."""

from app.clients.trans2quik import (
    CallResult,
    TerminalLibrary,
    Trans2QuikLibrary,
    Trans2QuikResult,
)

__all__ = [
    "CallResult",
    "TerminalLibrary",
    "Trans2QuikLibrary",
    "Trans2QuikResult",
]
