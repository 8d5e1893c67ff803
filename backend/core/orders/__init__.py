"""Order state machine (pure logic, no I/O)."""

from core.orders.state_machine import (
    InstrumentBook,
    OrderState,
    OrderStateMachine,
    Resolution,
    ResolutionKind,
)

__all__ = [
    "InstrumentBook",
    "OrderState",
    "OrderStateMachine",
    "Resolution",
    "ResolutionKind",
]
