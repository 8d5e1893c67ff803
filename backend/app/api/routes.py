"""REST API routes (status and control)."""

import logging
from datetime import datetime

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

logger = logging.getLogger(__name__)

router = APIRouter()


class FlattenResponse(BaseModel):
    """Queued manual signal."""

    signal_id: str
    sec_code: str
    direction: str
    timestamp: datetime


class ShutdownResponse(BaseModel):
    status: str


def _get_trader(request: Request):
    trader = getattr(request.app.state, "trader", None)
    if trader is None:
        raise HTTPException(status_code=503, detail="Trader not running")
    return trader


@router.get("/status")
async def get_status(request: Request) -> dict:
    """Connector state, feed progress, and order state per instrument."""
    return _get_trader(request).status()


@router.get("/positions")
async def get_positions(request: Request) -> list[dict]:
    trader = _get_trader(request)
    return [
        {
            "sec_code": book.sec_code,
            "side": book.position.side.value,
            "quantity": book.position.quantity,
            "state": book.state.value,
        }
        for book in trader.machine.books()
    ]


@router.post("/instruments/{sec_code}/flatten", response_model=FlattenResponse)
async def flatten(sec_code: str, request: Request) -> FlattenResponse:
    """Close the position in an instrument with a manual FLAT signal."""
    trader = _get_trader(request)
    if sec_code not in trader.config.sec_code:
        raise HTTPException(status_code=404, detail=f"Unknown instrument {sec_code}")
    if not trader.order_manager.accepting:
        raise HTTPException(status_code=409, detail="Shutting down")
    signal = trader.flatten(sec_code)
    return FlattenResponse(
        signal_id=signal.id,
        sec_code=signal.sec_code,
        direction=signal.direction.value,
        timestamp=signal.timestamp,
    )


@router.post("/shutdown", response_model=ShutdownResponse)
async def shutdown(request: Request) -> ShutdownResponse:
    """Gracefully stop the agent (unsubscribe, disconnect, exit)."""
    server = getattr(request.app.state, "server", None)
    if server is None:
        raise HTTPException(status_code=503, detail="Shutdown not available")
    logger.info("Shutdown requested via API")
    server.should_exit = True
    return ShutdownResponse(status="shutting_down")
