"""Tick and candle data models."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Tick(BaseModel):
    """Last-trade snapshot of one instrument as exported by the terminal.

    Two ticks with the same instrument and timestamp are the same event;
    the signal pipeline drops the second one.
    """

    model_config = ConfigDict(frozen=True)

    sec_code: str
    class_code: str = ""
    price: Decimal
    volume: Decimal = Decimal("0")
    timestamp: datetime
    instrument_status: str = ""
    row_id: int | None = None  # historical_trades.id when read from the feed

    @field_validator("timestamp")
    @classmethod
    def _require_tz(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("tick timestamp must be timezone-aware")
        return value

    @property
    def key(self) -> tuple[str, datetime]:
        """Identity used for duplicate detection."""
        return (self.sec_code, self.timestamp)

    @property
    def epoch(self) -> float:
        """Unix timestamp in seconds."""
        return self.timestamp.timestamp()


class Candle(BaseModel):
    """Closed OHLC candle for one instrument and timeframe.

    Covers ticks with timestamps in ``[start, end)``.
    """

    model_config = ConfigDict(frozen=True)

    sec_code: str
    timeframe_s: int
    start: datetime
    end: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal = Decimal("0")
    tick_count: int = Field(default=1, ge=1)
