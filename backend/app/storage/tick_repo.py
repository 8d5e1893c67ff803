"""Tick feed repository (reads historical_trades)."""

import logging
from dataclasses import dataclass
from datetime import datetime, tzinfo

from sqlalchemy import func, select

from app.models import Tick
from app.storage.database import Database, HistoricalTradeTable, get_database

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TickFilter:
    """Instruments the feed is restricted to."""

    class_code: str
    sec_codes: tuple[str, ...]
    instrument_status: str = ""  # empty = any status

    def apply(self, stmt):
        t = HistoricalTradeTable
        stmt = stmt.where(t.class_code == self.class_code)
        if self.sec_codes:
            stmt = stmt.where(t.sec_code.in_(self.sec_codes))
        if self.instrument_status:
            stmt = stmt.where(t.instrument_status == self.instrument_status)
        return stmt


def row_to_tick(row, tz: tzinfo) -> Tick | None:
    """Convert a historical_trades row to a Tick.

    The feed stores exchange-local date and time separately; they are
    combined in the exchange time zone. Rows without a price or time
    are skipped.
    """
    if row.last_price is None or row.last_price_time is None or row.trade_date is None:
        return None
    timestamp = datetime.combine(row.trade_date, row.last_price_time).replace(tzinfo=tz)
    return Tick(
        sec_code=row.sec_code,
        class_code=row.class_code or "",
        price=row.last_price,
        volume=row.last_volume if row.last_volume is not None else 0,
        timestamp=timestamp,
        instrument_status=row.instrument_status or "",
        row_id=row.id,
    )


class TickRepository:
    """Repository for tick feed reads."""

    def __init__(self, tz: tzinfo, database: Database | None = None):
        self.tz = tz
        self._db = database

    @property
    def db(self) -> Database:
        return self._db or get_database()

    def _select(self):
        t = HistoricalTradeTable
        return select(
            t.id,
            t.class_code,
            t.sec_code,
            t.instrument_status,
            t.last_price,
            t.last_volume,
            t.last_price_time,
            t.trade_date,
        )

    def _to_ticks(self, rows) -> list[Tick]:
        ticks = []
        for row in rows:
            tick = row_to_tick(row, self.tz)
            if tick is not None:
                ticks.append(tick)
        return ticks

    async def fetch_after(self, cursor: int, tick_filter: TickFilter, limit: int) -> tuple[list[Tick], int]:
        """Fetch rows inserted after ``cursor``.

        Rows are read in insertion (id) order, which the history trigger
        keeps in trade time order; paging by time could skip rows.

        Returns:
            Tuple of (ticks, new cursor). The cursor also advances past
            rows that could not be converted to ticks.
        """
        t = HistoricalTradeTable
        stmt = tick_filter.apply(self._select().where(t.id > cursor))
        stmt = stmt.order_by(t.id).limit(limit)

        async with self.db.session() as session:
            result = await session.execute(stmt)
            rows = result.all()

        new_cursor = rows[-1].id if rows else cursor
        return self._to_ticks(rows), new_cursor

    async def fetch_history(
        self, since: datetime, tick_filter: TickFilter, until_id: int | None = None
    ) -> list[Tick]:
        """Fetch ticks with timestamps at or after ``since``, in trade time order."""
        t = HistoricalTradeTable
        stmt = tick_filter.apply(self._select().where(t.trade_date >= since.astimezone(self.tz).date()))
        if until_id is not None:
            stmt = stmt.where(t.id <= until_id)
        stmt = stmt.order_by(t.trade_date, t.last_price_time, t.id)

        async with self.db.session() as session:
            result = await session.execute(stmt)
            rows = result.all()

        return [tick for tick in self._to_ticks(rows) if tick.timestamp >= since]

    async def last_id(self) -> int:
        """Highest id in historical_trades, 0 if empty."""
        async with self.db.session() as session:
            result = await session.execute(select(func.max(HistoricalTradeTable.id)))
            value = result.scalar()
        return int(value) if value is not None else 0
