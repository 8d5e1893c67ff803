"""Tests for the tick source adapter and feed row conversion."""

from datetime import date, datetime, time, timedelta
from decimal import Decimal
from types import SimpleNamespace
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy.exc import OperationalError

from app.models import Tick
from app.services.tick_source import TickSource
from app.storage.tick_repo import TickFilter, row_to_tick

MSK = ZoneInfo("Europe/Moscow")
BASE = datetime(2024, 3, 1, 10, 0, tzinfo=MSK)


def make_tick(row_id: int, seconds: float | None = None, price: str = "100") -> Tick:
    return Tick(
        sec_code="SBER",
        class_code="TQBR",
        price=Decimal(price),
        timestamp=BASE + timedelta(seconds=row_id if seconds is None else seconds),
        row_id=row_id,
    )


class FakeRepo:
    """In-memory feed; ``errors`` are raised by the next fetch_after calls."""

    def __init__(self, ticks: list[Tick] | None = None):
        self.ticks = list(ticks or [])
        self.errors: list[Exception] = []
        self.calls = 0

    async def fetch_after(self, cursor, tick_filter, limit):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        page = [t for t in self.ticks if t.row_id > cursor][:limit]
        return page, (page[-1].row_id if page else cursor)

    async def fetch_history(self, since, tick_filter, until_id=None):
        return [
            t for t in self.ticks
            if t.timestamp >= since and (until_id is None or t.row_id <= until_id)
        ]

    async def last_id(self):
        return max((t.row_id for t in self.ticks), default=0)


def _db_error() -> OperationalError:
    return OperationalError("SELECT 1", {}, Exception("connection refused"))


async def collect(source: TickSource) -> list[Tick]:
    return [tick async for tick in source.poll()]


@pytest.fixture
def no_sleep(monkeypatch):
    delays = []

    async def fake_sleep(delay):
        delays.append(delay)

    monkeypatch.setattr("app.services.tick_source.asyncio.sleep", fake_sleep)
    return delays


class TestTickSource:
    """Tests for TickSource."""

    @pytest.fixture
    def tick_filter(self):
        return TickFilter(class_code="TQBR", sec_codes=("SBER",))

    @pytest.mark.asyncio
    async def test_poll_pages_until_drained(self, tick_filter):
        repo = FakeRepo([make_tick(i) for i in range(1, 8)])
        source = TickSource(repo, tick_filter, batch_size=3)

        ticks = await collect(source)

        assert [t.row_id for t in ticks] == list(range(1, 8))
        assert source.cursor == 7
        assert repo.calls == 3
        assert source.ticks_read == 7

    @pytest.mark.asyncio
    async def test_poll_resumes_from_cursor(self, tick_filter):
        repo = FakeRepo([make_tick(1), make_tick(2)])
        source = TickSource(repo, tick_filter)
        await collect(source)

        repo.ticks.append(make_tick(3))
        ticks = await collect(source)

        assert [t.row_id for t in ticks] == [3]

    @pytest.mark.asyncio
    async def test_start_from_latest_skips_existing(self, tick_filter):
        repo = FakeRepo([make_tick(1), make_tick(2)])
        source = TickSource(repo, tick_filter)

        assert await source.start_from_latest() == 2
        assert await collect(source) == []

    @pytest.mark.asyncio
    async def test_duplicates_passed_through(self, tick_filter):
        """Repeated rows reach the pipeline, which drops them itself."""
        repo = FakeRepo([make_tick(1, 10), make_tick(2, 10, "101"), make_tick(3, 11)])
        source = TickSource(repo, tick_filter)

        ticks = await collect(source)

        assert [t.row_id for t in ticks] == [1, 2, 3]
        assert source.ticks_read == 3

    @pytest.mark.asyncio
    async def test_transient_error_retried(self, tick_filter, no_sleep):
        repo = FakeRepo([make_tick(1)])
        repo.errors = [_db_error(), OSError("reset")]
        source = TickSource(repo, tick_filter, base_delay=1.0)

        ticks = await collect(source)

        assert [t.row_id for t in ticks] == [1]
        assert no_sleep == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhausted_retries_leave_a_gap(self, tick_filter, no_sleep):
        """Retries run out: the cycle ends without raising, cursor unchanged."""
        repo = FakeRepo([make_tick(1)])
        repo.errors = [_db_error() for _ in range(3)]
        source = TickSource(repo, tick_filter, max_retries=3, base_delay=1.0, max_delay=1.5)

        assert await collect(source) == []
        assert source.cursor == 0
        assert no_sleep == [1.0, 1.5]

        # next cycle picks up where it left off
        assert [t.row_id for t in await collect(source)] == [1]

    @pytest.mark.asyncio
    async def test_non_transient_error_propagates(self, tick_filter):
        repo = FakeRepo()
        repo.errors = [KeyError("boom")]
        source = TickSource(repo, tick_filter)

        with pytest.raises(KeyError):
            await collect(source)

    @pytest.mark.asyncio
    async def test_history_stops_at_cursor(self, tick_filter):
        repo = FakeRepo([make_tick(1), make_tick(2)])
        source = TickSource(repo, tick_filter)
        await source.start_from_latest()
        repo.ticks.append(make_tick(3))

        history = await source.fetch_history(BASE)

        assert [t.row_id for t in history] == [1, 2]
        assert [t.row_id for t in await collect(source)] == [3]
        assert not keys.add("a")
        assert keys.add("c")  # evicts "b", the least recently seen
        assert len(keys) == 2
        assert keys.add("b")


class TestRowToTick:
    def _row(self, **overrides):
        values = dict(
            id=10,
            class_code="TQBR",
            sec_code="SBER",
            instrument_status="торгуется",
            last_price=Decimal("250.35"),
            last_volume=Decimal("4"),
            last_price_time=time(10, 15, 30),
            trade_date=date(2024, 3, 1),
        )
        values.update(overrides)
        return SimpleNamespace(**values)

    def test_combines_date_and_time_in_exchange_zone(self):
        tick = row_to_tick(self._row(), MSK)

        assert tick.timestamp == datetime(2024, 3, 1, 10, 15, 30, tzinfo=MSK)
        assert tick.timestamp.utcoffset() == timedelta(hours=3)
        assert tick.price == Decimal("250.35")
        assert tick.row_id == 10

    def test_missing_price_skipped(self):
        assert row_to_tick(self._row(last_price=None), MSK) is None

    def test_missing_time_skipped(self):
        assert row_to_tick(self._row(last_price_time=None), MSK) is None

    def test_missing_volume_is_zero(self):
        assert row_to_tick(self._row(last_volume=None), MSK).volume == 0
