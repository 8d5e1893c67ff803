"""Tick source adapter over the historical_trades feed.

``poll()`` yields the ticks added since the previous call, page by page,
and remembers where it stopped. Transient database failures are retried
with exponential backoff; when the retries run out the call ends
early and the next call resumes from the same cursor, so the pipeline
sees a gap in data rather than an exception.

Rows are yielded as stored; duplicate ticks are dropped by the signal
pipeline, so a recording of this feed replays the same way.
"""

import asyncio
import logging
from datetime import datetime
from typing import AsyncIterator

from sqlalchemy.exc import DBAPIError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from app.errors import FeedUnavailableError
from app.models import Tick
from app.storage.tick_repo import TickFilter, TickRepository

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (DBAPIError, PoolTimeoutError, OSError, asyncio.TimeoutError)


class TickSource:
    """Incremental reader of the tick feed.

    Usage:
        source = TickSource(repo, TickFilter("TQBR", ("SBER",)))
        await source.start_from_latest()
        async for tick in source.poll():
            ...
    """

    def __init__(
        self,
        repo: TickRepository,
        tick_filter: TickFilter,
        batch_size: int = 1000,
        max_retries: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        cursor: int = 0,
    ):
        self.repo = repo
        self.tick_filter = tick_filter
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

        self._cursor = cursor
        self.ticks_read = 0

    @property
    def cursor(self) -> int:
        return self._cursor

    async def start_from_latest(self) -> int:
        """Skip everything already in the feed; returns the new cursor."""
        self._cursor = await self.repo.last_id()
        logger.info("Tick source starts after id=%d", self._cursor)
        return self._cursor

    async def poll(self) -> AsyncIterator[Tick]:
        """Yield new ticks in feed order until the feed is drained."""
        while True:
            try:
                ticks, new_cursor = await self._fetch_page()
            except FeedUnavailableError as e:
                logger.error("%s; resuming from id=%d next cycle", e, self._cursor)
                return

            previous = self._cursor
            self._cursor = new_cursor

            for tick in ticks:
                self.ticks_read += 1
                yield tick

            if new_cursor == previous or len(ticks) < self.batch_size:
                return

    async def fetch_history(self, since: datetime) -> list[Tick]:
        """Ticks since ``since`` up to the current cursor, for warm-up and export."""
        return await self.repo.fetch_history(since, self.tick_filter, until_id=self._cursor or None)

    async def _fetch_page(self) -> tuple[list[Tick], int]:
        delay = self.base_delay
        for attempt in range(1, self.max_retries + 1):
            try:
                return await self.repo.fetch_after(self._cursor, self.tick_filter, self.batch_size)
            except TRANSIENT_ERRORS as e:
                if attempt == self.max_retries:
                    raise FeedUnavailableError(
                        f"Tick feed unavailable after {attempt} attempts: {e}"
                    ) from e
                logger.warning(
                    "Tick feed error (attempt %d/%d): %s, retrying in %.1fs",
                    attempt, self.max_retries, e, delay,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.max_delay)
        raise FeedUnavailableError("Tick feed unavailable")
