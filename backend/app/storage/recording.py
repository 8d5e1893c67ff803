"""Tick recordings as JSON lines.

One tick per line:

    {"sec_code":"SBER","class_code":"TQBR","price":"250.35","volume":"10",
     "timestamp":"2024-03-01T10:00:01+03:00","instrument_status":"торгуется"}

Prices and volumes are written as strings so they load back as the same
Decimal values.
"""

import logging
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Iterator

import orjson

from app.models import Tick

logger = logging.getLogger(__name__)


def tick_to_record(tick: Tick) -> dict:
    return {
        "sec_code": tick.sec_code,
        "class_code": tick.class_code,
        "price": str(tick.price),
        "volume": str(tick.volume),
        "timestamp": tick.timestamp.isoformat(),
        "instrument_status": tick.instrument_status,
    }


def record_to_tick(record: dict) -> Tick:
    return Tick(
        sec_code=record["sec_code"],
        class_code=record.get("class_code", ""),
        price=Decimal(record["price"]),
        volume=Decimal(record.get("volume", "0")),
        timestamp=datetime.fromisoformat(record["timestamp"]),
        instrument_status=record.get("instrument_status", ""),
    )


def dump_ticks(ticks: Iterable[Tick], path: Path) -> int:
    """Write ticks to a new recording; returns the number written."""
    count = 0
    with open(path, "wb") as f:
        for tick in ticks:
            f.write(orjson.dumps(tick_to_record(tick)))
            f.write(b"\n")
            count += 1
    return count


def iter_ticks(path: Path) -> Iterator[Tick]:
    """Read a recording lazily. Blank lines are skipped."""
    with open(path, "rb") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield record_to_tick(orjson.loads(line))
            except (orjson.JSONDecodeError, KeyError, ValueError) as e:
                raise ValueError(f"{path}:{line_no}: invalid tick record: {e}") from e


def load_ticks(path: Path) -> list[Tick]:
    """Read a whole recording."""
    return list(iter_ticks(path))


class TickRecorder:
    """Appends live ticks to a recording file."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._file = None
        self.count = 0

    def open(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.path, "ab")
        logger.info("Recording ticks to %s", self.path)

    def write(self, tick: Tick) -> None:
        if self._file is None:
            return
        self._file.write(orjson.dumps(tick_to_record(tick)))
        self._file.write(b"\n")
        self.count += 1

    def flush(self) -> None:
        if self._file is not None:
            self._file.flush()

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
            logger.info("Recorded %d ticks to %s", self.count, self.path)
