"""Data storage layer."""

from app.storage.database import Database, get_database, init_database
from app.storage.recording import TickRecorder, dump_ticks, iter_ticks, load_ticks
from app.storage.tick_repo import TickFilter, TickRepository, row_to_tick

__all__ = [
    "Database",
    "get_database",
    "init_database",
    "TickFilter",
    "TickRecorder",
    "TickRepository",
    "dump_ticks",
    "iter_ticks",
    "load_ticks",
    "row_to_tick",
]
