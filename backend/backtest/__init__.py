"""Offline replay of recorded tick streams.

Only depends on core/ for the strategy and the order state machine;
the CLI additionally uses app/ to load configuration and export ticks
from the feed database.

Usage:
    python -m backtest replay ticks.jsonl --config config.yaml
    python -m backtest export ticks.jsonl --config config.yaml --start 2024-03-01
"""

from backtest.engine import PaperFill, ReplayEngine, ReplayResult

__all__ = ["PaperFill", "ReplayEngine", "ReplayResult"]
