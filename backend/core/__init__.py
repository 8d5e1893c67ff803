"""Core trading logic: candles, moving averages, hysteresis, order states.

This package contains pure business logic with no I/O dependencies
(no database, terminal or network access). It is shared between the
live trader (app/) and the replay engine (backtest/).
"""
