"""CLI entry point for offline replay.

Usage:
    python -m backtest replay ticks.jsonl --config config.yaml
    python -m backtest replay ticks.jsonl --config config.yaml --output result.json
    python -m backtest export ticks.jsonl --config config.yaml --start 2024-03-01
"""

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime, timedelta
from pathlib import Path

# Add backend to Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import orjson

from app.errors import ConfigError
from app.storage import TickFilter, TickRepository, dump_ticks, init_database, load_ticks
from app.trading_config import TradingConfig, load_trading_config

from backtest.engine import ReplayEngine, ReplayResult


def parse_date(date_str: str) -> datetime:
    """Parse YYYY-MM-DD (interpreted in the exchange time zone later)."""
    try:
        return datetime.strptime(date_str, "%Y-%m-%d")
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"Invalid date format: {date_str} (expected YYYY-MM-DD)"
        )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Replay recorded ticks through the crossover strategy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m backtest replay data/ticks.jsonl --config config.yaml
  python -m backtest export data/ticks.jsonl --config config.yaml --start 2024-03-01 --end 2024-03-02
        """,
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        default=Path("config.yaml"),
        help="Trading configuration file (default: config.yaml)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    replay = sub.add_parser("replay", help="Replay a tick recording")
    replay.add_argument("recording", type=Path, help="JSON lines tick recording")
    replay.add_argument(
        "--output", "-o",
        type=Path,
        default=None,
        help="Output file path for JSON results",
    )

    export = sub.add_parser("export", help="Export ticks from the feed database")
    export.add_argument("recording", type=Path, help="Output JSON lines file")
    export.add_argument("--start", type=parse_date, required=True, help="Start date (YYYY-MM-DD)")
    export.add_argument("--end", type=parse_date, default=None, help="End date, exclusive (YYYY-MM-DD)")

    return parser.parse_args(argv)


def print_result(result: ReplayResult) -> None:
    summary = result.summary()
    print(
        f"\nTicks: {summary['ticks']}  Candles: {summary['candles']}  "
        f"Signals: {summary['signals']}  Orders: {summary['orders']}"
    )
    if result.signals:
        print(f"\n{'Time':<27} {'Instrument':<12} {'Direction':<8}")
        print("-" * 50)
        for signal in result.signals:
            print(f"{signal.timestamp.isoformat():<27} {signal.sec_code:<12} {signal.direction.value:<8}")

    if summary["instruments"]:
        print(f"\n{'Instrument':<12} {'Position':>9} {'PnL':>14}")
        print("-" * 37)
        for sec_code, row in summary["instruments"].items():
            print(f"{sec_code:<12} {row['position']:>9} {row['pnl']:>14}")
    print()


def result_to_json(result: ReplayResult) -> bytes:
    payload = {
        "summary": result.summary(),
        "signals": [s.model_dump(mode="json") for s in result.signals],
        "orders": [o.model_dump(mode="json") for o in result.orders],
        "fills": [
            {
                "trans_id": f.trans_id,
                "sec_code": f.sec_code,
                "side": f.side.value,
                "quantity": f.quantity,
                "price": str(f.price),
                "timestamp": f.timestamp.isoformat(),
            }
            for f in result.fills
        ],
    }
    return orjson.dumps(payload, option=orjson.OPT_INDENT_2)


def cmd_replay(config: TradingConfig, recording: Path, output: Path | None) -> None:
    ticks = load_ticks(recording)
    engine = ReplayEngine(config.strategy_config(), config.order_config())
    result = engine.run(ticks)
    print_result(result)
    if output is not None:
        output.write_bytes(result_to_json(result))
        print(f"Results written to {output}")


async def cmd_export(config: TradingConfig, recording: Path, start: datetime, end: datetime | None) -> None:
    tz = config.tz
    since = start.replace(tzinfo=tz)
    until = end.replace(tzinfo=tz) if end is not None else None

    db = await init_database(config.psql_conn_str or None)
    try:
        await db.verify_schema()
        repo = TickRepository(tz, db)
        tick_filter = TickFilter(
            class_code=config.class_code,
            sec_codes=tuple(config.sec_code),
            instrument_status=config.instrument_status,
        )
        ticks = await repo.fetch_history(since, tick_filter)
    finally:
        await db.close()

    if until is not None:
        ticks = [t for t in ticks if t.timestamp < until]
    count = dump_ticks(ticks, recording)
    print(f"Exported {count} ticks to {recording}")


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)

    try:
        config = load_trading_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    if args.command == "replay":
        try:
            cmd_replay(config, args.recording, args.output)
        except (OSError, ValueError) as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
    elif args.command == "export":
        asyncio.run(cmd_export(config, args.recording, args.start, args.end))


if __name__ == "__main__":
    main()
