"""Trader: wires the feed, the signal pipeline and the order manager.

Startup order (any failure before the tasks start is fatal):

1. verify the tick feed schema
2. position the tick cursor at the end of the feed and warm up the
   moving-average windows from history
3. load trans2quik and connect to the terminal
4. start the order manager, poll, connector supervisor and notifier tasks

Shutdown order:

1. stop accepting orders; nothing is submitted once shutdown begins
2. stop the poll task and close the callback bridge
3. drain the order manager inbox, callbacks raised before the bridge
   closed included
4. disconnect from the terminal
"""

import asyncio
import logging
from datetime import datetime, timedelta
from pathlib import Path

from app.config import Settings
from app.models import Signal, SignalDirection
from app.services.notifier import (
    LogNotifier,
    NotificationEvent,
    NotificationKind,
    Notifier,
    TelegramNotifier,
)
from app.services.order_manager import OrderManager
from app.services.terminal_connector import CallbackBridge, TerminalConnector
from app.services.tick_source import TickSource
from app.storage import Database, TickFilter, TickRepository, init_database
from app.storage.recording import TickRecorder
from app.trading_config import TradingConfig
from core.orders import OrderStateMachine
from core.signal_generator import SignalGenerator

logger = logging.getLogger(__name__)


class Trader:
    """Owns every component and task of a running trading agent."""

    def __init__(
        self,
        config: TradingConfig,
        settings: Settings,
        database: Database | None = None,
        connector: TerminalConnector | None = None,
        notifier: Notifier | None = None,
    ):
        self.config = config
        self.settings = settings
        self.tz = config.tz

        self.database = database
        self.connector = connector or TerminalConnector(config.order_config(), config.sec_code)
        token = settings.telegram_token or config.tg_token
        self.notifier = notifier or (
            TelegramNotifier(token, config.tg_chat_ids) if token else LogNotifier()
        )

        self.generator = SignalGenerator(config.strategy_config())
        self.machine = OrderStateMachine(config.order_config())
        self.order_manager = OrderManager(
            self.machine, self.connector, self.notifier, config.order_timeout_s
        )

        self.tick_source: TickSource | None = None
        self.bridge: CallbackBridge | None = None
        self.recorder: TickRecorder | None = None

        self._tasks: dict[str, asyncio.Task] = {}
        self._stop_event = asyncio.Event()
        self._started = False
        self.last_poll_at: datetime | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start everything; raises on any fatal startup error."""
        loop = asyncio.get_running_loop()

        if self.database is None:
            self.database = await init_database(self.config.psql_conn_str or None)
        await self.database.verify_schema()

        repo = TickRepository(self.tz, self.database)
        self.tick_source = TickSource(
            repo,
            TickFilter(
                class_code=self.config.class_code,
                sec_codes=tuple(self.config.sec_code),
                instrument_status=self.config.instrument_status,
            ),
            batch_size=self.config.poll_batch_size,
        )
        await self.tick_source.start_from_latest()

        if self.config.warmup:
            await self._warmup()

        self.bridge = CallbackBridge(loop, self.order_manager.post_message)
        await asyncio.to_thread(
            self.connector.connect,
            self.config.path_to_lib,
            self.config.path_to_quik,
            self.bridge.submit,
        )

        if self.config.record_ticks_path:
            self.recorder = TickRecorder(Path(self.config.record_ticks_path))
            self.recorder.open()

        self.generator.on_signal(self.order_manager.post_signal)
        await self.notifier.start()

        self._tasks["orders"] = asyncio.create_task(self.order_manager.run(), name="order-manager")
        self._tasks["poll"] = asyncio.create_task(self._poll_loop(), name="tick-poll")
        self._tasks["connector"] = asyncio.create_task(
            self.connector.maintain_connection(), name="connector-supervisor"
        )
        self._started = True

        self.notifier.publish(
            NotificationEvent(
                NotificationKind.SYSTEM,
                f"Торговый агент запущен: {self.config.class_code} {','.join(self.config.sec_code)}",
            )
        )
        logger.info("Trader started")

    async def _warmup(self) -> None:
        strategy = self.config.strategy_config()
        span = timedelta(seconds=strategy.timeframe_s * (strategy.long_period + 1))
        since = datetime.now(self.tz) - span
        ticks = await self.tick_source.fetch_history(since)
        self.generator.warmup(ticks)

    async def stop(self) -> None:
        """Graceful shutdown."""
        logger.info("Shutting down trader...")
        self._stop_event.set()
        self.connector.close()
        self.order_manager.close()

        poll_task = self._tasks.pop("poll", None)
        if poll_task is not None:
            poll_task.cancel()
            try:
                await poll_task
            except asyncio.CancelledError:
                pass
        if self.bridge is not None:
            self.bridge.close()
            # let callbacks already scheduled by the library reach the inbox
            await asyncio.sleep(0)

        await self.order_manager.stop(self._tasks.pop("orders", None))

        supervisor = self._tasks.pop("connector", None)
        if supervisor is not None:
            supervisor.cancel()
            try:
                await supervisor
            except asyncio.CancelledError:
                pass

        await asyncio.to_thread(self.connector.disconnect)

        if self.recorder is not None:
            self.recorder.close()
        await self.notifier.stop()
        if self.database is not None:
            await self.database.close()
        self._started = False
        logger.info("Trader stopped")

    # ------------------------------------------------------------------
    # Poll task
    # ------------------------------------------------------------------

    async def _poll_loop(self) -> None:
        interval = self.config.poll_interval_s
        loop = asyncio.get_running_loop()
        while not self._stop_event.is_set():
            started = loop.time()
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Poll cycle failed")
            elapsed = loop.time() - started
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=max(0.0, interval - elapsed))
            except asyncio.TimeoutError:
                pass

    async def poll_once(self) -> int:
        """One poll cycle: read new ticks, run the pipeline, flush stale candles."""
        count = 0
        async for tick in self.tick_source.poll():
            if self.recorder is not None:
                self.recorder.write(tick)
            self.generator.process_tick(tick)
            count += 1
        self.generator.flush(datetime.now(self.tz))
        if self.recorder is not None and count:
            self.recorder.flush()
        self.last_poll_at = datetime.now(self.tz)
        return count

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def flatten(self, sec_code: str) -> Signal:
        """Queue a manual FLAT signal for an instrument."""
        signal = Signal(
            sec_code=sec_code,
            direction=SignalDirection.FLAT,
            timestamp=datetime.now(self.tz),
            source="manual",
        )
        self.order_manager.post_signal(signal)
        logger.info("Manual flatten requested for %s", sec_code)
        return signal

    def status(self) -> dict:
        """Snapshot for the status endpoint."""
        return {
            "started": self._started,
            "connector": {
                "state": self.connector.state.value,
                "server_connected": self.connector.server_connected,
            },
            "feed": {
                "cursor": self.tick_source.cursor if self.tick_source else None,
                "ticks_read": self.tick_source.ticks_read if self.tick_source else 0,
                "duplicates_dropped": self.generator.duplicates_dropped,
                "last_poll_at": self.last_poll_at.isoformat() if self.last_poll_at else None,
            },
            "orders": self.order_manager.status(),
        }
