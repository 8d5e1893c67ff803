"""Notification sink for signals and order outcomes.

``publish()`` never blocks and never raises: events go into a bounded
queue (the oldest event is dropped when it is full) and a worker task
delivers them. Delivery is best-effort.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    """Notification category."""

    SIGNAL = "signal"
    ORDER_FILLED = "order_filled"
    ORDER_FAILED = "order_failed"
    TRADE = "trade"
    CONNECTION = "connection"
    SYSTEM = "system"


@dataclass(frozen=True)
class NotificationEvent:
    """One discrete notification."""

    kind: NotificationKind
    text: str
    sec_code: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


class Notifier(Protocol):
    """Notification sink interface."""

    def publish(self, event: NotificationEvent) -> None: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


class LogNotifier:
    """Writes notifications to the log (used without a Telegram token)."""

    def publish(self, event: NotificationEvent) -> None:
        logger.info("[%s] %s", event.kind.value, event.text)

    async def start(self) -> None:
        logger.info("Telegram token not set, notifications go to the log only")

    async def stop(self) -> None:
        pass


class TelegramNotifier:
    """Broadcasts notifications through the Telegram Bot API.

    Recipients are the configured chat ids plus every chat that sent
    ``/start`` to the bot while it was running.
    """

    BASE_URL = "https://api.telegram.org"
    SUBSCRIBED_TEXT = "Вы подписались на рассылку!"

    def __init__(
        self,
        token: str,
        chat_ids: list[int] | None = None,
        queue_size: int = 100,
        listen_updates: bool = True,
        client: httpx.AsyncClient | None = None,
    ):
        self.token = token
        self.subscribers: set[int] = set(chat_ids or [])
        self.listen_updates = listen_updates
        self._queue: asyncio.Queue[NotificationEvent] = asyncio.Queue(maxsize=queue_size)
        self._client = client
        self._owns_client = client is None
        self._tasks: list[asyncio.Task] = []
        self._update_offset = 0
        self.dropped = 0
        self.sent = 0

    def publish(self, event: NotificationEvent) -> None:
        """Queue an event for delivery without waiting."""
        if self._queue.full():
            try:
                self._queue.get_nowait()
                self.dropped += 1
            except asyncio.QueueEmpty:
                pass
        self._queue.put_nowait(event)

    async def start(self) -> None:
        """Start the delivery worker and the /start listener."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=f"{self.BASE_URL}/bot{self.token}",
                timeout=httpx.Timeout(40.0, connect=10.0),
            )
        self._tasks.append(asyncio.create_task(self._send_worker(), name="telegram-send"))
        if self.listen_updates:
            self._tasks.append(asyncio.create_task(self._updates_worker(), name="telegram-updates"))
        logger.info("Telegram notifier started (%d subscribers)", len(self.subscribers))

    async def stop(self, drain_timeout: float = 5.0) -> None:
        """Deliver what is queued (bounded by ``drain_timeout``) and stop."""
        if self._tasks:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("Dropping %d undelivered notifications", self._queue.qsize())
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _send_worker(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                for chat_id in sorted(self.subscribers):
                    await self.send_message(chat_id, event.text)
            finally:
                self._queue.task_done()

    async def send_message(self, chat_id: int, text: str) -> bool:
        """Send one message; errors are logged, never raised."""
        try:
            response = await self._client.post(
                "/sendMessage", json={"chat_id": chat_id, "text": text}
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Telegram send to {chat_id} failed: {e}")
            return False
        self.sent += 1
        return True

    async def _updates_worker(self) -> None:
        delay = 1.0
        while True:
            try:
                await self.poll_updates(timeout=30)
                delay = 1.0
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"Telegram getUpdates failed: {e}, retrying in {delay:.0f}s")
                await asyncio.sleep(delay)
                delay = min(delay * 2, 60.0)

    async def poll_updates(self, timeout: int = 0) -> list[int]:
        """Fetch new bot updates and register chats that sent /start.

        Returns:
            Newly subscribed chat ids
        """
        response = await self._client.get(
            "/getUpdates", params={"offset": self._update_offset, "timeout": timeout}
        )
        response.raise_for_status()
        payload = response.json()

        new_chats = []
        for update in payload.get("result", []):
            self._update_offset = max(self._update_offset, update["update_id"] + 1)
            message = update.get("message") or {}
            if (message.get("text") or "").strip() != "/start":
                continue
            chat_id = message["chat"]["id"]
            if chat_id not in self.subscribers:
                self.subscribers.add(chat_id)
                new_chats.append(chat_id)
                logger.info("Telegram chat %s subscribed", chat_id)
            await self.send_message(chat_id, self.SUBSCRIBED_TEXT)
        return new_chats
