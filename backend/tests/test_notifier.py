"""Tests for the notification sinks."""

import asyncio

import httpx
import orjson
import pytest

from app.services.notifier import (
    LogNotifier,
    NotificationEvent,
    NotificationKind,
    TelegramNotifier,
)


class FakeTelegram:
    """Telegram Bot API served through httpx.MockTransport."""

    def __init__(self, updates=None, fail_send: bool = False):
        self.updates = list(updates or [])
        self.fail_send = fail_send
        self.messages: list[dict] = []
        self.offsets: list[int] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/sendMessage"):
            if self.fail_send:
                return httpx.Response(500, json={"ok": False})
            self.messages.append(orjson.loads(request.content))
            return httpx.Response(200, json={"ok": True, "result": {}})
        if request.url.path.endswith("/getUpdates"):
            self.offsets.append(int(request.url.params["offset"]))
            updates, self.updates = self.updates, []
            return httpx.Response(200, json={"ok": True, "result": updates})
        return httpx.Response(404)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url="https://api.telegram.org/botTEST",
            transport=httpx.MockTransport(self.handler),
        )


def _event(text: str = "hello") -> NotificationEvent:
    return NotificationEvent(NotificationKind.SYSTEM, text)


def _start_update(update_id: int, chat_id: int, text: str = "/start") -> dict:
    return {"update_id": update_id, "message": {"chat": {"id": chat_id}, "text": text}}


class TestTelegramNotifier:
    """Tests for TelegramNotifier."""

    @pytest.mark.asyncio
    async def test_publish_never_blocks(self):
        notifier = TelegramNotifier("TEST", [1], queue_size=2, client=FakeTelegram().client())

        for i in range(5):
            notifier.publish(_event(str(i)))

        assert notifier.dropped == 3
        assert notifier._queue.qsize() == 2

    @pytest.mark.asyncio
    async def test_delivers_to_every_subscriber(self):
        api = FakeTelegram()
        notifier = TelegramNotifier("TEST", [2, 1], listen_updates=False, client=api.client())

        await notifier.start()
        notifier.publish(_event("signal"))
        await notifier.stop()

        assert [m["chat_id"] for m in api.messages] == [1, 2]
        assert all(m["text"] == "signal" for m in api.messages)
        assert notifier.sent == 2

    @pytest.mark.asyncio
    async def test_send_failure_is_logged_not_raised(self):
        notifier = TelegramNotifier("TEST", [1], client=FakeTelegram(fail_send=True).client())
        assert await notifier.send_message(1, "x") is False
        assert notifier.sent == 0

    @pytest.mark.asyncio
    async def test_start_command_subscribes(self):
        api = FakeTelegram(updates=[
            _start_update(10, 42),
            _start_update(11, 43, "hello"),
        ])
        notifier = TelegramNotifier("TEST", [], client=api.client())

        new_chats = await notifier.poll_updates()

        assert new_chats == [42]
        assert notifier.subscribers == {42}
        assert api.messages == [{"chat_id": 42, "text": TelegramNotifier.SUBSCRIBED_TEXT}]

        await notifier.poll_updates()
        assert api.offsets == [0, 12]

    @pytest.mark.asyncio
    async def test_repeated_start_does_not_duplicate(self):
        api = FakeTelegram(updates=[_start_update(1, 42), _start_update(2, 42)])
        notifier = TelegramNotifier("TEST", [42], client=api.client())

        assert await notifier.poll_updates() == []
        assert notifier.subscribers == {42}

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        notifier = TelegramNotifier("TEST", [1], client=FakeTelegram().client())
        notifier.publish(_event())
        await asyncio.wait_for(notifier.stop(), timeout=1)


class TestLogNotifier:
    @pytest.mark.asyncio
    async def test_logs(self, caplog):
        notifier = LogNotifier()
        await notifier.start()
        with caplog.at_level("INFO", logger="app.services.notifier"):
            notifier.publish(_event("Сигнал LONG SBER"))
        await notifier.stop()
        assert "Сигнал LONG SBER" in caplog.text
