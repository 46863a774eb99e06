"""
Notification and side-channel tests.

Side effects never block or fail the primary path.
"""

import asyncio
import json

import httpx
import pytest

from threadgate.engine.notifications import NotificationService
from threadgate.integrations.notifier import TelegramNotifier
from threadgate.integrations.side_channel import BestEffortChannel
from threadgate.webhooks import normalize

from fakes import BOT, OPS_CHAT, FakeNotifier, issue_payload


@pytest.mark.asyncio
async def test_markdown_rejection_retries_plain():
    notifier = FakeNotifier(reject_markdown=True)

    assert await notifier.send(OPS_CHAT, "*Bold* `code`")

    assert notifier.attempts == [(OPS_CHAT, "*Bold* `code`", True), (OPS_CHAT, "Bold code", False)]
    assert notifier.sent == [(OPS_CHAT, "Bold code", False)]


@pytest.mark.asyncio
async def test_total_rejection_is_dropped_not_raised():
    notifier = FakeNotifier(reject_all=True)

    assert not await notifier.send(OPS_CHAT, "*hello*")
    assert len(notifier.attempts) == 2
    assert not await notifier.send(OPS_CHAT, "plain", markdown=False)
    assert len(notifier.attempts) == 3


@pytest.mark.asyncio
async def test_side_channel_isolates_failures():
    channel = BestEffortChannel(base_backoff=0)
    done = []

    async def ok():
        done.append("ok")

    async def broken():
        raise RuntimeError("chat api down")

    channel.fire("ok", ok)
    channel.fire("broken", broken)
    await channel.drain()

    stats = channel.stats
    assert done == ["ok"]
    assert (stats.scheduled, stats.succeeded, stats.failed) == (2, 1, 1)
    assert channel.pending == 0


@pytest.mark.asyncio
async def test_side_channel_retries():
    channel = BestEffortChannel(base_backoff=0)
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise RuntimeError("transient")
        return "sent"

    task = channel.fire("flaky", flaky, retries=2)
    await channel.drain()

    assert task.result() == "sent"
    assert channel.stats.retried == 2
    assert channel.stats.succeeded == 1


@pytest.mark.asyncio
async def test_drain_cancels_stragglers():
    channel = BestEffortChannel()
    never = asyncio.Event()

    channel.fire("stuck", never.wait)
    await channel.drain(timeout=0.05)

    assert channel.pending == 0


@pytest.mark.asyncio
async def test_notification_service_gating():
    notifier = FakeNotifier()
    channel = BestEffortChannel()
    service = NotificationService(notifier, channel, chat_id=OPS_CHAT, bot_login=BOT)

    assert service.notify_webhook(normalize("issues", issue_payload("opened", 1)))
    assert not service.notify_webhook(normalize("issues", issue_payload("opened", 2, sender=BOT)))
    assert not service.notify_webhook(normalize("release", {"action": "published"}))
    await channel.drain()

    assert len(notifier.sent) == 1
    assert notifier.texts()[0].startswith("*New issue* in `acme/app`")

    silent = NotificationService(notifier, channel, chat_id=None, bot_login=BOT)
    assert not silent.enabled
    assert not silent.notify("anyone there?")


@pytest.mark.asyncio
async def test_telegram_notifier_request():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"ok": True, "result": {}})

    notifier = TelegramNotifier(
        "bot-token", api_url="https://telegram.test", transport=httpx.MockTransport(handler)
    )

    assert await notifier.send(OPS_CHAT, "*hi*")

    assert len(requests) == 1
    assert str(requests[0].url) == "https://telegram.test/botbot-token/sendMessage"
    body = requests[0].read()
    assert b'"parse_mode":"Markdown"' in body.replace(b" ", b"")
    assert b'"chat_id":"ops-chat"' in body.replace(b" ", b"")


@pytest.mark.asyncio
async def test_telegram_parse_error_falls_back_to_plain():
    modes = []

    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.read())
        modes.append(payload.get("parse_mode"))
        if payload.get("parse_mode"):
            return httpx.Response(400, json={"ok": False, "description": "can't parse entities"})
        return httpx.Response(200, json={"ok": True})

    notifier = TelegramNotifier("t", api_url="https://telegram.test", transport=httpx.MockTransport(handler))

    assert await notifier.send(OPS_CHAT, "*broken_markdown")
    assert modes == ["Markdown", None]
