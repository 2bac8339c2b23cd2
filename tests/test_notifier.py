import asyncio

import pytest

from crypto_sentinel.core.notifier import DiscordNotifier, MAX_MESSAGE_LENGTH
from crypto_sentinel.utils.config_loader import NotificationConfig


@pytest.fixture
def notifier(monkeypatch):
    notifier = DiscordNotifier(NotificationConfig(discord_webhook_url="https://discord.test/hook"))
    notifier.payloads = []

    async def fake_post(payload):
        await asyncio.sleep(0)
        notifier.payloads.append(payload)

    monkeypatch.setattr(notifier, "_post", fake_post)
    return notifier


@pytest.mark.asyncio
async def test_alert_is_delivered_in_background(notifier):
    notifier.send_alert("hello")
    assert notifier.payloads == []

    await notifier.flush(timeout=1)

    assert notifier.payloads == [{"content": "hello"}]


@pytest.mark.asyncio
async def test_long_alerts_are_truncated(notifier):
    notifier.send_alert("x" * 5000)
    await notifier.flush(timeout=1)

    assert len(notifier.payloads[0]["content"]) == MAX_MESSAGE_LENGTH


@pytest.mark.asyncio
async def test_trade_alert_embed(notifier):
    notifier.send_trade_alert({
        "symbol": "SOLUSDT",
        "side": "BUY",
        "price": 100.0,
        "quantity": 0.2,
        "take_profit": 104.0,
        "stop_loss": 98.0,
        "reason": "ETF inflows",
    })
    await notifier.flush(timeout=1)

    embed = notifier.payloads[0]["embeds"][0]
    assert embed["title"] == "BUY SOLUSDT"
    assert [f["name"] for f in embed["fields"]] == ["Price", "Quantity", "Take Profit", "Stop Loss", "Reason"]


@pytest.mark.asyncio
async def test_disabled_without_webhook():
    notifier = DiscordNotifier(NotificationConfig())

    notifier.send_alert("hello")

    assert not notifier.enabled
    assert notifier._pending == set()
    await notifier.close()
