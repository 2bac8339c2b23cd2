import asyncio

import aiohttp
import pytest
import pytest_asyncio

from crypto_sentinel.core.command_listener import DiscordCommandListener, DiscordError
from crypto_sentinel.core.control import ControlChannel

ADMIN = "1234"


class FakeDiscord:
    """Channel history plus every call made against it"""

    def __init__(self, messages=None):
        self.messages = list(messages or [])
        self.posted = []
        self.fetches = []
        self.fail_with = None

    async def request(self, method, path, params=None, payload=None):
        if self.fail_with:
            raise self.fail_with
        if method == "POST":
            self.posted.append((path, payload))
            return {"id": "999"}

        self.fetches.append(params)
        after = int(params.get("after", 0))
        newer = [m for m in self.messages if int(m["id"]) > after]
        # Discord lists newest first
        return list(reversed(newer))[:params["limit"]]


def message(message_id, content, author_id=ADMIN, bot=False):
    return {"id": str(message_id), "content": content, "author": {"id": author_id, "bot": bot}}


@pytest.fixture
def control(context, engine, config):
    config.notifications.admin_user_ids = [ADMIN]
    return ControlChannel(context, engine)


@pytest.fixture
def discord():
    return FakeDiscord([message(1, "/pause"), message(2, "hello")])


@pytest_asyncio.fixture
async def listener(config, control, discord, monkeypatch):
    config.notifications.bot_token = "bot-token"
    config.notifications.channel_id = "555"
    listener = DiscordCommandListener(config.notifications, control)
    monkeypatch.setattr(listener, "_request", discord.request)
    control.start()
    yield listener
    await control.stop()


@pytest.mark.asyncio
async def test_history_before_start_is_ignored(listener, discord, risk_manager):
    assert await listener.poll_once() == 0
    assert listener.last_message_id == "2"

    assert await listener.poll_once() == 0
    assert discord.posted == []
    assert risk_manager.can_trade()


@pytest.mark.asyncio
async def test_commands_are_served_and_answered(listener, discord, risk_manager):
    await listener.poll_once()
    discord.messages += [
        message(3, "/pause"),
        message(4, "just chatting"),
        message(5, "!status"),
    ]

    assert await listener.poll_once() == 2

    assert not risk_manager.can_trade()
    path, first = discord.posted[0]
    assert path == "/channels/555/messages"
    assert first["message_reference"] == {"message_id": "3"}
    assert "paused" in first["content"]
    assert discord.posted[1][1]["content"].startswith("Status: HALTED")
    assert listener.last_message_id == "5"
    assert listener.commands_served == 2


@pytest.mark.asyncio
async def test_each_command_is_served_once(listener, discord):
    await listener.poll_once()
    discord.messages.append(message(3, "/help"))

    await listener.poll_once()
    await listener.poll_once()

    assert len(discord.posted) == 1
    assert discord.fetches[-1]["after"] == "3"


@pytest.mark.asyncio
async def test_non_admin_gets_denial(listener, discord, risk_manager):
    await listener.poll_once()
    discord.messages.append(message(3, "/pause", author_id="42"))

    await listener.poll_once()

    assert risk_manager.can_trade()
    assert discord.posted[0][1]["content"] == "Access denied. You are not an admin."


@pytest.mark.asyncio
async def test_bot_messages_are_skipped(listener, discord):
    await listener.poll_once()
    discord.messages.append(message(3, "/pause", bot=True))

    assert await listener.poll_once() == 0
    assert discord.posted == []


@pytest.mark.asyncio
async def test_unknown_command_gets_usage_hint(listener, discord):
    await listener.poll_once()
    discord.messages.append(message(3, "/moon"))

    await listener.poll_once()

    reply = discord.posted[0][1]["content"]
    assert "Unknown command: moon" in reply
    assert "/help" in reply


@pytest.mark.asyncio
async def test_long_replies_are_truncated(listener, discord, monkeypatch, control):
    async def verbose_status(args):
        return "x" * 5000

    monkeypatch.setattr(control, "_cmd_status", verbose_status)
    await listener.poll_once()
    discord.messages.append(message(3, "/status"))

    await listener.poll_once()

    assert len(discord.posted[0][1]["content"]) == 2000


@pytest.mark.asyncio
async def test_unreachable_channel_raises_discord_error(listener, discord):
    discord.fail_with = DiscordError("Discord request failed: reset")

    with pytest.raises(DiscordError):
        await listener.poll_once()
    assert listener.last_message_id is None


@pytest.mark.asyncio
async def test_failed_reply_is_counted_not_raised(listener, discord, monkeypatch):
    await listener.poll_once()
    discord.messages.append(message(3, "/help"))

    async def failing_reply_request(method, path, params=None, payload=None):
        if method == "POST":
            raise DiscordError("Discord API Error 403: Missing Permissions")
        return await discord.request(method, path, params=params, payload=payload)

    monkeypatch.setattr(listener, "_request", failing_reply_request)

    assert await listener.poll_once() == 1
    assert listener.errors == 1
    assert listener.last_message_id == "3"


@pytest.mark.asyncio
async def test_transport_errors_become_discord_errors(config, control, monkeypatch):
    config.notifications.bot_token = "bot-token"
    config.notifications.channel_id = "555"
    listener = DiscordCommandListener(config.notifications, control)

    class BrokenSession:
        closed = False

        def request(self, *args, **kwargs):
            raise aiohttp.ClientConnectionError("reset")

    async def get_session():
        return BrokenSession()

    monkeypatch.setattr(listener, "_get_session", get_session)

    with pytest.raises(DiscordError, match="reset"):
        await listener.poll_once()


@pytest.mark.asyncio
async def test_disabled_without_token(config, control):
    listener = DiscordCommandListener(config.notifications, control)

    listener.start()

    assert not listener.enabled
    assert listener._task is None
    await listener.stop()


@pytest.mark.asyncio
async def test_start_and_stop_background_polling(listener, discord, config):
    config.notifications.command_poll_seconds = 0.01

    listener.start()
    await asyncio.sleep(0.05)
    await listener.stop()

    assert discord.fetches
    assert listener._task is None
