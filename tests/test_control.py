import pytest

from crypto_sentinel.core.control import (
    ControlChannel, ControlCommand, CommandParseError, parse_command, HELP_TEXT
)
from crypto_sentinel.core.state_store import PersistenceError

from conftest import make_candles, alternating_closes, make_verdict

ADMIN = "1234"


@pytest.fixture
def channel(context, engine, config):
    config.notifications.admin_user_ids = [1234]
    return ControlChannel(context, engine)


def cmd(name, *args, user=ADMIN):
    return ControlCommand(name=name, user_id=user, args=list(args))


# Parsing

def test_parse_config_subcommands():
    command = parse_command("/config set risk.minSentiment 25", 42)
    assert command == ControlCommand("config_set", "42", ["risk.minSentiment", "25"])
    assert parse_command("config view", 42).name == "config_view"


def test_parse_plain_commands():
    assert parse_command("/Status", "1").name == "status"
    assert parse_command("analyze solusdt", "1").args == ["solusdt"]


@pytest.mark.parametrize("text", ["", "   ", "/launch", "config", "config reset"])
def test_parse_rejects_bad_input(text):
    with pytest.raises(CommandParseError):
        parse_command(text, "1")


# Authorization

@pytest.mark.asyncio
async def test_non_admin_is_denied(channel, risk_manager):
    reply = await channel.handle(cmd("pause", user="999"))

    assert reply == "Access denied. You are not an admin."
    assert risk_manager.can_trade()


@pytest.mark.asyncio
async def test_no_admins_configured_denies_everyone(channel, config):
    config.notifications.admin_user_ids = []

    assert "Access denied" in await channel.handle(cmd("status"))


# Commands

@pytest.mark.asyncio
async def test_pause_and_resume(channel, risk_manager):
    assert "paused" in await channel.handle(cmd("pause"))
    assert not risk_manager.can_trade()
    assert risk_manager.halt_reason == "paused by admin"

    assert "resumed" in await channel.handle(cmd("resume"))
    assert risk_manager.can_trade()


@pytest.mark.asyncio
async def test_status_reports_halt_reason(channel, risk_manager):
    risk_manager.update_balance(1000)
    risk_manager.halt("paused by admin")

    reply = await channel.handle(cmd("status"))

    assert "Status: HALTED" in reply
    assert "Reason: paused by admin" in reply
    assert "Balance: 1000.00 USDT" in reply
    assert "Trades Today: 0/10" in reply


@pytest.mark.asyncio
async def test_config_set_applies_to_live_config(channel, config):
    reply = await channel.handle(cmd("config_set", "risk.minSentiment", "25"))

    assert reply == "Updated risk.minSentiment to 25"
    assert config.risk.min_sentiment == 25


@pytest.mark.asyncio
async def test_config_set_rejections(channel, config):
    assert (await channel.handle(cmd("config_set", "allocation.core", "0.5"))).startswith("Rejected:")
    assert (await channel.handle(cmd("config_set", "risk.maxTradesPerDay", "many"))).startswith("Rejected:")
    assert "Usage" in await channel.handle(cmd("config_set", "risk.maxTradesPerDay"))
    assert config.allocation.core == 0.60
    assert config.risk.max_trades_per_day == 10


@pytest.mark.asyncio
async def test_config_view(channel):
    reply = await channel.handle(cmd("config_view"))

    assert "risk.maxRiskPerTrade: 0.01" in reply
    assert "allocation.core: 0.6" in reply


@pytest.mark.asyncio
async def test_help(channel):
    assert await channel.handle(cmd("help")) == HELP_TEXT


@pytest.mark.asyncio
async def test_analyze_pair(channel, exchange, sentiment):
    exchange.prices["SOLUSDT"] = 100.0
    exchange.candles[("SOLUSDT", "1h")] = make_candles(alternating_closes(50))
    exchange.candles[("SOLUSDT", "4h")] = make_candles(alternating_closes(30))
    sentiment.news["SOLUSDT"] = ["headline"]
    sentiment.verdicts["headline"] = make_verdict(confidence=91, reasoning="Mainnet upgrade")

    reply = await channel.handle(cmd("analyze", "solusdt"))

    assert "Analysis: SOLUSDT" in reply
    assert "Technicals: candidate (momentum)" in reply
    assert "Sentiment: BULLISH / BUY (confidence 91, impact HIGH)" in reply
    assert "Reasoning: Mainnet upgrade" in reply
    assert exchange.buys == []


@pytest.mark.asyncio
async def test_analyze_without_engine(context, config):
    config.notifications.admin_user_ids = [ADMIN]
    channel = ControlChannel(context)

    assert "unavailable" in await channel.handle(cmd("analyze", "SOLUSDT"))


@pytest.mark.asyncio
async def test_persistence_failure_is_reported(channel, risk_manager, monkeypatch):
    def failing_reset():
        raise PersistenceError("disk full")

    monkeypatch.setattr(risk_manager, "reset_breaker", failing_reset)

    reply = await channel.handle(cmd("resume"))

    assert reply.startswith("State could not be saved")


# Actor loop

@pytest.mark.asyncio
async def test_submitted_commands_are_served_in_order(channel, risk_manager):
    channel.start()
    try:
        first = await channel.submit(cmd("pause"))
        second = await channel.submit(cmd("status"))
    finally:
        await channel.stop()

    assert "paused" in first
    assert "Status: HALTED" in second


@pytest.mark.asyncio
async def test_failed_command_does_not_stop_the_actor(channel, exchange, sentiment, monkeypatch):
    exchange.prices["SOLUSDT"] = 100.0
    exchange.candles[("SOLUSDT", "1h")] = make_candles(alternating_closes(50))
    exchange.candles[("SOLUSDT", "4h")] = make_candles(alternating_closes(30))
    sentiment.news["SOLUSDT"] = ["headline"]

    async def broken_analyze(news, asset):
        raise ValueError("malformed model reply")

    monkeypatch.setattr(sentiment, "analyze_news", broken_analyze)

    channel.start()
    try:
        failed = await channel.submit(cmd("analyze", "SOLUSDT"))
        status = await channel.submit(cmd("status"))
    finally:
        await channel.stop()

    assert failed.startswith("Command failed")
    assert "malformed model reply" in failed
    assert status.startswith("Status: RUNNING")
