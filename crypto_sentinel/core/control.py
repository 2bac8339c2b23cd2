"""
Admin control channel
Serves status / pause / resume / config / analyze commands against the live context
"""

import asyncio
import shlex
from typing import Dict, List, Optional
from dataclasses import dataclass, field
import logging

from .context import SentinelContext
from .engine import TradingEngine
from .state_store import PersistenceError
from ..utils.config_loader import ConfigUpdateError

logger = logging.getLogger(__name__)

COMMANDS = ("status", "pause", "resume", "config_view", "config_set", "analyze", "help")

HELP_TEXT = (
    "Commands:\n"
    "  status                 bot status and daily PnL\n"
    "  pause                  halt new entries\n"
    "  resume                 reset the breaker and resume trading\n"
    "  config view            show tunable settings\n"
    "  config set <key> <v>   update a setting (e.g. risk.maxRiskPerTrade 0.02)\n"
    "  analyze <SYMBOL>       technical screen and news verdict for a pair\n"
    "  help                   this message"
)


class CommandParseError(ValueError):
    pass


@dataclass
class ControlCommand:
    name: str
    user_id: str
    args: List[str] = field(default_factory=list)


def parse_command(text: str, user_id: str) -> ControlCommand:
    """
    Parse chat-style input such as "/config set risk.minSentiment 25".

    Raises:
        CommandParseError: empty input or unknown command
    """
    try:
        parts = shlex.split(text.strip().lstrip("/"))
    except ValueError as e:
        raise CommandParseError(str(e))

    if not parts:
        raise CommandParseError("Empty command")

    name, args = parts[0].lower(), parts[1:]
    if name == "config":
        if not args or args[0].lower() not in ("view", "set"):
            raise CommandParseError("Usage: config view | config set <key> <value>")
        name, args = f"config_{args[0].lower()}", args[1:]

    if name not in COMMANDS:
        raise CommandParseError(f"Unknown command: {name}")

    return ControlCommand(name=name, user_id=str(user_id), args=args)


class ControlChannel:
    """
    Actor that owns command handling.

    Commands are queued and served one at a time by run(); each caller
    awaits its own reply. State changes go through the same RiskManager
    and ConfigManager the engine reads.
    """

    def __init__(self, context: SentinelContext, engine: Optional[TradingEngine] = None):
        self.context = context
        self.engine = engine
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    @property
    def admin_ids(self) -> List[str]:
        return [str(u) for u in self.context.config.notifications.admin_user_ids]

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="control-channel")

    async def stop(self) -> None:
        if self._task and not self._task.done():
            await self._queue.put(None)
            await self._task
        self._task = None

    async def submit(self, command: ControlCommand) -> str:
        """Queue a command and wait for its reply"""
        future = asyncio.get_running_loop().create_future()
        await self._queue.put((command, future))
        return await future

    async def run(self) -> None:
        while True:
            item = await self._queue.get()
            if item is None:
                break

            command, future = item
            reply = await self.handle(command)
            if not future.done():
                future.set_result(reply)

    async def handle(self, command: ControlCommand) -> str:
        if command.user_id not in self.admin_ids:
            logger.warning(f"Rejected control command '{command.name}' from non-admin {command.user_id}")
            return "Access denied. You are not an admin."

        handler = getattr(self, f"_cmd_{command.name}", None)
        if handler is None:
            return f"Unknown command: {command.name}"

        logger.info(f"Control command '{command.name}' from {command.user_id}")
        try:
            return await handler(command.args)
        except PersistenceError as e:
            logger.critical(f"Control command '{command.name}' could not persist state: {e}")
            return f"State could not be saved, trading remains HALTED: {e}"
        except Exception as e:
            logger.error(f"Control command '{command.name}' failed: {e}", exc_info=True)
            return f"Command failed: {e}"

    async def _cmd_status(self, args: List[str]) -> str:
        status = self.context.risk_manager.get_status()
        state = "HALTED" if not status["can_trade"] else "RUNNING"
        lines = [
            f"Status: {state}",
            f"Balance: {status['current_balance']:.2f} USDT",
            f"Daily PnL: {status['daily_pnl'] * 100:.2f}%",
            f"Trades Today: {status['trades_count']}/{status['max_trades_per_day']}",
            f"Date: {status['date']}",
        ]
        if status["halt_reason"]:
            lines.insert(1, f"Reason: {status['halt_reason']}")
        return "\n".join(lines)

    async def _cmd_pause(self, args: List[str]) -> str:
        self.context.risk_manager.halt("paused by admin")
        return "Bot paused. No new trades will be opened."

    async def _cmd_resume(self, args: List[str]) -> str:
        self.context.risk_manager.reset_breaker()
        return "Bot resumed. Trading active."

    async def _cmd_config_view(self, args: List[str]) -> str:
        settings = self.context.config_manager.view_settings()
        return "\n".join(f"{k}: {v}" for k, v in settings.items())

    async def _cmd_config_set(self, args: List[str]) -> str:
        if len(args) != 2:
            return "Usage: config set <key> <value>"

        key, raw = args
        try:
            value = self.context.config_manager.update_setting(key, raw)
        except ConfigUpdateError as e:
            return f"Rejected: {e}"

        logger.info(f"Config updated via control channel: {key} = {value}")
        return f"Updated {key} to {value}"

    async def _cmd_analyze(self, args: List[str]) -> str:
        if len(args) != 1:
            return "Usage: analyze <SYMBOL>"
        if self.engine is None:
            return "Analysis unavailable: engine not running"

        report = await self.engine.analyze_pair(args[0].upper())
        return format_analysis(report)

    async def _cmd_help(self, args: List[str]) -> str:
        return HELP_TEXT


def format_analysis(report: Dict) -> str:
    lines = [f"Analysis: {report['pair']}"]

    if report.get("error"):
        lines.append(f"Failed: {report['error']}")
        return "\n".join(lines)

    lines.append(f"Price: {report['price']}")

    screen = report.get("screen")
    if screen is not None:
        rsi_short = f"{screen.short_rsi:.1f}" if screen.short_rsi is not None else "n/a"
        rsi_long = f"{screen.long_rsi:.1f}" if screen.long_rsi is not None else "n/a"
        lines.append(
            f"Technicals: {'candidate' if screen.is_candidate else 'no'} "
            f"({screen.reason}), RSI short={rsi_short} long={rsi_long}"
        )

    verdict = report.get("verdict")
    if verdict is None:
        lines.append("Sentiment: no data")
    else:
        lines.append(
            f"Sentiment: {verdict.verdict} / {verdict.suggested_action} "
            f"(confidence {verdict.confidence:.0f}, impact {verdict.impact})"
        )
        if verdict.reasoning:
            lines.append(f"Reasoning: {verdict.reasoning}")

    return "\n".join(lines)
