"""
Main Trading System
Wires configuration, risk state, collaborators and the scheduler together
"""

import asyncio
import signal
from typing import Dict, Optional
import logging

from .binance_client import BinanceClient, PaperBinanceClient, ExchangeError
from .command_listener import DiscordCommandListener
from .context import SentinelContext
from .control import ControlChannel
from .engine import TradingEngine
from .notifier import DiscordNotifier
from .risk_manager import RiskManager
from .scheduler import TradingScheduler, LoopType
from .sentiment import SentimentAnalyzer, FearGreedIndex
from .state_store import DailyStatsStore, PersistenceError
from ..utils.config_loader import ConfigManager
from ..utils.logger import setup_logging, TradeLogger

logger = logging.getLogger(__name__)


class StartupError(RuntimeError):
    """Unrecoverable failure before the first cycle"""


class TradingSystem:
    """
    Main Trading System

    Owns one SentinelContext and runs three cadences on it:
    - scan: portfolio valuation, breaker gate, candidate search, entries
    - trailing: stop ratchet on open protective orders
    - heartbeat: balance update, core rebalance, daily recap
    """

    def __init__(
        self,
        config_path: str = None,
        paper_trading: Optional[bool] = None,
        log_level: Optional[str] = None
    ):
        self.config_manager = ConfigManager(config_path)
        self.config = self.config_manager.config

        if paper_trading is not None:
            self.config.paper.enabled = paper_trading

        setup_logging(
            level=log_level or self.config.logging.level,
            log_file=self.config.logging.file
        )

        self.paper_trading = self.config.paper.enabled
        self.trade_logger = TradeLogger(self.config.logging.dir)

        self._init_components()

        self.initialized = False
        self._shutdown = asyncio.Event()

        mode = "PAPER" if self.paper_trading else ("TESTNET" if self.config.exchange.testnet else "LIVE")
        logger.info(f"Trading system created for pairs: {self.config.trading.pairs} ({mode} mode)")

    def _init_components(self) -> None:
        """Initialize all system components"""
        cfg = self.config

        self.risk_manager = RiskManager(
            config=cfg,
            store=DailyStatsStore(cfg.state.file),
            trade_logger=self.trade_logger
        )
        self.context = SentinelContext(
            config_manager=self.config_manager,
            risk_manager=self.risk_manager
        )

        if self.paper_trading:
            self.client = PaperBinanceClient(
                cfg.exchange,
                starting_balance=cfg.paper.starting_balance,
                quote_asset=cfg.trading.base_currency
            )
            logger.info("Using PAPER client (real market data, simulated orders)")
        else:
            self.client = BinanceClient(cfg.exchange, quote_asset=cfg.trading.base_currency)
            logger.info("Using LIVE Binance client")

        self.sentiment = SentimentAnalyzer(cfg.llm, trade_logger=self.trade_logger)
        self.market_gauge = FearGreedIndex(timeout_seconds=cfg.exchange.timeout_seconds)
        self.notifier = DiscordNotifier(cfg.notifications)

        self.engine = TradingEngine(
            context=self.context,
            exchange=self.client,
            sentiment=self.sentiment,
            market_gauge=self.market_gauge,
            notifier=self.notifier,
            trade_logger=self.trade_logger
        )
        self.control = ControlChannel(self.context, engine=self.engine)
        self.command_listener = DiscordCommandListener(cfg.notifications, self.control)

        self.scheduler = TradingScheduler(cfg.loops)
        self.scheduler.set_callback(LoopType.SCAN, self.engine.scan_cycle)
        self.scheduler.set_callback(LoopType.TRAILING, self.engine.manage_trailing_stops)
        self.scheduler.set_callback(LoopType.HEARTBEAT, self.engine.heartbeat)
        self.scheduler.set_error_callback(self._handle_error)

    async def initialize(self) -> bool:
        """
        Pre-flight checks: configuration and exchange connectivity.

        Raises:
            StartupError: configuration invalid or exchange unreachable
        """
        logger.info("Initializing trading system...")

        errors = self.config_manager.validate()
        if errors:
            for error in errors:
                logger.error(f"Config error: {error}")
            raise StartupError(f"Invalid configuration: {'; '.join(errors)}")

        try:
            await self.client.initialize()
            total_value = await self.client.get_total_value_usdt()
        except ExchangeError as e:
            logger.critical(f"Failed to connect to Binance: {e}")
            raise StartupError(f"Exchange unreachable: {e}") from e

        logger.info(f"Connected to Binance, portfolio value: {total_value:.2f} {self.config.trading.base_currency}")

        missing = [p for p in self.config.trading.pairs if self.client.symbols and p not in self.client.symbols]
        for pair in missing:
            logger.warning(f"{pair} not found in exchange symbols")

        logger.info("=" * 50)
        logger.info(f"PRE-FLIGHT CHECKS PASSED - {'PAPER' if self.paper_trading else 'LIVE'} TRADING READY")
        logger.info("=" * 50)

        self.initialized = True
        return True

    async def start(self) -> None:
        """Start the trading system and run until a shutdown is requested"""
        if not self.initialized:
            await self.initialize()

        self._setup_signal_handlers()

        status = self.risk_manager.get_status()
        logger.info("=" * 60)
        logger.info("TRADING SYSTEM STARTING")
        logger.info(f"Pairs: {self.config.trading.pairs}")
        logger.info(f"Core: {self.config.trading.core_coins} ({self.config.allocation.core:.0%})")
        logger.info(f"Mode: {'PAPER' if self.paper_trading else 'LIVE'}")
        logger.info(f"Breaker: {status['mode']} (trades today: {status['trades_count']})")
        logger.info("=" * 60)

        self.notifier.send_alert(
            f"Sentinel online ({'paper' if self.paper_trading else 'live'}). "
            f"Status: {status['mode'].upper()}"
        )

        self.control.start()
        self.command_listener.start()
        await self.scheduler.start()

        await self._shutdown.wait()
        await self.stop()

    def request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._shutdown.set()

    async def stop(self) -> None:
        """Stop the trading system gracefully"""
        logger.info("Stopping trading system...")

        await self.scheduler.stop()
        await self.command_listener.stop()
        await self.control.stop()
        await self.notifier.close()

        await self.client.close()
        await self.sentiment.close()
        await self.market_gauge.close()

        status = self.risk_manager.get_status()
        logger.info("=" * 60)
        logger.info("TRADING SYSTEM STOPPED")
        logger.info(f"Balance: {status['current_balance']:.2f}, Daily PnL: {status['daily_pnl'] * 100:.2f}%")
        logger.info(f"Trades today: {status['trades_count']}")
        logger.info("=" * 60)

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown handlers"""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except NotImplementedError:
                signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(self.request_shutdown))

    async def _handle_error(self, loop_type: LoopType, error: Exception) -> None:
        """Surface failures that leave trading halted"""
        if isinstance(error, PersistenceError):
            self.notifier.send_alert(
                f"CRITICAL: daily stats could not be saved ({error}). Trading is HALTED."
            )

    def get_status(self) -> Dict:
        """Get comprehensive system status"""
        return {
            "paper_trading": self.paper_trading,
            "initialized": self.initialized,
            "pairs": self.config.trading.pairs,
            "core_coins": self.config.trading.core_coins,
            "risk": self.risk_manager.get_status(),
            "scheduler": self.scheduler.get_stats(),
            "chat_commands": {
                "enabled": self.command_listener.enabled,
                "served": self.command_listener.commands_served,
                "errors": self.command_listener.errors
            },
            "settings": self.config_manager.view_settings()
        }


async def run_trading_system(
    config_path: str = None,
    paper_trading: Optional[bool] = None,
    log_level: Optional[str] = None
) -> None:
    """
    Main entry point to run the trading system

    Args:
        config_path: Path to configuration file
        paper_trading: Force paper (True) or live (False); None follows the config
        log_level: Override the configured log level
    """
    system = TradingSystem(
        config_path=config_path,
        paper_trading=paper_trading,
        log_level=log_level
    )

    try:
        await system.start()
    except StartupError:
        await system.stop()
        raise
