"""
Crypto Sentinel Core Module
"""

from .binance_client import (
    BinanceClient,
    PaperBinanceClient,
    ExchangeError,
    Candle,
    OpenOrder,
    FilledOrder
)
from .state_store import DailyStats, DailyStatsStore, PersistenceError
from .risk_manager import (
    RiskManager,
    TradingMode,
    ExitPoints,
    BreakerEvent,
    MID_CONFIDENCE_THRESHOLD
)
from .candidate_filter import FilterResult, evaluate_candidate
from .sentiment import (
    SentimentAnalyzer,
    SentimentVerdict,
    FearGreedIndex,
    parse_verdict
)
from .notifier import DiscordNotifier
from .context import SentinelContext
from .engine import TradingEngine, TradeIntent, EXECUTION_CONFIDENCE
from .control import ControlChannel, ControlCommand, parse_command
from .command_listener import DiscordCommandListener
from .scheduler import TradingScheduler, LoopType, LoopStats
from .trading_system import TradingSystem, StartupError, run_trading_system

__all__ = [
    # Exchange
    "BinanceClient",
    "PaperBinanceClient",
    "ExchangeError",
    "Candle",
    "OpenOrder",
    "FilledOrder",
    # Risk
    "DailyStats",
    "DailyStatsStore",
    "PersistenceError",
    "RiskManager",
    "TradingMode",
    "ExitPoints",
    "BreakerEvent",
    "MID_CONFIDENCE_THRESHOLD",
    # Signals
    "FilterResult",
    "evaluate_candidate",
    "SentimentAnalyzer",
    "SentimentVerdict",
    "FearGreedIndex",
    "parse_verdict",
    # Notifications and control
    "DiscordNotifier",
    "ControlChannel",
    "ControlCommand",
    "parse_command",
    "DiscordCommandListener",
    # Engine
    "SentinelContext",
    "TradingEngine",
    "TradeIntent",
    "EXECUTION_CONFIDENCE",
    # Scheduler
    "TradingScheduler",
    "LoopType",
    "LoopStats",
    # Main System
    "TradingSystem",
    "StartupError",
    "run_trading_system"
]
