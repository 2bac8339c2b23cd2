"""
Crypto Sentinel Utilities
"""

from .indicators import TechnicalIndicators
from .config_loader import (
    ConfigManager,
    ConfigUpdateError,
    SentinelConfig,
    MUTABLE_SETTINGS
)
from .logger import setup_logging, get_logger, TradeLogger

__all__ = [
    "TechnicalIndicators",
    "ConfigManager",
    "ConfigUpdateError",
    "SentinelConfig",
    "MUTABLE_SETTINGS",
    "setup_logging",
    "get_logger",
    "TradeLogger"
]
