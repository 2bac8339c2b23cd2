"""
Shared runtime context
"""

from dataclasses import dataclass

from .risk_manager import RiskManager
from ..utils.config_loader import ConfigManager, SentinelConfig


@dataclass
class SentinelContext:
    """
    The one configuration and risk state of a running bot.

    Built once at startup and handed to both the trading engine and the
    control channel, so a remote pause or config change is seen by the
    next scan without any global state.
    """
    config_manager: ConfigManager
    risk_manager: RiskManager

    @property
    def config(self) -> SentinelConfig:
        return self.config_manager.config
