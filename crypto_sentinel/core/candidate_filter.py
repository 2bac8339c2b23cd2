"""
Multi-timeframe technical pre-screen run before any sentiment query
"""

from typing import List, Optional
from dataclasses import dataclass
import logging

from .binance_client import Candle
from ..utils.config_loader import TechnicalsConfig
from ..utils.indicators import TechnicalIndicators

logger = logging.getLogger(__name__)


@dataclass
class FilterResult:
    """Outcome of the pre-screen for one pair"""
    is_candidate: bool
    reason: str
    short_rsi: Optional[float] = None
    long_rsi: Optional[float] = None
    volatility: Optional[float] = None
    oversold: bool = False
    momentum: bool = False


def evaluate_candidate(
    short_candles: List[Candle],
    long_candles: List[Candle],
    technicals: TechnicalsConfig
) -> FilterResult:
    """
    Decide whether a pair is worth a sentiment query.

    Vetoes, in order: insufficient history, long-frame RSI above the trend
    ceiling, short-frame volatility above the ceiling. A survivor is a
    candidate when its short-frame RSI is oversold or inside the momentum
    band (exclusive bounds).
    """
    period = technicals.rsi_period
    short_rsi = TechnicalIndicators.latest_rsi([c.close for c in short_candles], period)
    long_rsi = TechnicalIndicators.latest_rsi([c.close for c in long_candles], period)

    if short_rsi is None or long_rsi is None:
        return FilterResult(False, "insufficient history", short_rsi, long_rsi)

    if long_rsi > technicals.trend_rsi_ceiling:
        return FilterResult(False, "long-frame trend overbought", short_rsi, long_rsi)

    window = short_candles[-technicals.volatility_lookback:]
    volatility = TechnicalIndicators.volatility_ratio(
        [c.high for c in window], [c.low for c in window]
    )
    if volatility is None:
        return FilterResult(False, "invalid price data", short_rsi, long_rsi)

    if volatility > technicals.max_volatility:
        return FilterResult(False, "volatility too high", short_rsi, long_rsi, volatility)

    oversold = short_rsi < technicals.rsi_oversold
    momentum = technicals.momentum_band_low < short_rsi < technicals.momentum_band_high

    if oversold or momentum:
        reason = "oversold" if oversold else "momentum"
        return FilterResult(True, reason, short_rsi, long_rsi, volatility, oversold, momentum)

    return FilterResult(False, "no setup", short_rsi, long_rsi, volatility)
