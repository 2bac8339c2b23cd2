"""
Technical indicators used by the candidate filter
"""

import numpy as np
from typing import List, Optional
import logging

logger = logging.getLogger(__name__)


class TechnicalIndicators:
    """Technical analysis indicators"""

    @staticmethod
    def rsi(data: List[float], period: int = 14) -> List[float]:
        """
        Relative Strength Index with Wilder smoothing.

        The first ``period`` entries are NaN; shorter inputs return all NaN.
        """
        if len(data) < period + 1:
            return [np.nan] * len(data)

        deltas = np.diff(np.asarray(data, dtype=float))
        gains = np.where(deltas > 0, deltas, 0)
        losses = np.where(deltas < 0, -deltas, 0)

        result = [np.nan] * period

        avg_gain = np.mean(gains[:period])
        avg_loss = np.mean(losses[:period])

        if avg_loss == 0:
            result.append(100.0)
        else:
            rs = avg_gain / avg_loss
            result.append(100 - (100 / (1 + rs)))

        for i in range(period, len(deltas)):
            avg_gain = (avg_gain * (period - 1) + gains[i]) / period
            avg_loss = (avg_loss * (period - 1) + losses[i]) / period

            if avg_loss == 0:
                result.append(100.0)
            else:
                rs = avg_gain / avg_loss
                result.append(100 - (100 / (1 + rs)))

        return result

    @staticmethod
    def latest_rsi(data: List[float], period: int = 14) -> Optional[float]:
        """Most recent RSI value, or None when history is too short"""
        values = TechnicalIndicators.rsi(data, period)
        if not values or np.isnan(values[-1]):
            return None
        return float(values[-1])

    @staticmethod
    def volatility_ratio(highs: List[float], lows: List[float]) -> Optional[float]:
        """Range of a window as max(high) / min(low) - 1"""
        if not highs or not lows:
            return None
        low = float(np.min(lows))
        if low <= 0:
            return None
        return float(np.max(highs)) / low - 1
