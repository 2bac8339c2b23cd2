"""
Risk Management Module
Handles position sizing, exit points, daily breakers and their persistence
"""

from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional
from dataclasses import dataclass, field
from enum import Enum
import logging
import math

from .state_store import DailyStats, DailyStatsStore, PersistenceError
from ..utils.config_loader import SentinelConfig
from ..utils.logger import TradeLogger

logger = logging.getLogger(__name__)

# Confidence at which risk is scaled by 1.5x (below the configurable high threshold)
MID_CONFIDENCE_THRESHOLD = 75

MIN_TARGET_GAIN = 0.02
MAX_TARGET_GAIN = 0.15

PERSISTENCE_HALT_REASON = "state persistence failed"


class TradingMode(Enum):
    """Breaker state"""
    ACTIVE = "active"
    HALTED = "halted"


@dataclass
class ExitPoints:
    stop_loss: float
    take_profit: float


@dataclass
class BreakerEvent:
    """A transition from ACTIVE to HALTED"""
    reason: str
    details: Dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def utc_today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


class RiskManager:
    """
    Owns the day's DailyStats and the breaker state machine.

    Every mutation is persisted before the method returns. If the store
    cannot be written the manager halts in memory and raises PersistenceError.
    """

    def __init__(
        self,
        config: SentinelConfig,
        store: DailyStatsStore,
        trade_logger: Optional[TradeLogger] = None,
        clock: Callable[[], str] = utc_today
    ):
        self.config = config
        self.store = store
        self.trade_logger = trade_logger
        self._clock = clock

        self.halt_reason = ""
        self._breaker_listeners: List[Callable[[BreakerEvent], None]] = []

        self.stats = self._load_stats()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _load_stats(self) -> DailyStats:
        today = self._clock()
        saved = self.store.load()

        if saved is not None and saved.date == today:
            logger.info(
                f"Loaded daily stats for {today}: trades={saved.trades_count}, "
                f"halted={saved.is_halted}"
            )
            self.stats = saved
            if saved.is_halted:
                self.halt_reason = "halted before restart"
        else:
            if saved is not None:
                logger.info(f"Daily stats from {saved.date} are stale, starting fresh day {today}")
            self.stats = DailyStats.fresh(today)

        marker = self.store.read_halt_marker()
        if marker:
            logger.critical(f"Halt marker present ({marker}), trading stays HALTED until reset")
            self.stats.is_halted = True
            self.halt_reason = marker

        if saved is None or saved != self.stats:
            self._persist()
        return self.stats

    def _roll_over_if_needed(self) -> None:
        today = self._clock()
        if self.stats.date != today:
            logger.info(
                f"New trading day {today} - resetting daily stats. "
                f"Previous day PnL: {self.stats.daily_pnl * 100:.2f}%"
            )
            # An unsaved halt outlives the day
            keep_halt = self.halt_reason == PERSISTENCE_HALT_REASON or self.store.read_halt_marker()

            self.stats = DailyStats.fresh(today)
            if keep_halt:
                self.stats.is_halted = True
            else:
                self.halt_reason = ""

    def _persist(self) -> None:
        try:
            self.store.save(self.stats)
        except PersistenceError:
            self.stats.is_halted = True
            self.halt_reason = PERSISTENCE_HALT_REASON
            self.store.mark_halted(PERSISTENCE_HALT_REASON)
            logger.critical(f"TRADING HALTED: {PERSISTENCE_HALT_REASON}")
            raise

    @property
    def mode(self) -> TradingMode:
        return TradingMode.HALTED if self.stats.is_halted else TradingMode.ACTIVE

    # ------------------------------------------------------------------
    # Breakers
    # ------------------------------------------------------------------

    def on_breaker(self, callback: Callable[[BreakerEvent], None]) -> None:
        """Register a listener called on every ACTIVE -> HALTED transition"""
        self._breaker_listeners.append(callback)

    def _trip(self, reason: str, details: Dict) -> None:
        if self.stats.is_halted:
            return

        self.stats.is_halted = True
        self.halt_reason = reason
        event = BreakerEvent(reason=reason, details=details)

        logger.warning(f"CIRCUIT BREAKER: {reason} {details}")
        if self.trade_logger:
            self.trade_logger.log_breaker({"reason": reason, **details})

        for listener in self._breaker_listeners:
            listener(event)

    def _check_breakers(self) -> None:
        risk = self.config.risk
        stats = self.stats

        if stats.daily_pnl <= -risk.daily_loss_limit:
            self._trip("Daily loss limit reached", {
                "pnl": stats.daily_pnl,
                "limit": -risk.daily_loss_limit
            })

        if stats.trades_count >= risk.max_trades_per_day:
            self._trip("Max daily trades reached", {"count": stats.trades_count})

        if 0 < stats.current_balance < risk.min_balance_to_trade:
            self._trip("Balance below safe threshold", {
                "balance": stats.current_balance,
                "min": risk.min_balance_to_trade
            })

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def update_balance(self, total_value: float) -> None:
        """Record a portfolio valuation and re-evaluate breakers"""
        self._roll_over_if_needed()

        stats = self.stats
        if stats.initial_balance == 0:
            stats.initial_balance = total_value
        stats.current_balance = total_value

        if stats.initial_balance:
            stats.daily_pnl = total_value / stats.initial_balance - 1
        else:
            stats.daily_pnl = 0.0

        self._check_breakers()
        self._persist()

    def record_trade(self) -> None:
        """Count an executed satellite trade"""
        self._roll_over_if_needed()
        self.stats.trades_count += 1
        self._check_breakers()
        self._persist()

    def can_trade(self) -> bool:
        return not self.stats.is_halted

    def reset_breaker(self) -> None:
        """Force ACTIVE. Raises PersistenceError (and stays halted) if the write fails."""
        self.store.clear_halt_marker()
        self.stats.is_halted = False
        self.halt_reason = ""
        self._persist()
        logger.info("Circuit breaker reset - trading resumed")

    def halt(self, reason: str) -> None:
        """Manual pause"""
        if not self.stats.is_halted:
            self.stats.is_halted = True
            self.halt_reason = reason
            logger.warning(f"TRADING HALTED: {reason}")
        self._persist()

    def calculate_position_size(self, total_capital: float, confidence: float) -> float:
        """
        Size a satellite trade in quote currency.

        Args:
            total_capital: Total portfolio value in USDT
            confidence: Sentiment confidence 0-100

        Returns:
            Trade value in USDT, 0 when no trade should be placed
        """
        if self.stats.is_halted:
            return 0

        risk = self.config.risk
        thresholds = self.config.confidence

        if confidence < thresholds.min_to_trade:
            return 0

        satellite_capital = total_capital * self.config.allocation.satellite
        min_order = risk.min_order_size_usdt

        risk_factor = risk.max_risk_per_trade
        if confidence >= thresholds.high_threshold:
            risk_factor *= 2
        elif confidence >= MID_CONFIDENCE_THRESHOLD:
            risk_factor *= 1.5

        trade_value = total_capital * risk_factor

        if trade_value < min_order:
            if satellite_capital >= min_order:
                logger.debug(f"Raising trade value {trade_value:.2f} to minimum order size {min_order}")
                trade_value = min_order
            else:
                logger.warning(f"Insufficient satellite capital for minimum order: {satellite_capital:.2f}")
                return 0

        max_satellite_trade = max(satellite_capital * risk.max_satellite_exposure, min_order)
        if trade_value > max_satellite_trade:
            trade_value = max_satellite_trade

        if trade_value < min_order:
            if satellite_capital >= min_order:
                trade_value = min_order
            else:
                return 0

        return trade_value

    def get_exit_points(
        self,
        entry_price: float,
        side: str = "BUY",
        target_gain_percent: Optional[float] = None
    ) -> ExitPoints:
        """Stop loss and take profit for an entry; target gain is clamped to 2-15%"""
        sl_percent = self.config.risk.default_stop_loss
        tp_percent = self.config.risk.default_take_profit

        if (
            target_gain_percent
            and isinstance(target_gain_percent, (int, float))
            and not isinstance(target_gain_percent, bool)
            and math.isfinite(target_gain_percent)
        ):
            tp_percent = min(max(target_gain_percent / 100, MIN_TARGET_GAIN), MAX_TARGET_GAIN)
            logger.debug(f"Using suggested take profit: {tp_percent:.2%}")

        if side == "BUY":
            return ExitPoints(
                stop_loss=entry_price * (1 - sl_percent),
                take_profit=entry_price * (1 + tp_percent)
            )

        return ExitPoints(
            stop_loss=entry_price * (1 + sl_percent),
            take_profit=entry_price * (1 - tp_percent)
        )

    def get_status(self) -> Dict:
        """Snapshot for status reports"""
        stats = self.stats
        return {
            "date": stats.date,
            "mode": self.mode.value,
            "can_trade": self.can_trade(),
            "halt_reason": self.halt_reason,
            "initial_balance": stats.initial_balance,
            "current_balance": stats.current_balance,
            "daily_pnl": stats.daily_pnl,
            "trades_count": stats.trades_count,
            "max_trades_per_day": self.config.risk.max_trades_per_day
        }
