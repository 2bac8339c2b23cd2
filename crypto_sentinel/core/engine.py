"""
Trading Engine
Scan cycle, satellite execution, trailing-stop ratchet and core rebalancing
"""

from datetime import datetime, timezone, timedelta
from typing import Dict, List, Optional, Protocol, Set, AsyncIterator
from dataclasses import dataclass, asdict
import logging

from .binance_client import (
    Candle, OpenOrder, FilledOrder, ExchangeError,
    STOP_ORDER_TYPES, TAKE_PROFIT_ORDER_TYPE, NO_ORDER_LIST
)
from .candidate_filter import FilterResult, evaluate_candidate
from .context import SentinelContext
from .risk_manager import BreakerEvent
from .sentiment import SentimentVerdict
from .state_store import PersistenceError
from ..utils.logger import TradeLogger

logger = logging.getLogger(__name__)

# Verdict confidence a BULLISH/BUY signal must exceed to be executed
EXECUTION_CONFIDENCE = 80

# Ratchet: once price is 2% above the stop, lift the stop by 1%
TRAIL_TRIGGER = 1.02
TRAIL_STEP = 1.01
FALLBACK_TAKE_PROFIT = 1.04

# Core is topped up only when it falls this far below its target share
CORE_BUFFER = 0.05

RECAP_INTERVAL = timedelta(hours=24)


class ExchangeGate(Protocol):
    async def get_price(self, symbol: str) -> float: ...
    async def get_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]: ...
    async def get_open_orders(self) -> List[OpenOrder]: ...
    async def get_total_value_usdt(self) -> float: ...
    async def get_asset_balance(self, asset: str) -> float: ...
    async def market_buy(self, symbol: str, quantity: float) -> FilledOrder: ...
    async def place_protective_exit_pair(self, symbol: str, quantity: float,
                                         take_profit: float, stop_loss: float) -> int: ...
    async def cancel_order_group(self, symbol: str, order_list_id: int) -> None: ...
    async def cancel_order(self, symbol: str, order_id: int) -> None: ...


class SentimentGate(Protocol):
    def get_latest_news(self, symbol: str) -> AsyncIterator[str]: ...
    async def analyze_news(self, news: str, asset: str) -> Optional[SentimentVerdict]: ...


class MarketSentimentGauge(Protocol):
    async def get_market_sentiment(self) -> int: ...


class NotificationGate(Protocol):
    def send_alert(self, text: str) -> None: ...
    def send_trade_alert(self, summary: Dict) -> None: ...


@dataclass
class TradeIntent:
    """A sized, protected satellite entry"""
    pair: str
    side: str
    entry_price: float
    size_usdt: float
    quantity: float
    stop_loss: float
    take_profit: float
    confidence: float
    rationale: str

    def to_dict(self) -> Dict:
        return asdict(self)


def next_trailing_stop(stop_price: float, current_price: float) -> Optional[float]:
    """New stop for a ratchet, or None when the stop should stay put"""
    if stop_price <= 0:
        return None
    if current_price >= stop_price * TRAIL_TRIGGER:
        return stop_price * TRAIL_STEP
    return None


class TradingEngine:
    """Orchestrates the decision pipeline against the shared context"""

    def __init__(
        self,
        context: SentinelContext,
        exchange: ExchangeGate,
        sentiment: SentimentGate,
        market_gauge: MarketSentimentGauge,
        notifier: NotificationGate,
        trade_logger: Optional[TradeLogger] = None
    ):
        self.context = context
        self.exchange = exchange
        self.sentiment = sentiment
        self.market_gauge = market_gauge
        self.notifier = notifier
        self.trade_logger = trade_logger

        self.last_recap_time: Optional[datetime] = None

        self.risk.on_breaker(self._on_breaker)

    @property
    def config(self):
        return self.context.config

    @property
    def risk(self):
        return self.context.risk_manager

    def _on_breaker(self, event: BreakerEvent) -> None:
        self.notifier.send_alert(f"CIRCUIT BREAKER: {event.reason}. New entries halted. {event.details}")

    def _base_asset(self, pair: str) -> str:
        quote = self.config.trading.base_currency
        return pair[:-len(quote)] if pair.endswith(quote) else pair

    async def _open_satellite_pairs(self) -> Set[str]:
        """Symbols with open orders, excluding core coins"""
        orders = await self.exchange.get_open_orders()
        core = set(self.config.trading.core_coins)
        return {o.symbol for o in orders if o.symbol not in core}

    # ------------------------------------------------------------------
    # Scan cycle
    # ------------------------------------------------------------------

    async def scan_cycle(self) -> Dict:
        """
        One full market scan.

        Returns:
            Dict with pairs scanned and trades executed
        """
        result = {"pairs_scanned": 0, "trades": 0, "skipped": None}
        cfg = self.config

        try:
            total_value = await self.exchange.get_total_value_usdt()
        except ExchangeError as e:
            logger.error(f"Scan aborted, could not value portfolio: {e}")
            result["skipped"] = "exchange unavailable"
            return result

        self.risk.update_balance(total_value)

        if not self.risk.can_trade():
            logger.warning(f"Trading is halted by risk manager: {self.risk.halt_reason}")
            result["skipped"] = "halted"
            return result

        market_sentiment = await self.market_gauge.get_market_sentiment()
        if market_sentiment < cfg.risk.min_sentiment:
            logger.warning(
                f"Market sentiment {market_sentiment} below threshold {cfg.risk.min_sentiment}. "
                f"Skipping satellite signals."
            )
            result["skipped"] = "market sentiment"
            return result

        try:
            open_pairs = await self._open_satellite_pairs()
        except ExchangeError as e:
            logger.error(f"Scan aborted, could not list open orders: {e}")
            result["skipped"] = "exchange unavailable"
            return result

        if len(open_pairs) >= cfg.risk.max_open_satellite_trades:
            logger.info(f"Max active satellite trades reached: {len(open_pairs)}")
            result["skipped"] = "max open trades"
            return result

        for pair in cfg.trading.pairs:
            if pair in open_pairs:
                continue

            result["pairs_scanned"] += 1
            try:
                traded = await self.process_pair(pair)
            except PersistenceError:
                raise
            except Exception as e:
                logger.error(f"Failed to process pair {pair}: {e}", exc_info=True)
                traded = False
            if traded:
                result["trades"] += 1

            try:
                open_pairs = await self._open_satellite_pairs()
            except ExchangeError as e:
                logger.error(f"Stopping scan, could not re-check open orders: {e}")
                break

            if len(open_pairs) >= cfg.risk.max_open_satellite_trades:
                logger.info("Satellite trade cap reached mid-scan")
                break

        logger.info(f"Scan complete: {result['pairs_scanned']} pairs, {result['trades']} trades")
        return result

    async def evaluate_technicals(self, pair: str) -> FilterResult:
        tech = self.config.technicals
        short = await self.exchange.get_candles(pair, tech.short_interval, tech.short_candles)
        long = await self.exchange.get_candles(pair, tech.long_interval, tech.long_candles)
        return evaluate_candidate(short, long, tech)

    async def process_pair(self, pair: str) -> bool:
        """Filter, consult news and maybe trade one pair. Returns True on a trade."""
        try:
            screen = await self.evaluate_technicals(pair)
        except ExchangeError as e:
            logger.error(f"Failed to process pair {pair}: {e}")
            return False

        logger.debug(
            f"{pair} screen: {screen.reason} rsi_short={screen.short_rsi} "
            f"rsi_long={screen.long_rsi} vol={screen.volatility}"
        )

        if not screen.is_candidate:
            if screen.reason == "volatility too high":
                logger.warning(f"Skipping {pair} due to high volatility: {screen.volatility:.2%}")
            return False

        async for news in self.sentiment.get_latest_news(pair):
            verdict = await self.sentiment.analyze_news(news, pair)
            if (
                verdict is not None
                and verdict.is_actionable_buy
                and verdict.confidence > EXECUTION_CONFIDENCE
            ):
                return await self.execute_satellite_trade(pair, verdict)

        return False

    async def execute_satellite_trade(self, pair: str, verdict: SentimentVerdict) -> bool:
        """Size, buy and protect a satellite position"""
        try:
            total_value = await self.exchange.get_total_value_usdt()
        except ExchangeError as e:
            logger.error(f"Failed to execute satellite trade for {pair}: {e}")
            return False

        size = self.risk.calculate_position_size(total_value, verdict.confidence)
        if size <= 0:
            logger.info(f"Risk manager rejected trade size for {pair} (confidence {verdict.confidence})")
            return False

        try:
            price = await self.exchange.get_price(pair)
            order = await self.exchange.market_buy(pair, size / price)
        except ExchangeError as e:
            logger.error(f"Failed to execute satellite trade for {pair}: {e}")
            return False

        exits = self.risk.get_exit_points(price, "BUY", verdict.target_gain_percent)

        try:
            await self.exchange.place_protective_exit_pair(
                pair, order.executed_qty, exits.take_profit, exits.stop_loss
            )
        except ExchangeError as e:
            logger.critical(f"Bought {pair} but protective exit pair failed: {e}")
            self.notifier.send_alert(f"{pair} position is UNPROTECTED: exit order failed ({e})")

        self.risk.record_trade()

        intent = TradeIntent(
            pair=pair,
            side="BUY",
            entry_price=price,
            size_usdt=size,
            quantity=order.executed_qty,
            stop_loss=exits.stop_loss,
            take_profit=exits.take_profit,
            confidence=verdict.confidence,
            rationale=verdict.reasoning,
        )
        logger.info(
            f"Satellite BUY {pair}: qty={intent.quantity} @ {price} "
            f"tp={intent.take_profit:.6g} sl={intent.stop_loss:.6g}"
        )
        if self.trade_logger:
            self.trade_logger.log_trade(intent.to_dict())

        self.notifier.send_trade_alert({
            "symbol": pair,
            "side": "BUY",
            "price": price,
            "quantity": intent.quantity,
            "take_profit": intent.take_profit,
            "stop_loss": intent.stop_loss,
            "reason": intent.rationale,
        })
        return True

    # ------------------------------------------------------------------
    # Trailing stops
    # ------------------------------------------------------------------

    @staticmethod
    def _find_take_profit(orders: List[OpenOrder], stop: OpenOrder, current_price: float) -> float:
        """TP leg of the same order list, else any TP for the symbol, else price +4%"""
        if stop.order_list_id != NO_ORDER_LIST:
            for o in orders:
                if o.order_list_id == stop.order_list_id and o.type == TAKE_PROFIT_ORDER_TYPE:
                    return o.price

        for o in orders:
            if o.symbol == stop.symbol and o.type == TAKE_PROFIT_ORDER_TYPE:
                return o.price

        return current_price * FALLBACK_TAKE_PROFIT

    async def manage_trailing_stops(self) -> int:
        """Ratchet protective stops upward. Returns the number moved."""
        try:
            orders = await self.exchange.get_open_orders()
        except ExchangeError as e:
            logger.error(f"Error managing trailing stops: {e}")
            return 0

        moved = 0
        for order in [o for o in orders if o.type in STOP_ORDER_TYPES]:
            try:
                current_price = await self.exchange.get_price(order.symbol)
            except ExchangeError as e:
                logger.error(f"Trailing check skipped for {order.symbol}: {e}")
                continue

            new_stop = next_trailing_stop(order.stop_price, current_price)
            if new_stop is None:
                continue

            take_profit = self._find_take_profit(orders, order, current_price)
            logger.info(f"Trailing stop for {order.symbol}: {order.stop_price} -> {new_stop:.6g}")

            try:
                if order.order_list_id != NO_ORDER_LIST:
                    await self.exchange.cancel_order_group(order.symbol, order.order_list_id)
                else:
                    await self.exchange.cancel_order(order.symbol, order.order_id)
            except ExchangeError as e:
                logger.error(f"Could not cancel old stop for {order.symbol}: {e}")
                continue

            try:
                await self.exchange.place_protective_exit_pair(
                    order.symbol, order.orig_qty, take_profit, new_stop
                )
            except ExchangeError as e:
                logger.critical(f"Old stop cancelled but new exit pair failed for {order.symbol}: {e}")
                self.notifier.send_alert(f"{order.symbol} position is UNPROTECTED: trailing replace failed ({e})")
                continue

            moved += 1
            self.notifier.send_alert(f"Trailing stop updated for {order.symbol} to {new_stop:.4f}")

        return moved

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    async def heartbeat(self) -> None:
        """Balance update, core rebalance, daily recap"""
        try:
            total_value = await self.exchange.get_total_value_usdt()
        except ExchangeError as e:
            logger.error(f"Heartbeat error: {e}")
            return

        self.risk.update_balance(total_value)

        await self.check_maintain_core(total_value)

        now = datetime.now(timezone.utc)
        if self.last_recap_time is None or now - self.last_recap_time >= RECAP_INTERVAL:
            self.send_daily_recap(total_value)
            self.last_recap_time = now

        stats = self.risk.stats
        logger.info(
            f"Heartbeat: total={total_value:.2f} pnl={stats.daily_pnl * 100:.2f}% "
            f"status={'RUNNING' if self.risk.can_trade() else 'HALTED'}"
        )

    async def check_maintain_core(self, total_value: float) -> List[str]:
        """
        Top the core holdings back up to their target share.

        Buys only when core value is below (core - 5%) of the portfolio,
        split evenly across core coins; legs under the minimum order size
        are skipped. Returns the pairs bought.
        """
        cfg = self.config
        core_coins = cfg.trading.core_coins
        if not core_coins or total_value <= 0:
            return []

        if not self.risk.can_trade():
            logger.info("Core rebalance skipped while trading is halted")
            return []

        current_core = 0.0
        try:
            for pair in core_coins:
                balance = await self.exchange.get_asset_balance(self._base_asset(pair))
                if balance > 0:
                    current_core += balance * await self.exchange.get_price(pair)
        except ExchangeError as e:
            logger.error(f"Failed to value core allocation: {e}")
            return []

        if current_core >= total_value * (cfg.allocation.core - CORE_BUFFER):
            return []

        deficit = total_value * cfg.allocation.core - current_core
        buy_amount = deficit / len(core_coins)
        logger.info(f"Core allocation below target, rebalancing. Deficit: {deficit:.2f}")

        if buy_amount < cfg.risk.min_order_size_usdt:
            logger.info(f"Core rebalance leg {buy_amount:.2f} below minimum order size, skipped")
            return []

        bought = []
        for pair in core_coins:
            try:
                price = await self.exchange.get_price(pair)
                await self.exchange.market_buy(pair, buy_amount / price)
            except ExchangeError as e:
                logger.error(f"Core rebalance buy failed for {pair}: {e}")
                continue

            bought.append(pair)
            self.notifier.send_alert(f"Core Rebalance: Bought {buy_amount:.2f} USDT of {pair}")

        return bought

    def send_daily_recap(self, total_value: float) -> None:
        stats = self.risk.stats
        pnl = stats.daily_pnl * 100
        status = "Operational" if self.risk.can_trade() else "Halted (Risk Breaker)"

        self.notifier.send_alert(
            "**DAILY PERFORMANCE RECAP**\n"
            f"**PnL:** {pnl:.2f}%\n"
            f"**Total Balance:** {total_value:.2f} USDT\n"
            f"**Trades Today:** {stats.trades_count}\n"
            f"**Status:** {status}"
        )

        if self.trade_logger:
            self.trade_logger.log_daily_summary({
                "date": stats.date,
                "total_value": total_value,
                "daily_pnl": stats.daily_pnl,
                "trades": stats.trades_count,
                "halted": stats.is_halted,
            })

    # ------------------------------------------------------------------
    # On-demand analysis
    # ------------------------------------------------------------------

    async def analyze_pair(self, pair: str) -> Dict:
        """Technical screen plus the first parseable news verdict. Never trades."""
        report = {"pair": pair, "price": None, "screen": None, "verdict": None, "news": None}

        try:
            report["price"] = await self.exchange.get_price(pair)
            report["screen"] = await self.evaluate_technicals(pair)
        except ExchangeError as e:
            report["error"] = str(e)
            return report

        async for news in self.sentiment.get_latest_news(pair):
            verdict = await self.sentiment.analyze_news(news, pair)
            if verdict is not None:
                report["verdict"] = verdict
                report["news"] = news
                break

        return report
