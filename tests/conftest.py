from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from crypto_sentinel.core.binance_client import (
    Candle, OpenOrder, FilledOrder, ExchangeError, NO_ORDER_LIST
)
from crypto_sentinel.core.context import SentinelContext
from crypto_sentinel.core.engine import TradingEngine
from crypto_sentinel.core.risk_manager import RiskManager
from crypto_sentinel.core.sentiment import SentimentVerdict
from crypto_sentinel.core.state_store import DailyStatsStore
from crypto_sentinel.utils.config_loader import ConfigManager


class FakeClock:
    def __init__(self, today: str = "2026-03-01"):
        self.today = today

    def __call__(self) -> str:
        return self.today


def make_candles(closes: List[float], spread: float = 0.001) -> List[Candle]:
    start = datetime(2026, 3, 1, tzinfo=timezone.utc)
    candles = []
    for i, close in enumerate(closes):
        candles.append(Candle(
            open_time=start + timedelta(hours=i),
            open=close,
            high=close * (1 + spread),
            low=close * (1 - spread),
            close=close,
            volume=1000.0,
            quote_volume=close * 1000.0,
            close_time=start + timedelta(hours=i + 1),
        ))
    return candles


def alternating_closes(count: int, base: float = 100.0) -> List[float]:
    """Closes that zig-zag by 1, giving an RSI near 50"""
    return [base + (i % 2) for i in range(count)]


def rising_closes(count: int, base: float = 100.0) -> List[float]:
    return [base + i for i in range(count)]


def falling_closes(count: int, base: float = 100.0) -> List[float]:
    return [base - 0.1 * i for i in range(count)]


def make_verdict(
    verdict: str = "BULLISH",
    action: str = "BUY",
    confidence: float = 90,
    target_gain: Optional[float] = None,
    reasoning: str = "ETF inflows"
) -> SentimentVerdict:
    return SentimentVerdict(
        verdict=verdict,
        impact="HIGH",
        confidence=confidence,
        target_gain_percent=target_gain,
        reasoning=reasoning,
        suggested_action=action,
    )


class FakeExchange:
    """In-memory exchange recording every order call"""

    def __init__(self):
        self.prices: Dict[str, float] = {}
        self.candles: Dict[tuple, List[Candle]] = {}
        self.open_orders: List[OpenOrder] = []
        self.balances: Dict[str, float] = {}
        self.total_value = 1000.0
        self.failing: set = set()

        self.buys: List[tuple] = []
        self.exit_pairs: List[tuple] = []
        self.cancelled_groups: List[tuple] = []
        self.cancelled_orders: List[tuple] = []
        self._next_id = 100

    def _check(self, name: str) -> None:
        if name in self.failing:
            raise ExchangeError(f"{name} failed")

    def _id(self) -> int:
        self._next_id += 1
        return self._next_id

    async def get_price(self, symbol: str) -> float:
        self._check("get_price")
        return self.prices[symbol]

    async def get_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        self._check("get_candles")
        return self.candles.get((symbol, interval), [])[-limit:]

    async def get_open_orders(self) -> List[OpenOrder]:
        self._check("get_open_orders")
        return list(self.open_orders)

    async def get_total_value_usdt(self) -> float:
        self._check("get_total_value_usdt")
        return self.total_value

    async def get_asset_balance(self, asset: str) -> float:
        self._check("get_asset_balance")
        return self.balances.get(asset, 0.0)

    async def market_buy(self, symbol: str, quantity: float) -> FilledOrder:
        self._check("market_buy")
        self.buys.append((symbol, quantity))
        return FilledOrder(
            order_id=self._id(),
            symbol=symbol,
            executed_qty=quantity,
            quote_qty=quantity * self.prices.get(symbol, 0.0),
            status="FILLED",
        )

    async def place_protective_exit_pair(self, symbol, quantity, take_profit, stop_loss) -> int:
        self._check("place_protective_exit_pair")
        self.exit_pairs.append((symbol, quantity, take_profit, stop_loss))
        list_id = self._id()
        self.open_orders.append(OpenOrder(
            order_id=self._id(), symbol=symbol, type="LIMIT_MAKER", side="SELL",
            price=take_profit, stop_price=0.0, orig_qty=quantity, order_list_id=list_id,
        ))
        self.open_orders.append(OpenOrder(
            order_id=self._id(), symbol=symbol, type="STOP_LOSS_LIMIT", side="SELL",
            price=stop_loss * 0.995, stop_price=stop_loss, orig_qty=quantity, order_list_id=list_id,
        ))
        return list_id

    async def cancel_order_group(self, symbol: str, order_list_id: int) -> None:
        self._check("cancel_order_group")
        self.cancelled_groups.append((symbol, order_list_id))
        self.open_orders = [o for o in self.open_orders if o.order_list_id != order_list_id]

    async def cancel_order(self, symbol: str, order_id: int) -> None:
        self._check("cancel_order")
        self.cancelled_orders.append((symbol, order_id))
        self.open_orders = [o for o in self.open_orders if o.order_id != order_id]


class FakeSentiment:
    """News per pair and a verdict per news item; records what was analyzed"""

    def __init__(self):
        self.news: Dict[str, List[str]] = {}
        self.verdicts: Dict[str, Optional[SentimentVerdict]] = {}
        self.analyzed: List[str] = []
        self.news_requests: List[str] = []

    async def get_latest_news(self, symbol: str):
        self.news_requests.append(symbol)
        for item in self.news.get(symbol, []):
            yield item

    async def analyze_news(self, news: str, asset: str) -> Optional[SentimentVerdict]:
        self.analyzed.append(news)
        return self.verdicts.get(news)


class FakeGauge:
    def __init__(self, value: int = 50):
        self.value = value

    async def get_market_sentiment(self) -> int:
        return self.value


class FakeNotifier:
    def __init__(self):
        self.alerts: List[str] = []
        self.trade_alerts: List[Dict] = []

    def send_alert(self, text: str) -> None:
        self.alerts.append(text)

    def send_trade_alert(self, summary: Dict) -> None:
        self.trade_alerts.append(summary)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    for var in ("BINANCE_API_KEY", "BINANCE_API_SECRET", "GEMINI_API_KEY", "DISCORD_WEBHOOK_URL",
                "DISCORD_BOT_TOKEN", "DISCORD_CHANNEL_ID"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config_manager(tmp_path):
    return ConfigManager(config_path=str(tmp_path / "missing.yaml"))


@pytest.fixture
def config(config_manager):
    return config_manager.config


@pytest.fixture
def store(tmp_path):
    return DailyStatsStore(str(tmp_path / "data" / "daily_stats.json"))


@pytest.fixture
def risk_manager(config, store, clock):
    return RiskManager(config=config, store=store, clock=clock)


@pytest.fixture
def context(config_manager, risk_manager):
    return SentinelContext(config_manager=config_manager, risk_manager=risk_manager)


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def sentiment():
    return FakeSentiment()


@pytest.fixture
def gauge():
    return FakeGauge()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def engine(context, exchange, sentiment, gauge, notifier):
    return TradingEngine(
        context=context,
        exchange=exchange,
        sentiment=sentiment,
        market_gauge=gauge,
        notifier=notifier,
    )


def stop_order(symbol: str, stop: float, qty: float = 1.0, list_id: int = NO_ORDER_LIST, order_id: int = 1):
    return OpenOrder(
        order_id=order_id, symbol=symbol, type="STOP_LOSS_LIMIT", side="SELL",
        price=stop * 0.995, stop_price=stop, orig_qty=qty, order_list_id=list_id,
    )


def take_profit_order(symbol: str, price: float, qty: float = 1.0, list_id: int = NO_ORDER_LIST, order_id: int = 2):
    return OpenOrder(
        order_id=order_id, symbol=symbol, type="LIMIT_MAKER", side="SELL",
        price=price, stop_price=0.0, orig_qty=qty, order_list_id=list_id,
    )
