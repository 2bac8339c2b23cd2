"""
Binance Spot REST API Client
Handles request signing, symbol rules, market data and order placement
"""

import asyncio
import hmac
import hashlib
import itertools
import time
import aiohttp
from contextlib import contextmanager
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Dict, List, Optional, Any
from dataclasses import dataclass
from datetime import datetime, timezone
from urllib.parse import urlencode
import logging

from ..utils.config_loader import ExchangeConfig

logger = logging.getLogger(__name__)

LIVE_BASE_URL = "https://api.binance.com"
TESTNET_BASE_URL = "https://testnet.binance.vision"

STOP_ORDER_TYPES = ("STOP_LOSS", "STOP_LOSS_LIMIT")
TAKE_PROFIT_ORDER_TYPE = "LIMIT_MAKER"
NO_ORDER_LIST = -1

# Stop-limit leg sits slightly below the trigger so it fills in a fast market
STOP_LIMIT_OFFSET = 0.995


class ExchangeError(Exception):
    """Raised for any failed exchange interaction"""

    def __init__(self, message: str, status: Optional[int] = None, code: Optional[int] = None):
        super().__init__(message)
        self.status = status
        self.code = code


@dataclass
class Candle:
    open_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    quote_volume: float
    close_time: datetime


@dataclass
class OpenOrder:
    order_id: int
    symbol: str
    type: str
    side: str
    price: float
    stop_price: float
    orig_qty: float
    order_list_id: int = NO_ORDER_LIST

    @classmethod
    def from_api(cls, data: Dict) -> "OpenOrder":
        return cls(
            order_id=int(data["orderId"]),
            symbol=data["symbol"],
            type=data["type"],
            side=data["side"],
            price=float(data.get("price", 0) or 0),
            stop_price=float(data.get("stopPrice", 0) or 0),
            orig_qty=float(data.get("origQty", 0) or 0),
            order_list_id=int(data.get("orderListId", NO_ORDER_LIST)),
        )


@dataclass
class FilledOrder:
    order_id: int
    symbol: str
    executed_qty: float
    quote_qty: float
    status: str


@dataclass
class Balance:
    free: float
    locked: float

    @property
    def total(self) -> float:
        return self.free + self.locked


@dataclass
class SymbolInfo:
    symbol: str
    base_asset: str
    quote_asset: str
    step_size: Decimal
    tick_size: Decimal
    min_qty: Decimal
    min_notional: Decimal


def _ms_to_datetime(ms: int) -> datetime:
    return datetime.fromtimestamp(int(ms) / 1000, tz=timezone.utc)


def _format_decimal(value: Decimal) -> str:
    return format(value.normalize(), "f")


@contextmanager
def _parsing(what: str):
    """Turn a malformed payload into an ExchangeError"""
    try:
        yield
    except (KeyError, IndexError, TypeError, ValueError, AttributeError, ArithmeticError) as e:
        logger.error(f"Malformed {what} response: {e!r}")
        raise ExchangeError(f"Malformed {what} response: {e!r}") from e


class BinanceClient:
    """Binance spot API client"""

    def __init__(self, config: ExchangeConfig, quote_asset: str = "USDT"):
        self.config = config
        self.api_key = config.api_key
        self.api_secret = config.api_secret
        self.quote_asset = quote_asset
        self.base_url = TESTNET_BASE_URL if config.testnet else LIVE_BASE_URL
        self._session: Optional[aiohttp.ClientSession] = None

        self.symbols: Dict[str, SymbolInfo] = {}
        self.balances: Dict[str, Balance] = {}

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    def _sign(self, query: str) -> str:
        """HMAC-SHA256 hex signature of the query string"""
        return hmac.new(
            self.api_secret.encode("utf-8"),
            query.encode("utf-8"),
            hashlib.sha256
        ).hexdigest()

    async def _request(
        self,
        method: str,
        path: str,
        params: Dict[str, Any] = None,
        signed: bool = False
    ) -> Any:
        """Make an API request, signing it when required"""
        session = await self._get_session()
        params = dict(params or {})
        headers = {}

        if signed:
            params["timestamp"] = int(time.time() * 1000)
            params["recvWindow"] = self.config.recv_window
            query = urlencode(params)
            query += f"&signature={self._sign(query)}"
            headers["X-MBX-APIKEY"] = self.api_key
        else:
            query = urlencode(params)

        url = f"{self.base_url}{path}"
        if query:
            url += f"?{query}"

        try:
            async with session.request(method, url, headers=headers) as response:
                try:
                    data = await response.json(content_type=None)
                except ValueError as e:
                    logger.error(f"Non-JSON response ({response.status}) on {method} {path}")
                    raise ExchangeError(
                        f"Non-JSON response ({response.status}) on {method} {path}",
                        status=response.status
                    ) from e

                if response.status >= 400:
                    code = data.get("code") if isinstance(data, dict) else None
                    msg = data.get("msg") if isinstance(data, dict) else data
                    logger.error(f"Binance API Error {response.status} on {method} {path}: {msg}")
                    raise ExchangeError(f"Binance API Error: {msg}", status=response.status, code=code)

                return data

        except aiohttp.ClientError as e:
            logger.error(f"Request failed: {method} {path}: {e}")
            raise ExchangeError(f"Request failed: {e}") from e
        except asyncio.TimeoutError as e:
            logger.error(f"Request timed out: {method} {path}")
            raise ExchangeError(f"Request timed out: {method} {path}") from e

    # Setup

    async def initialize(self) -> None:
        """Load symbol rules and the initial balance snapshot"""
        await self.load_exchange_info()
        await self.update_balances()
        logger.info(
            f"Binance client initialized ({'testnet' if self.config.testnet else 'live'}): "
            f"{len(self.symbols)} symbols"
        )

    async def load_exchange_info(self) -> None:
        data = await self._request("GET", "/api/v3/exchangeInfo")
        symbols = {}

        with _parsing("exchangeInfo"):
            for entry in data.get("symbols", []):
                filters = {f["filterType"]: f for f in entry.get("filters", [])}
                lot = filters.get("LOT_SIZE", {})
                price = filters.get("PRICE_FILTER", {})
                notional = filters.get("NOTIONAL") or filters.get("MIN_NOTIONAL") or {}

                symbols[entry["symbol"]] = SymbolInfo(
                    symbol=entry["symbol"],
                    base_asset=entry.get("baseAsset", ""),
                    quote_asset=entry.get("quoteAsset", ""),
                    step_size=Decimal(lot.get("stepSize", "0")),
                    tick_size=Decimal(price.get("tickSize", "0")),
                    min_qty=Decimal(lot.get("minQty", "0")),
                    min_notional=Decimal(notional.get("minNotional", notional.get("notional", "0"))),
                )

        self.symbols = symbols

    def base_asset(self, symbol: str) -> str:
        info = self.symbols.get(symbol)
        if info and info.base_asset:
            return info.base_asset
        if symbol.endswith(self.quote_asset):
            return symbol[:-len(self.quote_asset)]
        return symbol

    # Rounding

    def round_quantity(self, symbol: str, quantity: float) -> Decimal:
        """Floor a quantity to the symbol's step size"""
        info = self.symbols.get(symbol)
        value = Decimal(str(quantity))
        if not info or info.step_size <= 0:
            return value
        steps = (value / info.step_size).to_integral_value(rounding=ROUND_DOWN)
        return steps * info.step_size

    def round_price(self, symbol: str, price: float) -> Decimal:
        """Round a price to the nearest tick"""
        info = self.symbols.get(symbol)
        value = Decimal(str(price))
        if not info or info.tick_size <= 0:
            return value
        ticks = (value / info.tick_size).to_integral_value(rounding=ROUND_HALF_UP)
        return ticks * info.tick_size

    # Account

    async def update_balances(self) -> Dict[str, Balance]:
        account = await self._request("GET", "/api/v3/account", signed=True)
        balances = {}

        with _parsing("account"):
            for entry in account.get("balances", []):
                free = float(entry["free"])
                locked = float(entry["locked"])
                if free > 0 or locked > 0:
                    balances[entry["asset"]] = Balance(free=free, locked=locked)

        self.balances = balances
        logger.debug(f"Balances updated: { {a: b.total for a, b in balances.items()} }")
        return balances

    async def get_asset_balance(self, asset: str) -> float:
        """Total (free + locked) of an asset from the latest balance snapshot"""
        if not self.balances:
            await self.update_balances()
        balance = self.balances.get(asset)
        return balance.total if balance else 0.0

    async def get_total_value_usdt(self) -> float:
        """Portfolio value in the quote asset; assets without a quote pair are skipped"""
        await self.update_balances()
        total = 0.0

        for asset, balance in self.balances.items():
            if balance.total <= 0:
                continue

            if asset == self.quote_asset:
                total += balance.total
                continue

            try:
                price = await self.get_price(f"{asset}{self.quote_asset}")
            except ExchangeError:
                logger.debug(f"No {self.quote_asset} price for {asset}, excluded from total")
                continue
            total += balance.total * price

        return total

    # Market data

    async def get_price(self, symbol: str) -> float:
        data = await self._request("GET", "/api/v3/ticker/price", {"symbol": symbol})
        with _parsing("ticker price"):
            return float(data["price"])

    async def get_candles(self, symbol: str, interval: str = "1h", limit: int = 100) -> List[Candle]:
        data = await self._request(
            "GET", "/api/v3/klines",
            {"symbol": symbol, "interval": interval, "limit": limit}
        )

        with _parsing("klines"):
            return [
                Candle(
                    open_time=_ms_to_datetime(k[0]),
                    open=float(k[1]),
                    high=float(k[2]),
                    low=float(k[3]),
                    close=float(k[4]),
                    volume=float(k[5]),
                    close_time=_ms_to_datetime(k[6]),
                    quote_volume=float(k[7]),
                )
                for k in data
            ]

    # Orders

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[OpenOrder]:
        params = {"symbol": symbol} if symbol else {}
        data = await self._request("GET", "/api/v3/openOrders", params, signed=True)
        with _parsing("openOrders"):
            return [OpenOrder.from_api(o) for o in data]

    async def market_buy(self, symbol: str, quantity: float) -> FilledOrder:
        qty = self.round_quantity(symbol, quantity)
        if qty <= 0:
            raise ExchangeError(f"Quantity {quantity} for {symbol} rounds to zero")

        logger.info(f"Placing market BUY order: {symbol} qty={_format_decimal(qty)}")

        data = await self._request("POST", "/api/v3/order", {
            "symbol": symbol,
            "side": "BUY",
            "type": "MARKET",
            "quantity": _format_decimal(qty),
        }, signed=True)

        with _parsing("order"):
            order = FilledOrder(
                order_id=int(data["orderId"]),
                symbol=symbol,
                executed_qty=float(data.get("executedQty", 0)),
                quote_qty=float(data.get("cummulativeQuoteQty", 0)),
                status=data.get("status", ""),
            )

        logger.info(
            f"Market BUY filled: {symbol} #{order.order_id} "
            f"qty={order.executed_qty} cost={order.quote_qty:.2f}"
        )

        await self.update_balances()
        return order

    async def place_protective_exit_pair(
        self,
        symbol: str,
        quantity: float,
        take_profit: float,
        stop_loss: float
    ) -> int:
        """
        Place an OCO sell: LIMIT_MAKER take profit plus STOP_LOSS_LIMIT stop.

        Returns:
            The order list id of the pair
        """
        qty = self.round_quantity(symbol, quantity)
        tp = self.round_price(symbol, take_profit)
        sl = self.round_price(symbol, stop_loss)
        sl_limit = self.round_price(symbol, stop_loss * STOP_LIMIT_OFFSET)

        logger.info(
            f"Placing OCO SELL: {symbol} qty={_format_decimal(qty)} "
            f"tp={_format_decimal(tp)} sl={_format_decimal(sl)}"
        )

        data = await self._request("POST", "/api/v3/order/oco", {
            "symbol": symbol,
            "side": "SELL",
            "quantity": _format_decimal(qty),
            "price": _format_decimal(tp),
            "stopPrice": _format_decimal(sl),
            "stopLimitPrice": _format_decimal(sl_limit),
            "stopLimitTimeInForce": "GTC",
        }, signed=True)

        with _parsing("order list"):
            order_list_id = int(data["orderListId"])
        logger.info(f"OCO placed: {symbol} list #{order_list_id}")
        return order_list_id

    async def cancel_order_group(self, symbol: str, order_list_id: int) -> None:
        await self._request("DELETE", "/api/v3/orderList", {
            "symbol": symbol,
            "orderListId": order_list_id,
        }, signed=True)
        logger.info(f"Order list cancelled: {symbol} #{order_list_id}")

    async def cancel_order(self, symbol: str, order_id: int) -> None:
        await self._request("DELETE", "/api/v3/order", {
            "symbol": symbol,
            "orderId": order_id,
        }, signed=True)
        logger.info(f"Order cancelled: {symbol} #{order_id}")


class PaperBinanceClient(BinanceClient):
    """
    Paper trading client.

    Market data comes from the real public endpoints; balances and orders
    are simulated in memory. Protective pairs settle against the live price
    whenever open orders are listed.
    """

    def __init__(self, config: ExchangeConfig, starting_balance: float = 1000.0, quote_asset: str = "USDT"):
        super().__init__(config, quote_asset)
        self.balances = {quote_asset: Balance(free=starting_balance, locked=0.0)}
        self.orders: Dict[int, OpenOrder] = {}
        self._ids = itertools.count(1)
        logger.info(f"Initialized PAPER TRADING balance: {starting_balance} {quote_asset}")

    async def update_balances(self) -> Dict[str, Balance]:
        return self.balances

    def _credit(self, asset: str, free: float = 0.0, locked: float = 0.0) -> None:
        balance = self.balances.setdefault(asset, Balance(free=0.0, locked=0.0))
        balance.free += free
        balance.locked += locked

    async def market_buy(self, symbol: str, quantity: float) -> FilledOrder:
        qty = float(self.round_quantity(symbol, quantity))
        if qty <= 0:
            raise ExchangeError(f"Quantity {quantity} for {symbol} rounds to zero")

        price = await self.get_price(symbol)
        cost = qty * price
        quote = self.balances.get(self.quote_asset)
        if quote is None or quote.free < cost:
            raise ExchangeError(f"Insufficient paper balance for {symbol}: need {cost:.2f}")

        self._credit(self.quote_asset, free=-cost)
        self._credit(self.base_asset(symbol), free=qty)

        order = FilledOrder(
            order_id=next(self._ids),
            symbol=symbol,
            executed_qty=qty,
            quote_qty=cost,
            status="FILLED",
        )
        logger.info(f"[PAPER] Market BUY {symbol} qty={qty} @ {price} cost={cost:.2f}")
        return order

    async def place_protective_exit_pair(
        self,
        symbol: str,
        quantity: float,
        take_profit: float,
        stop_loss: float
    ) -> int:
        qty = float(self.round_quantity(symbol, quantity))
        asset = self.base_asset(symbol)
        balance = self.balances.get(asset)
        if balance is None or balance.free < qty:
            raise ExchangeError(f"Insufficient paper {asset} for exit pair")

        self._credit(asset, free=-qty, locked=qty)

        list_id = next(self._ids)
        tp_order = OpenOrder(
            order_id=next(self._ids), symbol=symbol, type=TAKE_PROFIT_ORDER_TYPE, side="SELL",
            price=float(self.round_price(symbol, take_profit)), stop_price=0.0,
            orig_qty=qty, order_list_id=list_id,
        )
        sl_order = OpenOrder(
            order_id=next(self._ids), symbol=symbol, type="STOP_LOSS_LIMIT", side="SELL",
            price=float(self.round_price(symbol, stop_loss * STOP_LIMIT_OFFSET)),
            stop_price=float(self.round_price(symbol, stop_loss)),
            orig_qty=qty, order_list_id=list_id,
        )
        self.orders[tp_order.order_id] = tp_order
        self.orders[sl_order.order_id] = sl_order

        logger.info(f"[PAPER] OCO SELL {symbol} qty={qty} tp={tp_order.price} sl={sl_order.stop_price}")
        return list_id

    def _release(self, order: OpenOrder) -> None:
        self._credit(self.base_asset(order.symbol), free=order.orig_qty, locked=-order.orig_qty)

    async def cancel_order_group(self, symbol: str, order_list_id: int) -> None:
        legs = [o for o in self.orders.values() if o.symbol == symbol and o.order_list_id == order_list_id]
        if not legs:
            raise ExchangeError(f"Unknown paper order list {order_list_id} for {symbol}")

        for leg in legs:
            del self.orders[leg.order_id]
        self._release(legs[0])
        logger.info(f"[PAPER] Order list cancelled: {symbol} #{order_list_id}")

    async def cancel_order(self, symbol: str, order_id: int) -> None:
        order = self.orders.pop(order_id, None)
        if order is None or order.symbol != symbol:
            raise ExchangeError(f"Unknown paper order {order_id} for {symbol}")
        self._release(order)
        logger.info(f"[PAPER] Order cancelled: {symbol} #{order_id}")

    async def _settle(self) -> None:
        """Fill any paper exit pair whose take profit or stop has been crossed"""
        for list_id in {o.order_list_id for o in self.orders.values()}:
            legs = [o for o in self.orders.values() if o.order_list_id == list_id]
            symbol = legs[0].symbol
            price = await self.get_price(symbol)

            fill_price = None
            for leg in legs:
                if leg.type == TAKE_PROFIT_ORDER_TYPE and price >= leg.price:
                    fill_price = leg.price
                elif leg.type in STOP_ORDER_TYPES and price <= leg.stop_price:
                    fill_price = leg.price

            if fill_price is None:
                continue

            qty = legs[0].orig_qty
            for leg in legs:
                del self.orders[leg.order_id]
            self._credit(self.base_asset(symbol), locked=-qty)
            self._credit(self.quote_asset, free=qty * fill_price)
            logger.info(f"[PAPER] Exit filled: {symbol} qty={qty} @ {fill_price}")

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[OpenOrder]:
        await self._settle()
        return [o for o in self.orders.values() if symbol is None or o.symbol == symbol]
