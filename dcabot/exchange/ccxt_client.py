"""Generic ccxt-backed adapter, used for venues without a native client (Bybit)."""

from __future__ import annotations

import logging
from typing import Any

import aiohttp
import ccxt.async_support as ccxt_async

from dcabot.config.constants import OrderSide, OrderStatus
from dcabot.core.errors import MarketDataUnavailable, OrderRejected
from dcabot.data.models import split_pair
from dcabot.exchange.base import Balance, Candle, ExchangeClient, OrderResult, Ticker

logger = logging.getLogger(__name__)


def _map_ccxt_status(order: dict[str, Any]) -> OrderStatus:
    """Map a ccxt unified order status to ``OrderStatus``."""
    status = order.get("status") or "open"
    if status == "closed":
        return OrderStatus.FILLED
    if status in ("canceled", "cancelled", "expired", "rejected"):
        return OrderStatus.CANCELLED
    if float(order.get("filled") or 0.0) > 0:
        return OrderStatus.PARTIALLY_FILLED
    return OrderStatus.PENDING


def _order_to_result(order: dict[str, Any]) -> OrderResult:
    """Convert a ccxt order dict to an ``OrderResult``."""
    filled = float(order.get("filled") or 0.0)
    cost = float(order.get("cost") or 0.0)
    average = order.get("average")
    if average is None and filled > 0:
        average = cost / filled
    fee = order.get("fee") or {}
    return OrderResult(
        order_id=str(order.get("id", "")),
        status=_map_ccxt_status(order),
        filled_quantity=filled,
        avg_fill_price=float(average or 0.0),
        fee=float(fee.get("cost") or 0.0),
        quote_amount=cost,
        client_order_id=order.get("clientOrderId") or "",
    )


def to_ccxt_symbol(pair: str) -> str:
    base, quote = split_pair(pair)
    return f"{base}/{quote}"


class CcxtClient(ExchangeClient):
    """Async wrapper around a ccxt spot exchange.

    Parameters
    ----------
    exchange_id:
        ccxt exchange id (e.g. ``"bybit"``).
    testnet:
        Switch the ccxt instance to sandbox mode.
    rate_limit:
        Minimum milliseconds between requests (ccxt throttler).
    """

    def __init__(
        self,
        exchange_id: str,
        api_key: str,
        api_secret: str,
        testnet: bool = False,
        rate_limit: int = 50,
    ) -> None:
        super().__init__(api_key, api_secret, testnet)
        self.name = exchange_id
        self._exchange_id = exchange_id
        self._rate_limit = rate_limit
        self._exchange: ccxt_async.Exchange | None = None
        self._session: aiohttp.ClientSession | None = None

    async def _connect(self) -> ccxt_async.Exchange:
        """Create the ccxt instance and load markets on first use."""
        if self._exchange is not None:
            return self._exchange
        exchange_cls = getattr(ccxt_async, self._exchange_id)
        session = aiohttp.ClientSession(
            connector=aiohttp.TCPConnector(resolver=aiohttp.ThreadedResolver())
        )
        exchange = exchange_cls(
            {
                "apiKey": self._api_key,
                "secret": self._api_secret,
                "enableRateLimit": True,
                "rateLimit": self._rate_limit,
                "session": session,
                "options": {"defaultType": "spot"},
            }
        )
        if self.testnet:
            exchange.set_sandbox_mode(True)
        try:
            await exchange.load_markets()
        except ccxt_async.BaseError:
            await exchange.close()
            await session.close()
            raise
        logger.info(
            "Connected to %s %s (%d markets loaded)",
            self._exchange_id,
            "testnet" if self.testnet else "mainnet",
            len(exchange.markets),
        )
        self._exchange = exchange
        self._session = session
        return exchange

    async def get_ticker(self, pair: str) -> Ticker:
        try:
            exchange = await self._connect()
            data = await exchange.fetch_ticker(to_ccxt_symbol(pair))
        except ccxt_async.BaseError as e:
            raise MarketDataUnavailable(f"{self._exchange_id} ticker for {pair}: {e}") from e
        if data.get("last") is None:
            raise MarketDataUnavailable(f"{self._exchange_id} returned no price for {pair}")
        return Ticker(
            pair=pair,
            price=float(data["last"]),
            volume_24h=float(data.get("baseVolume") or 0.0),
            change_24h=float(data.get("percentage") or 0.0),
        )

    async def get_klines(self, pair: str, interval: str = "1h", limit: int = 100) -> list[Candle]:
        try:
            exchange = await self._connect()
            rows = await exchange.fetch_ohlcv(to_ccxt_symbol(pair), interval, limit=limit)
        except ccxt_async.BaseError as e:
            raise MarketDataUnavailable(f"{self._exchange_id} candles for {pair}: {e}") from e
        return [Candle(int(r[0]), r[1], r[2], r[3], r[4], r[5]) for r in rows]

    async def get_supported_pairs(self) -> list[str]:
        try:
            exchange = await self._connect()
        except ccxt_async.BaseError as e:
            raise MarketDataUnavailable(f"{self._exchange_id} markets: {e}") from e
        return sorted(
            symbol
            for symbol, market in exchange.markets.items()
            if market.get("spot") and market.get("active", True)
        )

    async def get_balances(self) -> list[Balance]:
        try:
            exchange = await self._connect()
            data = await exchange.fetch_balance()
        except ccxt_async.BaseError as e:
            raise MarketDataUnavailable(f"{self._exchange_id} balance: {e}") from e
        free, used = data.get("free") or {}, data.get("used") or {}
        balances = []
        for currency in sorted(set(free) | set(used)):
            f, u = float(free.get(currency) or 0.0), float(used.get(currency) or 0.0)
            if f > 0 or u > 0:
                balances.append(Balance(currency=currency, free=f, locked=u))
        return balances

    async def validate_credentials(self) -> bool:
        try:
            exchange = await self._connect()
            await exchange.fetch_balance()
            return True
        except Exception:
            logger.warning("%s credential check failed", self._exchange_id, exc_info=True)
            return False

    async def create_market_order(
        self,
        pair: str,
        side: OrderSide,
        quote_amount: float,
        client_order_id: str | None = None,
    ) -> OrderResult:
        symbol = to_ccxt_symbol(pair)
        params = {"clientOrderId": client_order_id} if client_order_id else {}
        try:
            exchange = await self._connect()
            if OrderSide(side) is OrderSide.BUY:
                order = await exchange.create_market_buy_order_with_cost(
                    symbol, quote_amount, params
                )
            else:
                ticker = await exchange.fetch_ticker(symbol)
                amount = quote_amount / float(ticker["last"])
                order = await exchange.create_order(symbol, "market", "sell", amount, None, params)
        except ccxt_async.BaseError as e:
            raise OrderRejected(f"{self._exchange_id} rejected {side} {pair}: {e}") from e
        result = _order_to_result(order)
        logger.info(
            "%s order %s %s %.2f -> id=%s status=%s",
            self._exchange_id,
            side,
            pair,
            quote_amount,
            result.order_id,
            result.status.value,
        )
        return result

    async def get_order_status(self, order_id: str, pair: str) -> OrderResult:
        try:
            exchange = await self._connect()
            order = await exchange.fetch_order(order_id, to_ccxt_symbol(pair))
        except ccxt_async.BaseError as e:
            raise OrderRejected(f"{self._exchange_id} order {order_id}: {e}") from e
        return _order_to_result(order)

    async def find_order(self, client_order_id: str, pair: str) -> OrderResult | None:
        symbol = to_ccxt_symbol(pair)
        try:
            exchange = await self._connect()
            orders = await exchange.fetch_open_orders(symbol)
            orders += await exchange.fetch_closed_orders(symbol)
        except ccxt_async.BaseError as e:
            raise OrderRejected(f"{self._exchange_id} order lookup {client_order_id}: {e}") from e
        for order in orders:
            if order.get("clientOrderId") == client_order_id:
                return _order_to_result(order)
        return None

    async def close(self) -> None:
        if self._exchange is not None:
            await self._exchange.close()
            self._exchange = None
        if self._session is not None:
            # ccxt does not close a session it was handed
            await self._session.close()
            self._session = None
            logger.info("Disconnected from %s", self._exchange_id)
