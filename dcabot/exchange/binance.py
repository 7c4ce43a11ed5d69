"""Binance spot REST adapter (aiohttp, HMAC-SHA256 signed requests)."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import time
from typing import Any
from urllib.parse import urlencode

import aiohttp

from dcabot.config.constants import OrderSide, OrderStatus
from dcabot.core.errors import ExchangeRequestError, MarketDataUnavailable, OrderRejected
from dcabot.data.models import split_pair
from dcabot.exchange.base import (
    Balance,
    Candle,
    ExchangeClient,
    OrderResult,
    Ticker,
    weighted_average,
)

logger = logging.getLogger(__name__)

# Binance error code for "Order does not exist."
_UNKNOWN_ORDER = -2013

_STATUS_MAP: dict[str, OrderStatus] = {
    "NEW": OrderStatus.PENDING,
    "PENDING_NEW": OrderStatus.PENDING,
    "PARTIALLY_FILLED": OrderStatus.PARTIALLY_FILLED,
    "FILLED": OrderStatus.FILLED,
    "CANCELED": OrderStatus.CANCELLED,
    "PENDING_CANCEL": OrderStatus.CANCELLED,
    "REJECTED": OrderStatus.CANCELLED,
    "EXPIRED": OrderStatus.CANCELLED,
    "EXPIRED_IN_MATCH": OrderStatus.CANCELLED,
}


def sign_query(secret: str, query: str) -> str:
    """Hex HMAC-SHA256 of the urlencoded query string."""
    return hmac.new(secret.encode(), query.encode(), hashlib.sha256).hexdigest()


def to_symbol(pair: str) -> str:
    """``"BTC/USDT"`` -> ``"BTCUSDT"``."""
    base, quote = split_pair(pair)
    return f"{base}{quote}"


def parse_order(data: dict[str, Any]) -> OrderResult:
    """Normalize a Binance order payload (with or without ``fills``)."""
    fills = [(float(f["price"]), float(f["qty"])) for f in data.get("fills") or []]
    fee = sum(float(f.get("commission", 0.0)) for f in data.get("fills") or [])
    if fills:
        quantity, avg_price = weighted_average(fills)
    else:
        quantity = float(data.get("executedQty", 0.0) or 0.0)
        quote = float(data.get("cummulativeQuoteQty", 0.0) or 0.0)
        avg_price = quote / quantity if quantity > 0 else 0.0
    return OrderResult(
        order_id=str(data.get("orderId", "")),
        status=_STATUS_MAP.get(data.get("status", ""), OrderStatus.PENDING),
        filled_quantity=quantity,
        avg_fill_price=avg_price,
        fee=fee,
        quote_amount=float(data.get("cummulativeQuoteQty", 0.0) or 0.0),
        client_order_id=data.get("clientOrderId", ""),
    )


class BinanceClient(ExchangeClient):
    """Binance spot account client.

    Parameters
    ----------
    api_key, api_secret:
        Plaintext credentials (decrypted by the factory).
    base_url:
        REST root, production or testnet.
    recv_window:
        Milliseconds a signed request stays valid.
    timeout:
        Total per-request timeout in seconds.
    """

    name = "binance"

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        testnet: bool = False,
        base_url: str = "https://api.binance.com",
        recv_window: int = 5000,
        timeout: float = 10.0,
    ) -> None:
        super().__init__(api_key, api_secret, testnet)
        self._base_url = base_url.rstrip("/")
        self._recv_window = recv_window
        self._timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    # -- Market data ----------------------------------------------------------

    async def get_ticker(self, pair: str) -> Ticker:
        try:
            data = await self._request("GET", "/api/v3/ticker/24hr", {"symbol": to_symbol(pair)})
            return Ticker(
                pair=pair,
                price=float(data["lastPrice"]),
                volume_24h=float(data.get("volume", 0.0)),
                change_24h=float(data.get("priceChangePercent", 0.0)),
            )
        except (ExchangeRequestError, KeyError, ValueError) as e:
            raise MarketDataUnavailable(f"Binance ticker for {pair}: {e}") from e

    async def get_klines(self, pair: str, interval: str = "1h", limit: int = 100) -> list[Candle]:
        params = {"symbol": to_symbol(pair), "interval": interval, "limit": limit}
        try:
            rows = await self._request("GET", "/api/v3/klines", params)
            return [
                Candle(
                    timestamp=int(row[0]),
                    open=float(row[1]),
                    high=float(row[2]),
                    low=float(row[3]),
                    close=float(row[4]),
                    volume=float(row[5]),
                )
                for row in rows
            ]
        except (ExchangeRequestError, IndexError, TypeError, ValueError) as e:
            raise MarketDataUnavailable(f"Binance klines for {pair}: {e}") from e

    async def get_supported_pairs(self) -> list[str]:
        try:
            data = await self._request("GET", "/api/v3/exchangeInfo")
        except ExchangeRequestError as e:
            raise MarketDataUnavailable(f"Binance exchangeInfo: {e}") from e
        return [
            f"{s['baseAsset']}/{s['quoteAsset']}"
            for s in data.get("symbols", [])
            if s.get("status") == "TRADING"
        ]

    # -- Account --------------------------------------------------------------

    async def get_balances(self) -> list[Balance]:
        try:
            data = await self._request("GET", "/api/v3/account", signed=True)
        except ExchangeRequestError as e:
            raise MarketDataUnavailable(f"Binance account: {e}") from e
        balances = []
        for item in data.get("balances", []):
            free, locked = float(item["free"]), float(item["locked"])
            if free > 0 or locked > 0:
                balances.append(Balance(currency=item["asset"], free=free, locked=locked))
        return balances

    async def validate_credentials(self) -> bool:
        try:
            await self._request("GET", "/api/v3/account", signed=True)
            return True
        except Exception:
            logger.warning("Binance credential check failed", exc_info=True)
            return False

    # -- Orders ---------------------------------------------------------------

    async def create_market_order(
        self,
        pair: str,
        side: OrderSide,
        quote_amount: float,
        client_order_id: str | None = None,
    ) -> OrderResult:
        params: dict[str, Any] = {
            "symbol": to_symbol(pair),
            "side": OrderSide(side).value,
            "type": "MARKET",
            "quoteOrderQty": f"{quote_amount:.8f}".rstrip("0").rstrip("."),
            "newOrderRespType": "FULL",
        }
        if client_order_id:
            params["newClientOrderId"] = client_order_id
        try:
            data = await self._request("POST", "/api/v3/order", params, signed=True)
        except ExchangeRequestError as e:
            raise OrderRejected(f"Binance rejected {side} {pair}: {e}") from e
        result = parse_order(data)
        logger.info(
            "Binance order %s %s %.2f -> id=%s status=%s",
            side,
            pair,
            quote_amount,
            result.order_id,
            result.status.value,
        )
        return result

    async def get_order_status(self, order_id: str, pair: str) -> OrderResult:
        params = {"symbol": to_symbol(pair), "orderId": order_id}
        try:
            data = await self._request("GET", "/api/v3/order", params, signed=True)
        except ExchangeRequestError as e:
            raise OrderRejected(f"Binance order {order_id}: {e}") from e
        return parse_order(data)

    async def find_order(self, client_order_id: str, pair: str) -> OrderResult | None:
        params = {"symbol": to_symbol(pair), "origClientOrderId": client_order_id}
        try:
            data = await self._request("GET", "/api/v3/order", params, signed=True)
        except ExchangeRequestError as e:
            if e.code == _UNKNOWN_ORDER:
                return None
            raise OrderRejected(f"Binance order lookup {client_order_id}: {e}") from e
        return parse_order(data)

    # -- Transport ------------------------------------------------------------

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(resolver=aiohttp.ThreadedResolver()),
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            )
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        signed: bool = False,
    ) -> Any:
        """Send one REST call and return the decoded JSON body."""
        params = dict(params or {})
        headers = {"X-MBX-APIKEY": self._api_key}
        url = f"{self._base_url}{path}"
        if signed:
            params["timestamp"] = int(time.time() * 1000)
            params["recvWindow"] = self._recv_window
            query = urlencode(params)
            url = f"{url}?{query}&signature={sign_query(self._api_secret, query)}"
            params = {}

        try:
            async with self._get_session().request(
                method, url, params=params or None, headers=headers
            ) as response:
                payload = await response.json(content_type=None)
                if response.status >= 400:
                    body = payload if isinstance(payload, dict) else {}
                    raise ExchangeRequestError(
                        body.get("msg", f"HTTP {response.status}"),
                        status=response.status,
                        code=body.get("code"),
                    )
                return payload
        except aiohttp.ClientError as e:
            raise ExchangeRequestError(f"Network error: {e}") from e
        except asyncio.TimeoutError as e:
            raise ExchangeRequestError("Request timeout") from e

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
