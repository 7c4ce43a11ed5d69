"""Coinbase Exchange REST adapter (aiohttp, CB-ACCESS signed requests)."""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from typing import Any
from urllib.parse import urlencode

import aiohttp

from dcabot.config.constants import OrderSide, OrderStatus
from dcabot.core.errors import ExchangeRequestError, MarketDataUnavailable, OrderRejected
from dcabot.data.models import split_pair
from dcabot.exchange.base import Balance, Candle, ExchangeClient, OrderResult, Ticker

logger = logging.getLogger(__name__)

# Candle interval -> granularity in seconds (the only values Coinbase accepts)
_GRANULARITY: dict[str, int] = {
    "1m": 60,
    "5m": 300,
    "15m": 900,
    "1h": 3600,
    "6h": 21600,
    "1d": 86400,
}


def sign_request(secret_b64: str, timestamp: str, method: str, request_path: str, body: str) -> str:
    """Base64 HMAC-SHA256 over ``timestamp + METHOD + path + body``.

    The API secret is itself base64; it is decoded before use as the key.
    """
    try:
        key = base64.b64decode(secret_b64)
    except (binascii.Error, ValueError) as e:
        raise ExchangeRequestError("Coinbase API secret is not valid base64") from e
    prehash = f"{timestamp}{method.upper()}{request_path}{body}"
    digest = hmac.new(key, prehash.encode(), hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def to_product_id(pair: str) -> str:
    """``"BTC/USD"`` -> ``"BTC-USD"``."""
    base, quote = split_pair(pair)
    return f"{base}-{quote}"


def parse_order(data: dict[str, Any]) -> OrderResult:
    filled = float(data.get("filled_size", 0.0) or 0.0)
    executed_value = float(data.get("executed_value", 0.0) or 0.0)
    status = str(data.get("status", "")).lower()
    if status == "done":
        if data.get("done_reason", "filled") == "filled":
            order_status = OrderStatus.FILLED
        else:
            order_status = OrderStatus.CANCELLED
    elif status == "rejected":
        order_status = OrderStatus.CANCELLED
    else:
        order_status = OrderStatus.PARTIALLY_FILLED if filled > 0 else OrderStatus.PENDING
    return OrderResult(
        order_id=str(data.get("id", "")),
        status=order_status,
        filled_quantity=filled,
        avg_fill_price=executed_value / filled if filled > 0 else 0.0,
        fee=float(data.get("fill_fees", 0.0) or 0.0),
        quote_amount=executed_value,
        client_order_id=data.get("client_oid", ""),
    )


class CoinbaseClient(ExchangeClient):
    """Coinbase Exchange account client.

    Parameters
    ----------
    api_key, api_secret, passphrase:
        Plaintext credentials; ``api_secret`` is the base64 secret as issued.
    base_url:
        REST root, production or sandbox.
    """

    name = "coinbase"

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        testnet: bool = False,
        passphrase: str = "",
        base_url: str = "https://api.pro.coinbase.com",
        timeout: float = 10.0,
    ) -> None:
        super().__init__(api_key, api_secret, testnet)
        self._passphrase = passphrase
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    async def get_ticker(self, pair: str) -> Ticker:
        try:
            data = await self._request("GET", f"/products/{to_product_id(pair)}/stats")
            last = float(data["last"])
            opened = float(data.get("open") or 0.0)
            return Ticker(
                pair=pair,
                price=last,
                volume_24h=float(data.get("volume", 0.0)),
                change_24h=(last - opened) / opened * 100 if opened else 0.0,
            )
        except (ExchangeRequestError, KeyError, ValueError) as e:
            raise MarketDataUnavailable(f"Coinbase ticker for {pair}: {e}") from e

    async def get_klines(self, pair: str, interval: str = "1h", limit: int = 100) -> list[Candle]:
        if interval not in _GRANULARITY:
            raise MarketDataUnavailable(f"Coinbase has no {interval} candles")
        path = f"/products/{to_product_id(pair)}/candles"
        try:
            rows = await self._request("GET", path, {"granularity": _GRANULARITY[interval]})
            # Coinbase returns newest first as [time, low, high, open, close, volume]
            candles = [
                Candle(
                    timestamp=int(row[0]) * 1000,
                    open=float(row[3]),
                    high=float(row[2]),
                    low=float(row[1]),
                    close=float(row[4]),
                    volume=float(row[5]),
                )
                for row in rows[:limit]
            ]
        except (ExchangeRequestError, IndexError, TypeError, ValueError) as e:
            raise MarketDataUnavailable(f"Coinbase candles for {pair}: {e}") from e
        candles.reverse()
        return candles

    async def get_supported_pairs(self) -> list[str]:
        try:
            products = await self._request("GET", "/products")
        except ExchangeRequestError as e:
            raise MarketDataUnavailable(f"Coinbase products: {e}") from e
        return [
            f"{p['base_currency']}/{p['quote_currency']}"
            for p in products
            if p.get("status") == "online"
        ]

    async def get_balances(self) -> list[Balance]:
        try:
            accounts = await self._request("GET", "/accounts", signed=True)
        except ExchangeRequestError as e:
            raise MarketDataUnavailable(f"Coinbase accounts: {e}") from e
        balances = []
        for acc in accounts:
            free, hold = float(acc.get("available", 0.0)), float(acc.get("hold", 0.0))
            if free > 0 or hold > 0:
                balances.append(Balance(currency=acc["currency"], free=free, locked=hold))
        return balances

    async def validate_credentials(self) -> bool:
        try:
            await self._request("GET", "/accounts", signed=True)
            return True
        except Exception:
            logger.warning("Coinbase credential check failed", exc_info=True)
            return False

    async def create_market_order(
        self,
        pair: str,
        side: OrderSide,
        quote_amount: float,
        client_order_id: str | None = None,
    ) -> OrderResult:
        body: dict[str, Any] = {
            "type": "market",
            "side": OrderSide(side).value.lower(),
            "product_id": to_product_id(pair),
            "funds": f"{quote_amount:.2f}",
        }
        if client_order_id:
            body["client_oid"] = client_order_id
        try:
            data = await self._request("POST", "/orders", body=body, signed=True)
        except ExchangeRequestError as e:
            raise OrderRejected(f"Coinbase rejected {side} {pair}: {e}") from e
        result = parse_order(data)
        logger.info(
            "Coinbase order %s %s %.2f -> id=%s status=%s",
            side,
            pair,
            quote_amount,
            result.order_id,
            result.status.value,
        )
        return result

    async def get_order_status(self, order_id: str, pair: str) -> OrderResult:
        try:
            data = await self._request("GET", f"/orders/{order_id}", signed=True)
        except ExchangeRequestError as e:
            raise OrderRejected(f"Coinbase order {order_id}: {e}") from e
        return parse_order(data)

    async def find_order(self, client_order_id: str, pair: str) -> OrderResult | None:
        try:
            data = await self._request("GET", f"/orders/client:{client_order_id}", signed=True)
        except ExchangeRequestError as e:
            if e.status == 404:
                return None
            raise OrderRejected(f"Coinbase order lookup {client_order_id}: {e}") from e
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
        body: dict[str, Any] | None = None,
        signed: bool = False,
    ) -> Any:
        """Send one REST call and return the decoded JSON body."""
        request_path = f"{path}?{urlencode(params)}" if params else path
        payload = json.dumps(body) if body is not None else ""
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if signed:
            timestamp = str(time.time())
            headers.update(
                {
                    "CB-ACCESS-KEY": self._api_key,
                    "CB-ACCESS-SIGN": sign_request(
                        self._api_secret, timestamp, method, request_path, payload
                    ),
                    "CB-ACCESS-TIMESTAMP": timestamp,
                    "CB-ACCESS-PASSPHRASE": self._passphrase,
                }
            )

        try:
            async with self._get_session().request(
                method,
                f"{self._base_url}{request_path}",
                data=payload or None,
                headers=headers,
            ) as response:
                data = await response.json(content_type=None)
                if response.status >= 400:
                    message = data.get("message") if isinstance(data, dict) else None
                    raise ExchangeRequestError(
                        message or f"HTTP {response.status}", status=response.status
                    )
                return data
        except aiohttp.ClientError as e:
            raise ExchangeRequestError(f"Network error: {e}") from e
        except asyncio.TimeoutError as e:
            raise ExchangeRequestError("Request timeout") from e

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
