"""Venue-neutral exchange client interface and result types."""

from __future__ import annotations

import abc
from dataclasses import dataclass

from dcabot.config.constants import OrderSide, OrderStatus


@dataclass
class Ticker:
    pair: str
    price: float
    volume_24h: float = 0.0
    change_24h: float = 0.0


@dataclass
class Candle:
    """One OHLCV bar; ``timestamp`` is epoch milliseconds."""

    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass
class Balance:
    currency: str
    free: float
    locked: float = 0.0

    @property
    def total(self) -> float:
        return self.free + self.locked


@dataclass
class OrderResult:
    """Normalized outcome of placing or polling an order.

    ``avg_fill_price`` is the quantity-weighted average over all fills.
    """

    order_id: str
    status: OrderStatus
    filled_quantity: float = 0.0
    avg_fill_price: float = 0.0
    fee: float = 0.0
    quote_amount: float = 0.0
    client_order_id: str = ""

    @property
    def is_filled(self) -> bool:
        return self.status is OrderStatus.FILLED


def weighted_average(fills: list[tuple[float, float]]) -> tuple[float, float]:
    """Aggregate ``(price, quantity)`` fills into ``(total_qty, avg_price)``."""
    total_qty = sum(qty for _, qty in fills)
    if total_qty <= 0:
        return 0.0, 0.0
    notional = sum(price * qty for price, qty in fills)
    return total_qty, notional / total_qty


class ExchangeClient(abc.ABC):
    """Async client for one venue account.

    Implementations translate venue errors into ``MarketDataUnavailable``
    (read paths) or ``OrderRejected`` (order paths). Use as an async context
    manager or call ``close()`` explicitly.
    """

    name: str = "exchange"

    def __init__(self, api_key: str, api_secret: str, testnet: bool = False) -> None:
        self._api_key = api_key
        self._api_secret = api_secret
        self.testnet = testnet

    @abc.abstractmethod
    async def get_ticker(self, pair: str) -> Ticker: ...

    @abc.abstractmethod
    async def get_klines(self, pair: str, interval: str = "1h", limit: int = 100) -> list[Candle]: ...

    @abc.abstractmethod
    async def get_balances(self) -> list[Balance]: ...

    @abc.abstractmethod
    async def create_market_order(
        self,
        pair: str,
        side: OrderSide,
        quote_amount: float,
        client_order_id: str | None = None,
    ) -> OrderResult: ...

    @abc.abstractmethod
    async def get_order_status(self, order_id: str, pair: str) -> OrderResult: ...

    @abc.abstractmethod
    async def find_order(self, client_order_id: str, pair: str) -> OrderResult | None:
        """Look an order up by the id we assigned at submission. None if unknown."""

    @abc.abstractmethod
    async def get_supported_pairs(self) -> list[str]: ...

    @abc.abstractmethod
    async def validate_credentials(self) -> bool:
        """Make one authenticated read-only call. Never raises."""

    async def get_free_balance(self, currency: str) -> float:
        currency = currency.upper()
        for balance in await self.get_balances():
            if balance.currency.upper() == currency:
                return balance.free
        return 0.0

    async def close(self) -> None:
        """Release network resources."""

    async def __aenter__(self) -> "ExchangeClient":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
