"""Tests for the Binance spot adapter (transport mocked)."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from dcabot.config.constants import OrderSide, OrderStatus
from dcabot.core.errors import ExchangeRequestError, MarketDataUnavailable, OrderRejected
from dcabot.exchange.binance import BinanceClient, parse_order, sign_query, to_symbol

FULL_ORDER = {
    "symbol": "BTCUSDT",
    "orderId": 28,
    "clientOrderId": "dca-1-1710504000000",
    "status": "FILLED",
    "executedQty": "0.00250000",
    "cummulativeQuoteQty": "100.00000000",
    "fills": [
        {"price": "39900.00", "qty": "0.00100000", "commission": "0.00000100"},
        {"price": "40066.67", "qty": "0.00150000", "commission": "0.00000150"},
    ],
}


@pytest.fixture
def client() -> BinanceClient:
    return BinanceClient("key", "secret", testnet=True, base_url="https://testnet.binance.vision/")


def _session(status: int = 200, payload=None) -> MagicMock:
    response = MagicMock(status=status)
    response.json = AsyncMock(return_value=payload)
    ctx = MagicMock()
    ctx.__aenter__ = AsyncMock(return_value=response)
    ctx.__aexit__ = AsyncMock(return_value=False)
    session = MagicMock(closed=False)
    session.request = MagicMock(return_value=ctx)
    session.close = AsyncMock()
    return session


class TestHelpers:
    def test_to_symbol(self):
        assert to_symbol("btc/usdt") == "BTCUSDT"
        assert to_symbol("ETH-BTC") == "ETHBTC"

    def test_sign_query_known_vector(self):
        # Example from the Binance API documentation
        secret = "NhqPtmdSJYdKjVHjA7PZj4Mge3R5YNiP1e3UZjInClVN65XAbvqqM6A7H5fATj0j"
        query = (
            "symbol=LTCBTC&side=BUY&type=LIMIT&timeInForce=GTC&quantity=1&price=0.1"
            "&recvWindow=5000&timestamp=1499827319559"
        )
        assert sign_query(secret, query) == (
            "c8db56825ae71d6d79447849e617115f4a920fa2acdcab2b053c4b2838bd6b71"
        )

    def test_parse_order_weighted_average(self):
        result = parse_order(FULL_ORDER)
        assert result.order_id == "28"
        assert result.status is OrderStatus.FILLED
        assert result.filled_quantity == pytest.approx(0.0025)
        expected = (39900.0 * 0.001 + 40066.67 * 0.0015) / 0.0025
        assert result.avg_fill_price == pytest.approx(expected)
        assert result.fee == pytest.approx(0.0000025)
        assert result.quote_amount == pytest.approx(100.0)
        assert result.client_order_id == "dca-1-1710504000000"

    def test_parse_order_without_fills(self):
        result = parse_order(
            {"orderId": 5, "status": "PARTIALLY_FILLED", "executedQty": "0.001", "cummulativeQuoteQty": "40"}
        )
        assert result.status is OrderStatus.PARTIALLY_FILLED
        assert result.avg_fill_price == pytest.approx(40000.0)

    @pytest.mark.parametrize("raw, expected", [
        ("NEW", OrderStatus.PENDING),
        ("CANCELED", OrderStatus.CANCELLED),
        ("EXPIRED", OrderStatus.CANCELLED),
        ("SOMETHING_ELSE", OrderStatus.PENDING),
    ])
    def test_status_mapping(self, raw, expected):
        assert parse_order({"orderId": 1, "status": raw}).status is expected


class TestBinanceClient:
    @pytest.mark.asyncio
    async def test_get_ticker(self, client):
        payload = {"lastPrice": "40000.5", "volume": "1234.5", "priceChangePercent": "-1.2"}
        with patch.object(client, "_request", AsyncMock(return_value=payload)) as req:
            ticker = await client.get_ticker("BTC/USDT")
        req.assert_awaited_once_with("GET", "/api/v3/ticker/24hr", {"symbol": "BTCUSDT"})
        assert ticker.price == 40000.5
        assert ticker.volume_24h == 1234.5
        assert ticker.change_24h == -1.2

    @pytest.mark.asyncio
    async def test_get_ticker_error(self, client):
        with patch.object(client, "_request", AsyncMock(side_effect=ExchangeRequestError("down"))):
            with pytest.raises(MarketDataUnavailable):
                await client.get_ticker("BTC/USDT")

    @pytest.mark.asyncio
    async def test_get_klines(self, client):
        rows = [[1704067200000, "1", "2", "0.5", "1.5", "10", 0, "0", 0, "0", "0", "0"]]
        with patch.object(client, "_request", AsyncMock(return_value=rows)):
            candles = await client.get_klines("BTC/USDT", "1h", 1)
        assert candles[0].timestamp == 1704067200000
        assert candles[0].close == 1.5
        assert candles[0].volume == 10.0

    @pytest.mark.asyncio
    async def test_get_balances_skips_empty(self, client):
        payload = {
            "balances": [
                {"asset": "USDT", "free": "500.0", "locked": "10.0"},
                {"asset": "BNB", "free": "0.0", "locked": "0.0"},
            ]
        }
        with patch.object(client, "_request", AsyncMock(return_value=payload)) as req:
            balances = await client.get_balances()
            assert await client.get_free_balance("usdt") == 500.0
            assert await client.get_free_balance("BTC") == 0.0
        assert req.await_args_list[0].kwargs == {"signed": True}
        assert [b.currency for b in balances] == ["USDT"]
        assert balances[0].total == 510.0

    @pytest.mark.asyncio
    async def test_supported_pairs(self, client):
        payload = {
            "symbols": [
                {"baseAsset": "BTC", "quoteAsset": "USDT", "status": "TRADING"},
                {"baseAsset": "LUNA", "quoteAsset": "USDT", "status": "BREAK"},
            ]
        }
        with patch.object(client, "_request", AsyncMock(return_value=payload)):
            assert await client.get_supported_pairs() == ["BTC/USDT"]

    @pytest.mark.asyncio
    async def test_create_market_order(self, client):
        with patch.object(client, "_request", AsyncMock(return_value=FULL_ORDER)) as req:
            result = await client.create_market_order(
                "BTC/USDT", OrderSide.BUY, 100.0, "dca-1-1710504000000"
            )
        method, path, params = req.await_args.args
        assert (method, path) == ("POST", "/api/v3/order")
        assert params["quoteOrderQty"] == "100"
        assert params["type"] == "MARKET"
        assert params["side"] == "BUY"
        assert params["newClientOrderId"] == "dca-1-1710504000000"
        assert req.await_args.kwargs == {"signed": True}
        assert result.is_filled

    @pytest.mark.asyncio
    async def test_create_market_order_rejected(self, client):
        error = ExchangeRequestError("Account has insufficient balance", status=400, code=-2010)
        with patch.object(client, "_request", AsyncMock(side_effect=error)):
            with pytest.raises(OrderRejected, match="insufficient balance"):
                await client.create_market_order("BTC/USDT", OrderSide.BUY, 100.0)

    @pytest.mark.asyncio
    async def test_find_order_unknown_returns_none(self, client):
        error = ExchangeRequestError("Order does not exist.", status=400, code=-2013)
        with patch.object(client, "_request", AsyncMock(side_effect=error)):
            assert await client.find_order("dca-1-1", "BTC/USDT") is None

    @pytest.mark.asyncio
    async def test_find_order_by_client_id(self, client):
        with patch.object(client, "_request", AsyncMock(return_value=FULL_ORDER)) as req:
            result = await client.find_order("dca-1-1710504000000", "BTC/USDT")
        assert req.await_args.args[2]["origClientOrderId"] == "dca-1-1710504000000"
        assert result.order_id == "28"

    @pytest.mark.asyncio
    async def test_validate_credentials(self, client):
        with patch.object(client, "_request", AsyncMock(return_value={"balances": []})):
            assert await client.validate_credentials() is True
        with patch.object(client, "_request", AsyncMock(side_effect=ExchangeRequestError("bad key"))):
            assert await client.validate_credentials() is False


class TestTransport:
    @pytest.mark.asyncio
    async def test_signed_request_appends_signature(self, client):
        session = _session(payload={"balances": []})
        with patch.object(client, "_get_session", return_value=session), patch(
            "dcabot.exchange.binance.time.time", return_value=1700000000.0
        ):
            await client._request("GET", "/api/v3/account", signed=True)

        method, url = session.request.call_args.args
        query = "timestamp=1700000000000&recvWindow=5000"
        assert method == "GET"
        assert url == (
            f"https://testnet.binance.vision/api/v3/account?{query}"
            f"&signature={sign_query('secret', query)}"
        )
        assert session.request.call_args.kwargs["headers"] == {"X-MBX-APIKEY": "key"}

    @pytest.mark.asyncio
    async def test_error_body_raises(self, client):
        session = _session(status=400, payload={"code": -1121, "msg": "Invalid symbol."})
        with patch.object(client, "_get_session", return_value=session):
            with pytest.raises(ExchangeRequestError) as exc_info:
                await client._request("GET", "/api/v3/ticker/24hr", {"symbol": "XXX"})
        assert exc_info.value.status == 400
        assert exc_info.value.code == -1121

    @pytest.mark.asyncio
    async def test_network_error(self, client):
        session = _session()
        session.request.side_effect = aiohttp.ClientConnectionError("refused")
        with patch.object(client, "_get_session", return_value=session):
            with pytest.raises(ExchangeRequestError, match="Network error"):
                await client._request("GET", "/api/v3/ping")

    @pytest.mark.asyncio
    async def test_close(self, client):
        session = _session()
        client._session = session
        await client.close()
        session.close.assert_awaited_once()
        assert client._session is None
