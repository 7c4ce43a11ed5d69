"""Shared test fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from dcabot.config.constants import ExchangeType, Frequency, OrderStatus
from dcabot.config.settings import Settings, load_settings
from dcabot.core.vault import CredentialVault
from dcabot.data.database import Database
from dcabot.data.migrations import run_migrations
from dcabot.data.models import Exchange, Strategy, User
from dcabot.data.repository import Repository
from dcabot.exchange.base import Balance, ExchangeClient, OrderResult, Ticker

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def settings() -> Settings:
    """Load default settings for testing."""
    return load_settings("default")


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    """Temporary database path for test isolation."""
    return str(tmp_path / "test_dcabot.db")


@pytest.fixture
def now() -> datetime:
    """Fixed "current" time used by time-dependent tests."""
    return NOW


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault("unit-test-secret")


@pytest.fixture
async def repo(db_path) -> Repository:
    """Create a repository with a migrated database."""
    await run_migrations(db_path)
    db = Database(db_path)
    await db.connect()
    repo = Repository(db)
    yield repo
    await db.disconnect()


@pytest.fixture
async def user(repo) -> User:
    user = User(email="alice@example.com", name="Alice", notify_telegram=True, telegram_chat_id="42")
    await repo.save_user(user)
    return user


@pytest.fixture
async def exchange(repo, user, vault) -> Exchange:
    exchange = Exchange(
        user_id=user.id,
        name="Main Binance",
        type=ExchangeType.BINANCE_TESTNET,
        api_key=vault.encrypt("binance-key"),
        api_secret=vault.encrypt("binance-secret"),
    )
    await repo.save_exchange(exchange)
    return exchange


@pytest.fixture
async def strategy(repo, user, exchange) -> Strategy:
    strategy = Strategy(
        user_id=user.id,
        exchange_id=exchange.id,
        name="Weekly BTC",
        pair="BTC/USDT",
        amount=100.0,
        frequency=Frequency.DAILY,
        start_date=NOW - timedelta(days=30),
    )
    await repo.save_strategy(strategy)
    return strategy


def filled(quote: float = 100.0, price: float = 40000.0, order_id: str = "1001") -> OrderResult:
    return OrderResult(
        order_id=order_id,
        status=OrderStatus.FILLED,
        filled_quantity=quote / price,
        avg_fill_price=price,
        fee=0.1,
        quote_amount=quote,
    )


@pytest.fixture
def client() -> MagicMock:
    """An exchange client double that fills every order at 40k."""
    mock = MagicMock(spec=ExchangeClient)
    mock.get_ticker = AsyncMock(return_value=Ticker("BTC/USDT", 40000.0, 1234.0, 1.5))
    mock.get_klines = AsyncMock(return_value=[])
    mock.get_balances = AsyncMock(return_value=[Balance("USDT", 1000.0)])
    mock.get_free_balance = AsyncMock(return_value=1000.0)
    mock.create_market_order = AsyncMock(side_effect=lambda pair, side, quote, cid=None: filled(quote))
    mock.get_order_status = AsyncMock(return_value=filled())
    mock.find_order = AsyncMock(return_value=None)
    mock.validate_credentials = AsyncMock(return_value=True)
    mock.close = AsyncMock()
    return mock


@pytest.fixture
def clients(client) -> MagicMock:
    """A client cache double that always hands out ``client``."""
    cache = MagicMock()
    cache.get = AsyncMock(return_value=client)
    cache.invalidate = AsyncMock()
    cache.close_all = AsyncMock()
    return cache
