"""Tests for strategy and exchange lifecycle services."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from dcabot.config.constants import (
    AmountType,
    ConditionType,
    EventType,
    ExchangeType,
    ExecutionStatus,
    Frequency,
    NotificationType,
)
from dcabot.core.errors import NotFound, PreconditionFailed, UnsupportedExchange
from dcabot.core.services import ExchangeService, StrategyService, parse_conditions
from dcabot.data.models import Execution, ScheduledJob


@pytest.fixture
def broadcaster() -> MagicMock:
    mock = MagicMock()
    mock.broadcast = AsyncMock(return_value=1)
    return mock


@pytest.fixture
def dispatcher() -> MagicMock:
    mock = MagicMock()
    mock.notify = AsyncMock()
    return mock


@pytest.fixture
def service(repo, broadcaster, dispatcher) -> StrategyService:
    return StrategyService(repo, broadcaster, dispatcher)


async def _create(service, user, exchange, now, **overrides):
    params = dict(
        exchange_id=exchange.id,
        name="Daily ETH",
        pair="ETH/USDT",
        amount=25,
        frequency="daily",
        now=now,
    )
    params.update(overrides)
    return await service.create(user.id, **params)


class TestParseConditions:
    def test_parse(self):
        conditions = parse_conditions(
            [{"type": "rsi_below", "operator": "lt", "value": "30", "is_active": False}]
        )
        assert conditions[0].type is ConditionType.RSI_BELOW
        assert conditions[0].value == 30.0
        assert conditions[0].is_active is False

    def test_invalid_type(self):
        with pytest.raises(ValueError):
            parse_conditions([{"type": "moon_phase", "operator": "gt", "value": 1}])


class TestStrategyService:
    @pytest.mark.asyncio
    async def test_create_schedules_immediately(self, service, repo, user, exchange, dispatcher, now):
        strategy = await _create(service, user, exchange, now)
        assert strategy.is_active
        assert strategy.base_currency == "ETH"
        job = await repo.get_job(strategy.id)
        assert job.next_run_at == now
        assert job.is_active
        assert dispatcher.notify.await_args.args[1] is NotificationType.STRATEGY_CREATED

    @pytest.mark.asyncio
    async def test_create_future_start_is_inactive(self, service, repo, user, exchange, now):
        strategy = await _create(service, user, exchange, now, start_date=now + timedelta(days=3))
        assert strategy.is_active is False
        assert await repo.get_job(strategy.id) is None

    @pytest.mark.asyncio
    async def test_create_with_conditions(self, service, repo, user, exchange, now):
        strategy = await _create(
            service,
            user,
            exchange,
            now,
            conditions=[{"type": "price_below", "operator": "lt", "value": 2000}],
        )
        loaded = await repo.get_strategy(strategy.id)
        assert loaded.conditions[0].type is ConditionType.PRICE_BELOW

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"amount": 0},
            {"amount": 150, "amount_type": AmountType.PERCENTAGE},
            {"frequency": "yearly"},
            {"pair": "BTCUSDT"},
        ],
    )
    async def test_create_rejects_invalid(self, service, user, exchange, now, overrides):
        with pytest.raises(ValueError):
            await _create(service, user, exchange, now, **overrides)

    @pytest.mark.asyncio
    async def test_create_end_before_start(self, service, user, exchange, now):
        with pytest.raises(ValueError):
            await _create(service, user, exchange, now, end_date=now - timedelta(days=1))

    @pytest.mark.asyncio
    async def test_create_on_foreign_exchange(self, service, user, exchange, now):
        with pytest.raises(NotFound):
            await service.create(
                user.id + 1,
                exchange_id=exchange.id,
                name="x",
                pair="BTC/USDT",
                amount=10,
                frequency=Frequency.DAILY,
                now=now,
            )

    @pytest.mark.asyncio
    async def test_create_on_inactive_exchange(self, service, repo, user, exchange, now):
        await repo.set_exchange_active(exchange.id, False)
        with pytest.raises(PreconditionFailed):
            await _create(service, user, exchange, now)

    @pytest.mark.asyncio
    async def test_get_is_owner_scoped(self, service, user, strategy):
        assert (await service.get(user.id, strategy.id)).id == strategy.id
        with pytest.raises(NotFound):
            await service.get(user.id + 1, strategy.id)

    @pytest.mark.asyncio
    async def test_update(self, service, repo, user, strategy, now):
        await repo.upsert_job(
            ScheduledJob(strategy_id=strategy.id, next_run_at=now, last_run_at=now - timedelta(hours=2))
        )
        updated = await service.update(
            user.id, strategy.id, {"pair": "SOL-USDC", "frequency": "hourly"}, now=now
        )
        assert (updated.base_currency, updated.quote_currency) == ("SOL", "USDC")
        job = await repo.get_job(strategy.id)
        assert job.next_run_at == now - timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, service, user, strategy):
        with pytest.raises(ValueError, match="user_id"):
            await service.update(user.id, strategy.id, {"user_id": 99})

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, service, repo, user, strategy, broadcaster, now):
        await repo.upsert_job(ScheduledJob(strategy_id=strategy.id, next_run_at=now))
        paused = await service.toggle(user.id, strategy.id, now)
        assert paused.is_active is False
        assert (await repo.get_job(strategy.id)).is_active is False
        assert broadcaster.broadcast.await_args.args[1] is EventType.STRATEGY_UPDATE

        resumed = await service.toggle(user.id, strategy.id, now)
        assert resumed.is_active is True
        assert (await repo.get_job(strategy.id)).is_active is True

    @pytest.mark.asyncio
    async def test_activate_before_start_rejected(self, service, user, exchange, now):
        strategy = await _create(service, user, exchange, now, start_date=now + timedelta(days=1))
        with pytest.raises(PreconditionFailed, match="start date"):
            await service.set_active(user.id, strategy.id, True, now)

    @pytest.mark.asyncio
    async def test_activate_with_inactive_exchange_rejected(self, service, repo, user, strategy, exchange, now):
        await repo.set_strategy_active(strategy.id, False)
        await repo.set_exchange_active(exchange.id, False)
        with pytest.raises(PreconditionFailed, match="exchange"):
            await service.set_active(user.id, strategy.id, True, now)

    @pytest.mark.asyncio
    async def test_delete(self, service, repo, user, strategy, dispatcher):
        await service.delete(user.id, strategy.id)
        assert await repo.get_strategy(strategy.id) is None
        assert dispatcher.notify.await_args.args[1] is NotificationType.STRATEGY_DELETED

    @pytest.mark.asyncio
    async def test_notification_failure_is_logged(self, service, user, exchange, dispatcher, now):
        dispatcher.notify.side_effect = RuntimeError("smtp down")
        strategy = await _create(service, user, exchange, now)
        assert strategy.id is not None

    @pytest.mark.asyncio
    async def test_stats(self, service, repo, user, strategy, now):
        for status, qty, price in (
            (ExecutionStatus.COMPLETED, 0.0025, 40000.0),
            (ExecutionStatus.COMPLETED, 0.005, 20000.0),
            (ExecutionStatus.FAILED, 0.0, 0.0),
        ):
            await repo.save_execution(
                Execution(
                    strategy_id=strategy.id,
                    amount=100.0,
                    timestamp=now,
                    status=status,
                    quantity=qty,
                    price=price,
                )
            )
        await repo.upsert_job(ScheduledJob(strategy_id=strategy.id, next_run_at=now + timedelta(days=1)))

        stats = await service.stats(user.id, strategy.id)
        assert stats.total_executions == 3
        assert stats.successful_executions == 2
        assert stats.success_rate == pytest.approx(200 / 3)
        assert stats.total_invested == pytest.approx(200.0)
        assert stats.average_price == pytest.approx(200.0 / 0.0075)
        data = stats.to_dict()
        assert data["nextExecution"] == (now + timedelta(days=1)).isoformat()
        assert data["lastExecution"]["strategyId"] == strategy.id

    @pytest.mark.asyncio
    async def test_stats_empty(self, service, user, strategy):
        stats = await service.stats(user.id, strategy.id)
        assert stats.success_rate == 0.0
        assert stats.average_price == 0.0
        assert stats.last_execution is None
        assert stats.next_execution is None


@pytest.fixture
def factory(client) -> MagicMock:
    mock = MagicMock()
    mock.create = MagicMock(return_value=client)
    return mock


@pytest.fixture
def exchanges(repo, vault, factory, clients) -> ExchangeService:
    return ExchangeService(repo, vault, factory, clients)


class TestExchangeService:
    @pytest.mark.asyncio
    async def test_create_validates_and_encrypts(self, exchanges, repo, vault, user, client, now):
        exchange = await exchanges.create(
            user.id,
            name="Coinbase",
            exchange_type="coinbase",
            api_key="cb-key-123456",
            api_secret="c2VjcmV0",
            passphrase="pp",
            now=now,
        )
        client.validate_credentials.assert_awaited_once()
        client.close.assert_awaited_once()
        stored = await repo.get_exchange(exchange.id)
        assert stored.type is ExchangeType.COINBASE
        assert stored.api_key != "cb-key-123456"
        assert vault.decrypt(stored.api_key) == "cb-key-123456"
        assert vault.decrypt(stored.passphrase) == "pp"
        assert stored.last_sync_at == now
        assert exchanges.masked_key(stored) == "cb-k…3456"

    @pytest.mark.asyncio
    async def test_create_with_bad_credentials(self, exchanges, repo, user, client):
        client.validate_credentials.return_value = False
        with pytest.raises(PreconditionFailed):
            await exchanges.create(
                user.id, name="x", exchange_type="binance", api_key="k", api_secret="s"
            )
        assert await repo.list_exchanges(user.id) == []

    @pytest.mark.asyncio
    async def test_create_unknown_type(self, exchanges, user):
        with pytest.raises(UnsupportedExchange):
            await exchanges.create(user.id, name="x", exchange_type="kraken", api_key="k", api_secret="s")

    @pytest.mark.asyncio
    async def test_delete_refused_with_active_strategies(self, exchanges, user, exchange, strategy):
        with pytest.raises(PreconditionFailed, match="1 active strategy"):
            await exchanges.delete(user.id, exchange.id)

    @pytest.mark.asyncio
    async def test_delete_invalidates_cache(self, exchanges, repo, user, exchange, strategy, clients):
        await repo.set_strategy_active(strategy.id, False)
        await exchanges.delete(user.id, exchange.id)
        clients.invalidate.assert_awaited_once_with(exchange.id)
        assert await repo.get_exchange(exchange.id) is None

    @pytest.mark.asyncio
    async def test_health_check(self, exchanges, repo, user, exchange, client, now):
        assert await exchanges.health_check(user.id, exchange.id, now) is True
        assert (await repo.get_exchange(exchange.id)).last_sync_at == now

        client.validate_credentials.return_value = False
        assert await exchanges.health_check(user.id, exchange.id, now + timedelta(hours=1)) is False
        assert (await repo.get_exchange(exchange.id)).last_sync_at == now

    @pytest.mark.asyncio
    async def test_masked_key_unreadable(self, exchanges, exchange):
        exchange.api_key = "garbage"
        assert exchanges.masked_key(exchange) == "<unreadable>"
