"""End-to-end tests wiring the full component graph through the container."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from dcabot.config.constants import ExecutionStatus, ExecutionType, OrderStatus
from dcabot.container import Container
from dcabot.data.models import User
from dcabot.exchange.base import OrderResult


@pytest.fixture
async def container(settings, db_path, client):
    settings.database.path = db_path
    settings.scheduler.monitor_interval = 0.0
    settings.scheduler.monitor_max_attempts = 2
    container = Container(settings, channels=[])
    container.factory.create = MagicMock(return_value=client)
    await container.start()
    yield container
    await container.stop()


class TestDcaPipeline:
    """Bind an exchange, create a strategy, let the scheduler fire it."""

    @pytest.mark.asyncio
    async def test_scheduled_purchase(self, container, client, now):
        user = User(email="bob@example.com")
        await container.repo.save_user(user)

        exchange = await container.exchanges.create(
            user.id, name="Bybit", exchange_type="bybit_testnet", api_key="k", api_secret="s", now=now
        )
        strategy = await container.strategies.create(
            user.id,
            exchange_id=exchange.id,
            name="Hourly BTC",
            pair="BTC/USDT",
            amount=50,
            frequency="hourly",
            start_date=now - timedelta(days=1),
            now=now,
        )

        claimed = await container.scheduler.scan_once(now)
        await container.scheduler.drain()
        assert claimed == [strategy.id]

        executions = await container.repo.list_executions(strategy.id)
        assert [e.status for e in executions] == [ExecutionStatus.COMPLETED]
        assert executions[0].type is ExecutionType.SCHEDULED
        job = await container.repo.get_job(strategy.id)
        assert job.next_run_at == now + timedelta(hours=1)

        # nothing is due until the next hour
        assert await container.scheduler.scan_once(now + timedelta(minutes=30)) == []

        stats = await container.strategies.stats(user.id, strategy.id)
        assert stats.total_executions == 1
        assert stats.total_invested == pytest.approx(50.0)

        notifications = await container.repo.list_notifications(user.id)
        assert "DCA executed: BTC/USDT" in [n.title for n in notifications]

    @pytest.mark.asyncio
    async def test_restart_reconciles_pending(self, container, client, now):
        user = User(email="carol@example.com")
        await container.repo.save_user(user)
        exchange = await container.exchanges.create(
            user.id, name="Binance", exchange_type="binance", api_key="k", api_secret="s"
        )
        strategy = await container.strategies.create(
            user.id,
            exchange_id=exchange.id,
            name="Slow fill",
            pair="BTC/USDT",
            amount=100,
            frequency="daily",
            now=now,
        )
        client.create_market_order.side_effect = None
        client.create_market_order.return_value = OrderResult("321", OrderStatus.PENDING)
        outcome = await container.engine.execute_strategy(strategy.id, now=now)
        # simulate a crash: the monitor dies with the process
        await container.monitor.shutdown()
        assert (await container.repo.get_execution(outcome.execution.id)).status is ExecutionStatus.PENDING

        results = await container.reconciler.sweep(now + timedelta(hours=1))
        assert results == {outcome.execution.id: "completed"}
        client.get_order_status.assert_awaited_with("321", "BTC/USDT")
