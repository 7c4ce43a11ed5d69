"""Tests for stale pending execution reconciliation."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import filled

from dcabot.config.constants import ExecutionStatus, OrderStatus
from dcabot.core.engine import COMPLETED, FAILED, PENDING, ExecutionEngine
from dcabot.core.errors import OrderRejected
from dcabot.core.monitor import OrderMonitor
from dcabot.core.reconciler import Reconciler
from dcabot.data.models import Execution
from dcabot.exchange.base import OrderResult


@pytest.fixture
def engine(repo, clients) -> ExecutionEngine:
    broadcaster = MagicMock()
    broadcaster.broadcast = AsyncMock(return_value=0)
    dispatcher = MagicMock()
    dispatcher.execution_success = AsyncMock()
    dispatcher.execution_failed = AsyncMock()
    monitor = OrderMonitor(interval=0.0, max_attempts=2, sleep=AsyncMock())
    return ExecutionEngine(repo, clients, monitor, broadcaster, dispatcher)


@pytest.fixture
def reconciler(repo, clients, engine) -> Reconciler:
    return Reconciler(repo, clients, engine, reconcile_after=900)


async def _stale(repo, strategy, now, **kwargs) -> Execution:
    execution = Execution(
        strategy_id=strategy.id,
        amount=100.0,
        timestamp=now - timedelta(hours=1),
        client_order_id="dca-1-1",
        **kwargs,
    )
    await repo.save_execution(execution)
    return execution


class TestReconciler:
    @pytest.mark.asyncio
    async def test_filled_order_completes(self, reconciler, repo, strategy, client, now):
        execution = await _stale(repo, strategy, now, exchange_order_id="1001")
        results = await reconciler.sweep(now)

        assert results == {execution.id: COMPLETED}
        client.get_order_status.assert_awaited_once_with("1001", "BTC/USDT")
        stored = await repo.get_execution(execution.id)
        assert stored.status is ExecutionStatus.COMPLETED
        assert stored.quantity == pytest.approx(0.0025)

    @pytest.mark.asyncio
    async def test_lookup_by_client_order_id(self, reconciler, repo, strategy, client, now):
        client.find_order.return_value = filled(order_id="555")
        execution = await _stale(repo, strategy, now)
        results = await reconciler.sweep(now)
        client.find_order.assert_awaited_once_with("dca-1-1", "BTC/USDT")
        assert results == {execution.id: COMPLETED}
        assert (await repo.get_execution(execution.id)).exchange_order_id == "555"

    @pytest.mark.asyncio
    async def test_unknown_order_fails(self, reconciler, repo, strategy, now):
        execution = await _stale(repo, strategy, now)
        assert await reconciler.sweep(now) == {execution.id: FAILED}
        stored = await repo.get_execution(execution.id)
        assert stored.status is ExecutionStatus.FAILED
        assert stored.error_message == "order not found on venue"

    @pytest.mark.asyncio
    async def test_venue_error_fails(self, reconciler, repo, strategy, client, now):
        client.get_order_status.side_effect = OrderRejected("Invalid API-key")
        execution = await _stale(repo, strategy, now, exchange_order_id="1001")
        await reconciler.sweep(now)
        stored = await repo.get_execution(execution.id)
        assert stored.status is ExecutionStatus.FAILED
        assert stored.error_message.startswith("reconciliation failed")

    @pytest.mark.asyncio
    async def test_open_order_resumes_monitoring(self, reconciler, engine, repo, strategy, client, now):
        client.find_order.return_value = OrderResult("900", OrderStatus.PARTIALLY_FILLED)
        client.get_order_status.return_value = filled(order_id="900")
        execution = await _stale(repo, strategy, now)

        assert await reconciler.sweep(now) == {execution.id: PENDING}
        assert (await repo.get_execution(execution.id)).exchange_order_id == "900"
        await engine.monitor.wait(execution.id)
        assert (await repo.get_execution(execution.id)).status is ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_fresh_pending_left_alone(self, reconciler, repo, strategy, client, now):
        execution = Execution(strategy_id=strategy.id, amount=100.0, timestamp=now - timedelta(minutes=5))
        await repo.save_execution(execution)
        assert await reconciler.sweep(now) == {}
        client.get_order_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_monitored_execution_skipped(self, reconciler, engine, repo, strategy, client, now):
        execution = await _stale(repo, strategy, now, exchange_order_id="1001")
        engine.monitor._tasks[execution.id] = MagicMock()
        assert await reconciler.sweep(now) == {}
        client.get_order_status.assert_not_awaited()
