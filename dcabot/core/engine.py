"""Strategy execution pipeline: one firing from preconditions to a terminal record."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from dcabot.config.constants import (
    CLIENT_ORDER_PREFIX,
    AmountType,
    EventType,
    ExecutionStatus,
    ExecutionType,
    OrderSide,
    OrderStatus,
)
from dcabot.core.errors import ConditionsNotMet, OrderRejected, PreconditionFailed
from dcabot.data.models import Execution
from dcabot.data.repository import utcnow
from dcabot.strategy.conditions import build_snapshot, failed_conditions

if TYPE_CHECKING:
    from dcabot.core.monitor import OrderMonitor
    from dcabot.data.models import Exchange, Strategy
    from dcabot.data.repository import Repository
    from dcabot.exchange.base import ExchangeClient, OrderResult
    from dcabot.exchange.factory import ClientCache
    from dcabot.notify.broadcaster import RealtimeBroadcaster
    from dcabot.notify.dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)

COMPLETED = "completed"
PENDING = "pending"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass
class ExecutionOutcome:
    """Result of one ``execute_strategy`` call."""

    status: str
    execution: Execution | None = None
    order_id: str = ""
    quantity: float = 0.0
    price: float = 0.0
    reason: str = ""

    @property
    def succeeded(self) -> bool:
        """True for anything that is not a failure (skips included)."""
        return self.status != FAILED

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status}
        if self.execution is not None:
            data["executionId"] = self.execution.id
        if self.status == COMPLETED:
            data.update(orderId=self.order_id, quantity=self.quantity, price=self.price)
        elif self.status == PENDING:
            data["orderId"] = self.order_id
        elif self.status == FAILED:
            data["error"] = self.reason
        else:
            data["reason"] = self.reason
        return data


def client_order_id(strategy_id: int, at: datetime) -> str:
    return f"{CLIENT_ORDER_PREFIX}-{strategy_id}-{int(at.timestamp() * 1000)}"


class ExecutionEngine:
    """Runs strategy firings.

    Precondition failures raise ``PreconditionFailed`` before any record is
    written; everything after the pending record is created ends in a
    terminal record (or a monitored pending one) and is never raised.

    Parameters
    ----------
    repository:
        Persistence for strategies, exchanges and executions.
    clients:
        Cache of live exchange clients (decrypts through the vault on miss).
    monitor:
        Background poller for orders that did not fill immediately.
    broadcaster, dispatcher:
        Realtime and notification side effects.
    """

    def __init__(
        self,
        repository: "Repository",
        clients: "ClientCache",
        monitor: "OrderMonitor",
        broadcaster: "RealtimeBroadcaster",
        dispatcher: "NotificationDispatcher",
    ) -> None:
        self._repo = repository
        self._clients = clients
        self._monitor = monitor
        self._broadcaster = broadcaster
        self._dispatcher = dispatcher
        self._in_flight: set[int] = set()

    @property
    def monitor(self) -> "OrderMonitor":
        return self._monitor

    def is_executing(self, strategy_id: int) -> bool:
        return strategy_id in self._in_flight

    async def execute_strategy(
        self,
        strategy_id: int,
        execution_type: ExecutionType = ExecutionType.MANUAL,
        *,
        now: datetime | None = None,
        user_id: int | None = None,
        signal: dict[str, Any] | None = None,
    ) -> ExecutionOutcome:
        """Fire one strategy.

        Raises
        ------
        PreconditionFailed
            Strategy or exchange missing/inactive, strategy ended, or already
            executing in this process.
        MarketDataUnavailable
            Conditional firing could not read the market (no record written).
        """
        if strategy_id in self._in_flight:
            raise PreconditionFailed(f"Strategy {strategy_id} is already executing")
        self._in_flight.add(strategy_id)
        try:
            return await self._execute(
                strategy_id, ExecutionType(execution_type), now or utcnow(), user_id, signal
            )
        finally:
            self._in_flight.discard(strategy_id)

    async def _execute(
        self,
        strategy_id: int,
        execution_type: ExecutionType,
        now: datetime,
        user_id: int | None,
        signal: dict[str, Any] | None,
    ) -> ExecutionOutcome:
        strategy, exchange = await self._load(strategy_id, user_id, now)

        if execution_type is ExecutionType.CONDITIONAL:
            if signal:
                logger.info("Strategy %s signalled externally: %s", strategy_id, signal)
            try:
                await self._check_conditions(strategy, exchange)
            except ConditionsNotMet as e:
                logger.info("Strategy %s skipped: %s", strategy_id, e)
                return ExecutionOutcome(status=SKIPPED, reason=str(e))

        # a percentage is not a quote amount; it is recorded once resolved
        fixed = AmountType(strategy.amount_type) is AmountType.FIXED
        execution = Execution(
            strategy_id=strategy.id,
            amount=strategy.amount if fixed else 0.0,
            timestamp=now,
            type=execution_type,
            client_order_id=client_order_id(strategy.id, now),
        )
        await self._repo.save_execution(execution)
        await self._emit(strategy.user_id, EventType.EXECUTION_UPDATE, execution.to_dict())
        logger.info(
            "Execution %s started: strategy=%s type=%s", execution.id, strategy.id, execution_type.value
        )

        try:
            client = await self._clients.get(exchange)
            ticker = await client.get_ticker(strategy.pair)
            logger.info("Reference price for %s: %.8f", strategy.pair, ticker.price)
            quote_amount = await self._resolve_amount(client, strategy)
            execution.amount = quote_amount
            result = await client.create_market_order(
                strategy.pair, OrderSide.BUY, quote_amount, execution.client_order_id
            )
        except Exception as e:
            logger.error("Execution %s failed: %s", execution.id, e)
            return await self._fail(strategy, execution, str(e) or type(e).__name__)

        if result.status is OrderStatus.FILLED:
            return await self._complete(strategy, execution, result)
        if result.status is OrderStatus.CANCELLED:
            return await self._fail(strategy, execution, "Order cancelled by venue")

        execution.exchange_order_id = result.order_id
        await self._repo.record_order_submitted(execution.id, result.order_id, execution.amount)
        self.watch(strategy, execution, exchange)
        logger.info("Execution %s pending on order %s", execution.id, result.order_id)
        return ExecutionOutcome(status=PENDING, execution=execution, order_id=result.order_id)

    async def _load(
        self, strategy_id: int, user_id: int | None, now: datetime
    ) -> tuple["Strategy", "Exchange"]:
        strategy = await self._repo.get_strategy(strategy_id, user_id)
        if strategy is None:
            raise PreconditionFailed(f"Strategy {strategy_id} not found")
        if not strategy.is_active:
            raise PreconditionFailed(f"Strategy {strategy_id} is not active")
        if strategy.has_ended(now):
            raise PreconditionFailed(f"Strategy {strategy_id} has ended")
        exchange = await self._repo.get_exchange(strategy.exchange_id)
        if exchange is None:
            raise PreconditionFailed(f"Exchange {strategy.exchange_id} not found")
        if not exchange.is_active:
            raise PreconditionFailed(f"Exchange {strategy.exchange_id} is not active")
        return strategy, exchange

    async def _check_conditions(self, strategy: "Strategy", exchange: "Exchange") -> None:
        conditions = strategy.active_conditions
        if not conditions:
            return
        client = await self._clients.get(exchange)
        snapshot = await build_snapshot(client, strategy.pair, conditions)
        failed = failed_conditions(conditions, snapshot)
        if failed:
            raise ConditionsNotMet(failed)

    @staticmethod
    async def _resolve_amount(client: "ExchangeClient", strategy: "Strategy") -> float:
        """Quote currency to spend: fixed amount, or a share of the free balance."""
        if AmountType(strategy.amount_type) is AmountType.FIXED:
            return strategy.amount
        free = await client.get_free_balance(strategy.quote_currency)
        amount = free * strategy.amount / 100
        if amount <= 0:
            raise OrderRejected(f"Insufficient {strategy.quote_currency} balance")
        return amount

    # -- Terminal transitions -------------------------------------------------

    def watch(self, strategy: "Strategy", execution: Execution, exchange: "Exchange") -> None:
        """Poll a submitted order in the background until it settles.

        Each poll takes the client from the cache, so a client closed on TTL
        expiry is never reused.
        """

        async def poll() -> "OrderResult":
            client = await self._clients.get(exchange)
            return await client.get_order_status(execution.exchange_order_id, strategy.pair)

        async def on_settled(result: "OrderResult | None") -> None:
            await self.settle(strategy, execution, result)

        self._monitor.watch(execution.id, poll, on_settled)

    async def settle(
        self,
        strategy: "Strategy",
        execution: Execution,
        result: "OrderResult | None",
        missing_reason: str = "monitoring timeout",
    ) -> ExecutionOutcome:
        """Move a pending execution to its terminal state from an order result.

        ``None`` (order never settled or not found) fails with *missing_reason*.
        """
        if result is None:
            return await self._fail(strategy, execution, missing_reason)
        if result.status is OrderStatus.FILLED:
            return await self._complete(strategy, execution, result)
        if result.status is OrderStatus.CANCELLED:
            return await self._fail(strategy, execution, "Order cancelled by venue")
        return ExecutionOutcome(status=PENDING, execution=execution, order_id=result.order_id)

    async def _complete(
        self, strategy: "Strategy", execution: Execution, result: "OrderResult"
    ) -> ExecutionOutcome:
        execution.status = ExecutionStatus.COMPLETED
        execution.quantity = result.filled_quantity
        execution.price = result.avg_fill_price
        execution.fee = result.fee
        execution.exchange_order_id = result.order_id
        if await self._repo.finalize_execution(execution):
            logger.info(
                "Execution %s completed: %.8f %s @ %.8f",
                execution.id,
                execution.quantity,
                strategy.base_currency,
                execution.price,
            )
            await self._publish(strategy, execution)
        return ExecutionOutcome(
            status=COMPLETED,
            execution=execution,
            order_id=result.order_id,
            quantity=result.filled_quantity,
            price=result.avg_fill_price,
        )

    async def _fail(self, strategy: "Strategy", execution: Execution, reason: str) -> ExecutionOutcome:
        execution.status = ExecutionStatus.FAILED
        execution.error_message = reason
        execution.quantity = 0.0
        execution.price = 0.0
        if await self._repo.finalize_execution(execution):
            await self._publish(strategy, execution)
        return ExecutionOutcome(
            status=FAILED,
            execution=execution,
            order_id=execution.exchange_order_id,
            reason=reason,
        )

    async def _publish(self, strategy: "Strategy", execution: Execution) -> None:
        """Broadcast and notify a terminal transition; failures here are only logged."""
        await self._emit(strategy.user_id, EventType.EXECUTION_UPDATE, execution.to_dict())
        await self._emit(
            strategy.user_id,
            EventType.STRATEGY_UPDATE,
            {
                "strategyId": strategy.id,
                "lastExecutionStatus": execution.status.value,
                "lastExecutionAt": execution.timestamp.isoformat(),
            },
        )
        try:
            if execution.status is ExecutionStatus.COMPLETED:
                await self._dispatcher.execution_success(strategy, execution)
            else:
                await self._dispatcher.execution_failed(strategy, execution)
        except Exception:
            logger.exception("Notification for execution %s failed", execution.id)

    async def _emit(self, user_id: int, event_type: EventType, data: dict[str, Any]) -> None:
        try:
            await self._broadcaster.broadcast(user_id, event_type, data)
        except Exception:
            logger.exception("Broadcast of %s to user %s failed", event_type.value, user_id)
