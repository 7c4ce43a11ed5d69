"""Owner-scoped lifecycle operations for strategies and exchange bindings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from dcabot.config.constants import (
    AmountType,
    ConditionOperator,
    ConditionType,
    EventType,
    ExchangeType,
    Frequency,
    NotificationType,
)
from dcabot.core.errors import DecryptionFailed, NotFound, PreconditionFailed, UnsupportedExchange
from dcabot.core.schedule import first_run, next_run
from dcabot.data.models import Exchange, ScheduledJob, Strategy, StrategyCondition, split_pair
from dcabot.data.repository import utcnow

if TYPE_CHECKING:
    from dcabot.core.vault import CredentialVault
    from dcabot.data.repository import Repository
    from dcabot.exchange.factory import ClientCache, ExchangeClientFactory
    from dcabot.notify.broadcaster import RealtimeBroadcaster
    from dcabot.notify.dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)

# Fields an owner may change through ``StrategyService.update``
_EDITABLE = {
    "name",
    "description",
    "pair",
    "amount",
    "amount_type",
    "frequency",
    "start_date",
    "end_date",
}


@dataclass
class StrategyStats:
    total_executions: int
    successful_executions: int
    failed_executions: int
    success_rate: float
    total_invested: float
    total_quantity: float
    average_price: float
    last_execution: dict[str, Any] | None
    next_execution: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalExecutions": self.total_executions,
            "successfulExecutions": self.successful_executions,
            "failedExecutions": self.failed_executions,
            "successRate": self.success_rate,
            "totalInvested": self.total_invested,
            "totalQuantity": self.total_quantity,
            "averagePrice": self.average_price,
            "lastExecution": self.last_execution,
            "nextExecution": self.next_execution.isoformat() if self.next_execution else None,
        }


def parse_conditions(raw: list[dict[str, Any]] | None) -> list[StrategyCondition]:
    """Build conditions from ``{type, operator, value, is_active?}`` mappings."""
    return [
        StrategyCondition(
            type=ConditionType(item["type"]),
            operator=ConditionOperator(item["operator"]),
            value=float(item["value"]),
            is_active=bool(item.get("is_active", True)),
        )
        for item in raw or []
    ]


class StrategyService:
    """Create, edit, pause and inspect a user's strategies.

    Activation keeps the ScheduledJob in step: activating upserts it,
    pausing deactivates it.
    """

    def __init__(
        self,
        repository: "Repository",
        broadcaster: "RealtimeBroadcaster | None" = None,
        dispatcher: "NotificationDispatcher | None" = None,
    ) -> None:
        self._repo = repository
        self._broadcaster = broadcaster
        self._dispatcher = dispatcher

    async def create(
        self,
        user_id: int,
        *,
        exchange_id: int,
        name: str,
        pair: str,
        amount: float,
        frequency: Frequency | str,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        amount_type: AmountType | str = AmountType.FIXED,
        description: str = "",
        conditions: list[dict[str, Any]] | None = None,
        now: datetime | None = None,
    ) -> Strategy:
        """Validate and store a strategy; it starts active unless it starts in the future."""
        now = now or utcnow()
        exchange = await self._repo.get_exchange(exchange_id, user_id)
        if exchange is None:
            raise NotFound(f"Exchange {exchange_id} not found")
        if not exchange.is_active:
            raise PreconditionFailed(f"Exchange {exchange_id} is not active")

        start = start_date or now
        strategy = Strategy(
            user_id=user_id,
            exchange_id=exchange_id,
            name=name,
            pair=pair,
            amount=float(amount),
            frequency=Frequency(frequency),
            start_date=start,
            end_date=end_date,
            amount_type=AmountType(amount_type),
            description=description,
            conditions=parse_conditions(conditions),
            is_active=start <= now,
        )
        strategy.validate()
        await self._repo.save_strategy(strategy)
        if strategy.is_active:
            await self._schedule(strategy, now)
        logger.info("Strategy %s created for user %s (%s)", strategy.id, user_id, strategy.pair)
        await self._announce(strategy, NotificationType.STRATEGY_CREATED, "Strategy created")
        return strategy

    async def get(self, user_id: int, strategy_id: int) -> Strategy:
        strategy = await self._repo.get_strategy(strategy_id, user_id)
        if strategy is None:
            raise NotFound(f"Strategy {strategy_id} not found")
        return strategy

    async def list(self, user_id: int) -> list[Strategy]:
        return await self._repo.list_strategies(user_id)

    async def update(
        self,
        user_id: int,
        strategy_id: int,
        changes: dict[str, Any],
        now: datetime | None = None,
    ) -> Strategy:
        """Apply *changes* (editable fields and ``conditions``) and revalidate."""
        now = now or utcnow()
        strategy = await self.get(user_id, strategy_id)
        unknown = set(changes) - _EDITABLE - {"conditions"}
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        for field_name in _EDITABLE & set(changes):
            setattr(strategy, field_name, changes[field_name])
        if "pair" in changes:
            strategy.base_currency, strategy.quote_currency = split_pair(strategy.pair)
        strategy.frequency = Frequency(strategy.frequency)
        strategy.amount_type = AmountType(strategy.amount_type)
        if "conditions" in changes:
            strategy.conditions = parse_conditions(changes["conditions"])
        strategy.validate()

        await self._repo.update_strategy(strategy)
        if strategy.is_active and {"frequency", "start_date"} & set(changes):
            await self._schedule(strategy, now)
        await self._announce(strategy, NotificationType.STRATEGY_UPDATED, "Strategy updated")
        return strategy

    async def delete(self, user_id: int, strategy_id: int) -> None:
        strategy = await self.get(user_id, strategy_id)
        await self._repo.delete_strategy(strategy_id)
        logger.info("Strategy %s deleted by user %s", strategy_id, user_id)
        await self._announce(strategy, NotificationType.STRATEGY_DELETED, "Strategy deleted")

    async def set_active(
        self, user_id: int, strategy_id: int, active: bool, now: datetime | None = None
    ) -> Strategy:
        now = now or utcnow()
        strategy = await self.get(user_id, strategy_id)
        if active:
            if strategy.start_date > now:
                raise PreconditionFailed("Strategy cannot be activated before its start date")
            if strategy.has_ended(now):
                raise PreconditionFailed("Strategy has already ended")
            exchange = await self._repo.get_exchange(strategy.exchange_id, user_id)
            if exchange is None or not exchange.is_active:
                raise PreconditionFailed("Strategy exchange is missing or inactive")
            await self._repo.set_strategy_active(strategy_id, True)
            strategy.is_active = True
            await self._schedule(strategy, now)
        else:
            await self._repo.set_strategy_active(strategy_id, False)
            await self._repo.deactivate_job(strategy_id)
            strategy.is_active = False
        logger.info("Strategy %s %s", strategy_id, "activated" if active else "paused")
        await self._emit(strategy)
        return strategy

    async def toggle(self, user_id: int, strategy_id: int, now: datetime | None = None) -> Strategy:
        strategy = await self.get(user_id, strategy_id)
        return await self.set_active(user_id, strategy_id, not strategy.is_active, now)

    async def stats(self, user_id: int, strategy_id: int) -> StrategyStats:
        await self.get(user_id, strategy_id)
        totals = await self._repo.execution_totals(strategy_id)
        recent = await self._repo.list_executions(strategy_id, limit=1)
        job = await self._repo.get_job(strategy_id)
        total = totals["total"]
        return StrategyStats(
            total_executions=total,
            successful_executions=totals["completed"],
            failed_executions=totals["failed"],
            success_rate=totals["completed"] / total * 100 if total else 0.0,
            total_invested=totals["invested"],
            total_quantity=totals["quantity"],
            average_price=totals["invested"] / totals["quantity"] if totals["quantity"] else 0.0,
            last_execution=recent[0].to_dict() if recent else None,
            next_execution=job.next_run_at if job is not None and job.is_active else None,
        )

    async def _schedule(self, strategy: Strategy, now: datetime) -> None:
        """Upsert the strategy's job; next run follows the last run, else start/now."""
        job = await self._repo.get_job(strategy.id)
        if job is not None and job.last_run_at is not None:
            next_at = max(next_run(strategy.frequency, job.last_run_at), strategy.start_date)
        else:
            next_at = first_run(strategy.start_date, now)
        await self._repo.upsert_job(ScheduledJob(strategy_id=strategy.id, next_run_at=next_at))
        logger.debug("Strategy %s next run at %s", strategy.id, next_at.isoformat())

    async def _emit(self, strategy: Strategy) -> None:
        if self._broadcaster is None:
            return
        await self._broadcaster.broadcast(
            strategy.user_id,
            EventType.STRATEGY_UPDATE,
            {"strategyId": strategy.id, "isActive": strategy.is_active},
        )

    async def _announce(self, strategy: Strategy, kind: NotificationType, title: str) -> None:
        await self._emit(strategy)
        if self._dispatcher is None:
            return
        try:
            await self._dispatcher.notify(
                strategy.user_id,
                kind,
                title,
                f"{strategy.name} ({strategy.pair}, {strategy.amount:g} {strategy.amount_type.value}, "
                f"{strategy.frequency.value})",
                {"strategyId": strategy.id},
            )
        except Exception:
            logger.exception("Notification for strategy %s failed", strategy.id)


class ExchangeService:
    """Bind, list, health-check and remove a user's exchange credentials."""

    def __init__(
        self,
        repository: "Repository",
        vault: "CredentialVault",
        factory: "ExchangeClientFactory",
        clients: "ClientCache",
    ) -> None:
        self._repo = repository
        self._vault = vault
        self._factory = factory
        self._clients = clients

    async def create(
        self,
        user_id: int,
        *,
        name: str,
        exchange_type: ExchangeType | str,
        api_key: str,
        api_secret: str,
        passphrase: str = "",
        now: datetime | None = None,
    ) -> Exchange:
        """Test the credentials against the venue, then store them encrypted."""
        try:
            exchange_type = ExchangeType(exchange_type)
        except ValueError as e:
            raise UnsupportedExchange(f"Unsupported exchange type: {exchange_type}") from e

        exchange = Exchange(
            user_id=user_id,
            name=name,
            type=exchange_type,
            api_key=self._vault.encrypt(api_key),
            api_secret=self._vault.encrypt(api_secret),
            passphrase=self._vault.encrypt(passphrase) if passphrase else "",
        )
        client = self._factory.create(exchange)
        try:
            valid = await client.validate_credentials()
        finally:
            await client.close()
        if not valid:
            raise PreconditionFailed(f"Could not connect to {exchange_type.value} with these credentials")

        exchange.last_sync_at = now or utcnow()
        await self._repo.save_exchange(exchange)
        logger.info(
            "Exchange %s (%s, key %s) bound for user %s",
            exchange.id,
            exchange_type.value,
            self._vault.mask(api_key),
            user_id,
        )
        return exchange

    async def get(self, user_id: int, exchange_id: int) -> Exchange:
        exchange = await self._repo.get_exchange(exchange_id, user_id)
        if exchange is None:
            raise NotFound(f"Exchange {exchange_id} not found")
        return exchange

    async def list(self, user_id: int) -> list[Exchange]:
        return await self._repo.list_exchanges(user_id)

    def masked_key(self, exchange: Exchange) -> str:
        try:
            return self._vault.mask(self._vault.decrypt(exchange.api_key))
        except DecryptionFailed:
            return "<unreadable>"

    async def delete(self, user_id: int, exchange_id: int) -> None:
        await self.get(user_id, exchange_id)
        active = await self._repo.count_active_strategies(exchange_id)
        if active:
            raise PreconditionFailed(
                f"Exchange {exchange_id} is used by {active} active strateg{'y' if active == 1 else 'ies'}"
            )
        await self._clients.invalidate(exchange_id)
        await self._repo.delete_exchange(exchange_id)
        logger.info("Exchange %s deleted by user %s", exchange_id, user_id)

    async def health_check(self, user_id: int, exchange_id: int, now: datetime | None = None) -> bool:
        """Validate stored credentials; stamps ``last_sync_at`` on success."""
        exchange = await self.get(user_id, exchange_id)
        try:
            client = await self._clients.get(exchange)
        except DecryptionFailed:
            logger.warning("Exchange %s credentials cannot be decrypted", exchange_id)
            return False
        healthy = await client.validate_credentials()
        if healthy:
            await self._repo.touch_exchange_sync(exchange_id, now or utcnow())
        return healthy
