"""Resolves executions left pending (process restart, cancelled monitor)."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from dcabot.data.repository import utcnow

if TYPE_CHECKING:
    from dcabot.core.engine import ExecutionEngine, ExecutionOutcome
    from dcabot.data.models import Execution
    from dcabot.data.repository import Repository
    from dcabot.exchange.factory import ClientCache

logger = logging.getLogger(__name__)


class Reconciler:
    """Re-checks stale pending executions against their venue.

    Parameters
    ----------
    reconcile_after:
        Seconds a pending execution may age before the sweep picks it up.
    """

    def __init__(
        self,
        repository: "Repository",
        clients: "ClientCache",
        engine: "ExecutionEngine",
        reconcile_after: float = 900.0,
    ) -> None:
        self._repo = repository
        self._clients = clients
        self._engine = engine
        self._reconcile_after = timedelta(seconds=reconcile_after)

    async def sweep(self, now: datetime | None = None) -> dict[int, str]:
        """Reconcile every stale pending execution with no live monitor.

        Returns ``{execution_id: resulting status}``.
        """
        now = now or utcnow()
        stale = await self._repo.get_stale_pending_executions(now - self._reconcile_after)
        results: dict[int, str] = {}
        for execution in stale:
            if self._engine.monitor.is_watching(execution.id):
                continue
            try:
                outcome = await self._reconcile(execution)
            except Exception:
                logger.exception("Reconciliation of execution %s failed", execution.id)
                continue
            results[execution.id] = outcome.status
        if results:
            logger.info("Reconciled %d pending executions: %s", len(results), results)
        return results

    async def _reconcile(self, execution: "Execution") -> "ExecutionOutcome":
        strategy = await self._repo.get_strategy(execution.strategy_id)
        # The cascade removes executions with their strategy, so this is always found
        exchange = await self._repo.get_exchange(strategy.exchange_id)
        if exchange is None:
            return await self._engine.settle(strategy, execution, None, "exchange no longer exists")

        try:
            client = await self._clients.get(exchange)
            if execution.exchange_order_id:
                result = await client.get_order_status(execution.exchange_order_id, strategy.pair)
            elif execution.client_order_id:
                result = await client.find_order(execution.client_order_id, strategy.pair)
            else:
                result = None
        except Exception as e:
            logger.warning("Execution %s could not be checked: %s", execution.id, e)
            return await self._engine.settle(strategy, execution, None, f"reconciliation failed: {e}")

        if result is not None and not result.status.is_settled:
            if not execution.exchange_order_id:
                execution.exchange_order_id = result.order_id
                await self._repo.record_order_submitted(execution.id, result.order_id, execution.amount)
            self._engine.watch(strategy, execution, exchange)
        return await self._engine.settle(strategy, execution, result, "order not found on venue")
