"""Background polling of orders that did not fill immediately."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable

if TYPE_CHECKING:
    from dcabot.exchange.base import OrderResult

logger = logging.getLogger(__name__)

PollFn = Callable[[], Awaitable["OrderResult"]]
SettleFn = Callable[["OrderResult | None"], Awaitable[None]]


class OrderMonitor:
    """One polling task per pending execution, keyed by execution id.

    Parameters
    ----------
    interval:
        Seconds between status polls.
    max_attempts:
        Polls before giving up; ``on_settled(None)`` is then called.
    """

    def __init__(
        self,
        interval: float = 5.0,
        max_attempts: int = 12,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._interval = interval
        self._max_attempts = max_attempts
        self._sleep = sleep
        self._tasks: dict[int, asyncio.Task] = {}  # type: ignore[type-arg]

    def is_watching(self, execution_id: int) -> bool:
        return execution_id in self._tasks

    @property
    def active(self) -> list[int]:
        return list(self._tasks)

    def watch(self, execution_id: int, poll: PollFn, on_settled: SettleFn) -> asyncio.Task:  # type: ignore[type-arg]
        """Start polling; a second call for the same execution returns the live task."""
        existing = self._tasks.get(execution_id)
        if existing is not None:
            return existing
        task = asyncio.create_task(
            self._run(execution_id, poll, on_settled), name=f"order-monitor-{execution_id}"
        )
        self._tasks[execution_id] = task
        return task

    async def _run(self, execution_id: int, poll: PollFn, on_settled: SettleFn) -> None:
        try:
            for attempt in range(1, self._max_attempts + 1):
                await self._sleep(self._interval)
                try:
                    result = await poll()
                except Exception:
                    logger.warning(
                        "Status poll %d/%d failed for execution %s",
                        attempt,
                        self._max_attempts,
                        execution_id,
                        exc_info=True,
                    )
                    continue
                if result.status.is_settled:
                    await on_settled(result)
                    return
                logger.debug("Execution %s still %s", execution_id, result.status.value)
            logger.warning("Gave up monitoring execution %s", execution_id)
            await on_settled(None)
        except asyncio.CancelledError:
            logger.info("Monitoring of execution %s cancelled", execution_id)
            raise
        except Exception:
            logger.exception("Monitor for execution %s crashed", execution_id)
        finally:
            self._tasks.pop(execution_id, None)

    async def wait(self, execution_id: int) -> None:
        """Await a monitor task to completion (used by tests and shutdown)."""
        task = self._tasks.get(execution_id)
        if task is not None:
            await task

    async def shutdown(self) -> None:
        """Cancel all monitors; their executions stay pending for reconciliation."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
