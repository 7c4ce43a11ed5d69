"""Scheduler loop — fires due strategies on a fixed poll interval."""

from __future__ import annotations

import asyncio
import logging
import os
import socket
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from dcabot.config.constants import ExecutionType
from dcabot.core.errors import PreconditionFailed
from dcabot.core.schedule import next_run
from dcabot.data.repository import utcnow

if TYPE_CHECKING:
    from dcabot.core.engine import ExecutionEngine
    from dcabot.core.reconciler import Reconciler
    from dcabot.data.repository import Repository

logger = logging.getLogger(__name__)


def default_owner() -> str:
    """Lease owner tag for this process."""
    return f"{socket.gethostname()}:{os.getpid()}"


class Scheduler:
    """Polls for due jobs and fires each as its own task.

    Per scan::

        get_due_jobs → acquire_lease → engine.execute_strategy (task)
        → record_job_run → release_lease

    Parameters
    ----------
    poll_interval:
        Seconds to sleep between scans.
    lease_ttl:
        Seconds a claimed job stays locked if its holder never releases it.
    """

    def __init__(
        self,
        repository: "Repository",
        engine: "ExecutionEngine",
        reconciler: "Reconciler | None" = None,
        poll_interval: float = 60.0,
        lease_ttl: float = 600.0,
        owner: str | None = None,
    ) -> None:
        self._repo = repository
        self._engine = engine
        self._reconciler = reconciler
        self._poll_interval = poll_interval
        self._lease_ttl = timedelta(seconds=lease_ttl)
        self._owner = owner or default_owner()
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]
        self._jobs: set[asyncio.Task] = set()  # type: ignore[type-arg]

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Run a reconciliation sweep, then start the polling loop."""
        logger.info("Starting scheduler (owner=%s, interval=%ss)", self._owner, self._poll_interval)
        await self._reconcile()
        self._running = True
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        """Stop polling and wait for in-flight jobs to finish."""
        logger.info("Stopping scheduler...")
        self._running = False

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        await self.drain()
        logger.info("Scheduler stopped")

    async def drain(self) -> None:
        """Wait for every spawned job task."""
        if self._jobs:
            await asyncio.gather(*list(self._jobs), return_exceptions=True)

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.scan_once()
            except Exception:
                logger.exception("Scheduler scan failed")
            await self._reconcile()
            await asyncio.sleep(self._poll_interval)

    async def _reconcile(self) -> None:
        if self._reconciler is None:
            return
        try:
            await self._reconciler.sweep()
        except Exception:
            logger.exception("Reconciliation sweep failed")

    async def scan_once(self, now: datetime | None = None) -> list[int]:
        """Claim every due job and spawn its firing. Returns claimed strategy ids.

        The scan does not wait for the firings.
        """
        now = now or utcnow()
        due = await self._repo.get_due_jobs(now)
        claimed: list[int] = []
        for job in due:
            if not await self._repo.acquire_lease(
                job.strategy_id, self._owner, now, now + self._lease_ttl
            ):
                logger.debug("Job %s is leased elsewhere, skipping", job.strategy_id)
                continue
            claimed.append(job.strategy_id)
            task = asyncio.create_task(
                self._run_job(job.strategy_id, now), name=f"dca-job-{job.strategy_id}"
            )
            self._jobs.add(task)
            task.add_done_callback(self._jobs.discard)
        if due:
            logger.info("Scan at %s: %d due, %d claimed", now.isoformat(), len(due), len(claimed))
        return claimed

    async def _run_job(self, strategy_id: int, fired_at: datetime) -> None:
        try:
            strategy = await self._repo.get_strategy(strategy_id)
            if strategy is None or not strategy.is_active or strategy.has_ended(fired_at):
                logger.info("Strategy %s no longer schedulable, deactivating job", strategy_id)
                await self._repo.deactivate_job(strategy_id)
                if strategy is not None and strategy.is_active:
                    await self._repo.set_strategy_active(strategy_id, False)
                return

            succeeded = False
            try:
                outcome = await self._engine.execute_strategy(
                    strategy_id, ExecutionType.SCHEDULED, now=fired_at
                )
                succeeded = outcome.succeeded
                logger.info("Scheduled firing of strategy %s: %s", strategy_id, outcome.status)
            except PreconditionFailed as e:
                logger.warning("Scheduled firing of strategy %s refused: %s", strategy_id, e)
            except Exception:
                logger.exception("Scheduled firing of strategy %s crashed", strategy_id)

            await self._repo.record_job_run(
                strategy_id, fired_at, next_run(strategy.frequency, fired_at), succeeded
            )
        except Exception:
            logger.exception("Job bookkeeping for strategy %s failed", strategy_id)
        finally:
            try:
                await self._repo.release_lease(strategy_id, self._owner)
            except Exception:
                logger.exception("Failed to release lease for strategy %s", strategy_id)
