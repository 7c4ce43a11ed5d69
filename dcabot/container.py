"""Wires the service components together from settings."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from dcabot.core.engine import ExecutionEngine
from dcabot.core.monitor import OrderMonitor
from dcabot.core.reconciler import Reconciler
from dcabot.core.scheduler import Scheduler
from dcabot.core.services import ExchangeService, StrategyService
from dcabot.core.vault import CredentialVault
from dcabot.data.database import Database
from dcabot.data.migrations import run_migrations
from dcabot.data.repository import Repository
from dcabot.exchange.factory import ClientCache, ExchangeClientFactory
from dcabot.notify.broadcaster import RealtimeBroadcaster
from dcabot.notify.channels import Channel, build_channels
from dcabot.notify.dispatcher import NotificationDispatcher

if TYPE_CHECKING:
    from dcabot.config.settings import Settings

logger = logging.getLogger(__name__)


class Container:
    """Owns every long-lived component.

    ``start()`` opens the database and builds the graph; ``stop()`` tears it
    down in reverse. Notification channels can be injected (tests); otherwise
    they are built from the notification settings.
    """

    def __init__(self, settings: "Settings", channels: list[Channel] | None = None) -> None:
        self.settings = settings
        self._channels = channels
        self.db = Database(settings.database.path)
        self.repo = Repository(self.db)
        self.vault = CredentialVault(settings.security.encryption_secret)
        self.factory = ExchangeClientFactory(self.vault, settings.exchange)
        self.clients = ClientCache(
            self.factory,
            max_size=settings.exchange.client_cache_size,
            ttl=settings.exchange.client_cache_ttl,
        )
        self.broadcaster = RealtimeBroadcaster()
        self.dispatcher: NotificationDispatcher | None = None
        self.monitor = OrderMonitor(
            interval=settings.scheduler.monitor_interval,
            max_attempts=settings.scheduler.monitor_max_attempts,
        )
        self.engine: ExecutionEngine | None = None
        self.reconciler: Reconciler | None = None
        self.scheduler: Scheduler | None = None
        self.strategies: StrategyService | None = None
        self.exchanges: ExchangeService | None = None

    async def start(self) -> None:
        await run_migrations(self.settings.database.path)
        await self.db.connect()

        channels = self._channels if self._channels is not None else build_channels(self.settings.notifications)
        self.dispatcher = NotificationDispatcher(self.repo, channels, self.broadcaster)
        self.engine = ExecutionEngine(
            self.repo, self.clients, self.monitor, self.broadcaster, self.dispatcher
        )
        self.reconciler = Reconciler(
            self.repo,
            self.clients,
            self.engine,
            reconcile_after=self.settings.scheduler.reconcile_after,
        )
        self.scheduler = Scheduler(
            self.repo,
            self.engine,
            self.reconciler,
            poll_interval=self.settings.scheduler.poll_interval,
            lease_ttl=self.settings.scheduler.lease_ttl,
        )
        self.strategies = StrategyService(self.repo, self.broadcaster, self.dispatcher)
        self.exchanges = ExchangeService(self.repo, self.vault, self.factory, self.clients)
        logger.info("All components initialized")

    async def stop(self) -> None:
        if self.scheduler is not None and self.scheduler.running:
            await self.scheduler.stop()
        await self.monitor.shutdown()
        await self.clients.close_all()
        if self.dispatcher is not None:
            await self.dispatcher.close()
        await self.db.disconnect()
        logger.info("All components shut down")

    async def __aenter__(self) -> "Container":
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()
