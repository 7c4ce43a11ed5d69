"""Notification dispatcher: persists every notification, delivers over opted-in channels."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from dcabot.config.constants import EventType, NotificationType
from dcabot.data.models import Notification

if TYPE_CHECKING:
    from dcabot.data.models import Execution, Strategy
    from dcabot.data.repository import Repository
    from dcabot.notify.broadcaster import RealtimeBroadcaster
    from dcabot.notify.channels import Channel

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Fans a notification out to the configured channels the user enabled.

    Parameters
    ----------
    repository:
        Used to load the user and persist the notification row.
    channels:
        Configured channels (only those with credentials are passed in).
    broadcaster:
        Optional; receives a ``notification`` realtime event.
    """

    def __init__(
        self,
        repository: "Repository",
        channels: list["Channel"] | None = None,
        broadcaster: "RealtimeBroadcaster | None" = None,
    ) -> None:
        self._repo = repository
        self._channels = list(channels or [])
        self._broadcaster = broadcaster

    @property
    def channels(self) -> list["Channel"]:
        return list(self._channels)

    async def notify(
        self,
        user_id: int,
        notification_type: NotificationType,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> Notification:
        """Deliver and persist one notification.

        Channel failures are logged and skipped; the returned record lists
        only the channels that actually delivered.
        """
        delivered: list[str] = []
        user = await self._repo.get_user(user_id)
        if user is None:
            logger.warning("Notification for unknown user %s stored without delivery", user_id)
        else:
            for channel in self._channels:
                if not channel.wants(user):
                    continue
                try:
                    await channel.send(user, title, message)
                    delivered.append(channel.kind.value)
                except Exception:
                    logger.exception("%s delivery failed for user %s", channel.kind.value, user_id)

        notification = Notification(
            user_id=user_id,
            type=notification_type,
            title=title,
            message=message,
            data=data or {},
            channels=delivered,
        )
        await self._repo.save_notification(notification)

        if self._broadcaster is not None:
            await self._broadcaster.broadcast(
                user_id,
                EventType.NOTIFICATION,
                {
                    "id": notification.id,
                    "type": notification_type.value,
                    "title": title,
                    "message": message,
                },
            )
        return notification

    async def execution_success(self, strategy: "Strategy", execution: "Execution") -> Notification:
        message = (
            f"Bought {execution.quantity:.8f} {strategy.base_currency} "
            f"for {execution.amount:.2f} {strategy.quote_currency} "
            f"at {execution.price:.2f} (strategy {strategy.name!r})."
        )
        return await self.notify(
            strategy.user_id,
            NotificationType.EXECUTION_SUCCESS,
            f"DCA executed: {strategy.pair}",
            message,
            {"strategyId": strategy.id, "execution": execution.to_dict()},
        )

    async def execution_failed(self, strategy: "Strategy", execution: "Execution") -> Notification:
        message = (
            f"Purchase of {execution.amount:.2f} {strategy.quote_currency} of "
            f"{strategy.base_currency} failed: {execution.error_message}"
        )
        return await self.notify(
            strategy.user_id,
            NotificationType.EXECUTION_FAILED,
            f"DCA failed: {strategy.pair}",
            message,
            {"strategyId": strategy.id, "execution": execution.to_dict()},
        )

    async def close(self) -> None:
        for channel in self._channels:
            await channel.close()
