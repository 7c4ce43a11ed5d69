"""Tests for the notification dispatcher."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from dcabot.config.constants import (
    EventType,
    ExecutionStatus,
    NotificationChannel,
    NotificationType,
)
from dcabot.data.models import Execution
from dcabot.notify.dispatcher import NotificationDispatcher


def _channel(kind: NotificationChannel, wants: bool = True, fail: bool = False) -> MagicMock:
    channel = MagicMock()
    channel.kind = kind
    channel.wants = MagicMock(return_value=wants)
    channel.send = AsyncMock(side_effect=RuntimeError("down") if fail else None)
    channel.close = AsyncMock()
    return channel


class TestNotificationDispatcher:
    @pytest.mark.asyncio
    async def test_delivers_and_persists(self, repo, user):
        telegram = _channel(NotificationChannel.TELEGRAM)
        email = _channel(NotificationChannel.EMAIL, wants=False)
        broadcaster = MagicMock()
        broadcaster.broadcast = AsyncMock(return_value=1)
        dispatcher = NotificationDispatcher(repo, [telegram, email], broadcaster)

        notification = await dispatcher.notify(
            user.id, NotificationType.SYSTEM_ANNOUNCEMENT, "Hello", "Maintenance at noon"
        )

        telegram.send.assert_awaited_once()
        email.send.assert_not_awaited()
        assert notification.channels == ["telegram"]
        stored = await repo.list_notifications(user.id)
        assert stored[0].title == "Hello"
        assert stored[0].channels == ["telegram"]
        user_id, event, data = broadcaster.broadcast.await_args.args
        assert (user_id, event) == (user.id, EventType.NOTIFICATION)
        assert data["id"] == notification.id

    @pytest.mark.asyncio
    async def test_channel_failure_is_isolated(self, repo, user):
        broken = _channel(NotificationChannel.TELEGRAM, fail=True)
        working = _channel(NotificationChannel.LINE)
        dispatcher = NotificationDispatcher(repo, [broken, working])
        notification = await dispatcher.notify(
            user.id, NotificationType.PRICE_ALERT, "BTC", "Price moved"
        )
        working.send.assert_awaited_once()
        assert notification.channels == ["line"]

    @pytest.mark.asyncio
    async def test_unknown_user_still_stored(self, repo, user):
        channel = _channel(NotificationChannel.TELEGRAM)
        dispatcher = NotificationDispatcher(repo, [channel])
        notification = await dispatcher.notify(999, NotificationType.PRICE_ALERT, "t", "m")
        channel.send.assert_not_awaited()
        assert notification.channels == []

    @pytest.mark.asyncio
    async def test_execution_messages(self, repo, user, strategy, now):
        dispatcher = NotificationDispatcher(repo)
        execution = Execution(
            id=7,
            strategy_id=strategy.id,
            amount=100.0,
            timestamp=now,
            status=ExecutionStatus.COMPLETED,
            quantity=0.0025,
            price=40000.0,
        )
        success = await dispatcher.execution_success(strategy, execution)
        assert success.type is NotificationType.EXECUTION_SUCCESS
        assert "0.00250000 BTC" in success.message
        assert success.data["execution"]["id"] == 7

        execution.status = ExecutionStatus.FAILED
        execution.error_message = "Insufficient balance"
        failure = await dispatcher.execution_failed(strategy, execution)
        assert failure.type is NotificationType.EXECUTION_FAILED
        assert failure.message.endswith("Insufficient balance")

    @pytest.mark.asyncio
    async def test_close_closes_channels(self, repo):
        channel = _channel(NotificationChannel.LINE)
        await NotificationDispatcher(repo, [channel]).close()
        channel.close.assert_awaited_once()
