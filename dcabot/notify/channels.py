"""Outbound notification channels: Telegram, LINE and SMTP e-mail."""

from __future__ import annotations

import abc
import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import TYPE_CHECKING

import aiohttp

from dcabot.config.constants import NotificationChannel

if TYPE_CHECKING:
    from dcabot.config.settings import NotificationSettings
    from dcabot.data.models import User

logger = logging.getLogger(__name__)


class Channel(abc.ABC):
    """One delivery mechanism. ``send`` raises on delivery failure."""

    kind: NotificationChannel

    @abc.abstractmethod
    def wants(self, user: "User") -> bool:
        """Whether *user* enabled this channel and gave a destination."""

    @abc.abstractmethod
    async def send(self, user: "User", title: str, message: str) -> None: ...

    async def close(self) -> None:
        pass


class _HttpChannel(Channel):
    def __init__(self, timeout: float = 10.0) -> None:
        self._timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout)
            )
        return self._session

    async def _post(self, url: str, payload: dict, headers: dict | None = None) -> None:
        async with self._get_session().post(url, json=payload, headers=headers) as response:
            if response.status >= 400:
                body = await response.text()
                raise RuntimeError(f"{self.kind.value} API returned {response.status}: {body}")

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None


class TelegramChannel(_HttpChannel):
    """Telegram Bot API ``sendMessage``."""

    kind = NotificationChannel.TELEGRAM

    def __init__(self, bot_token: str, api_url: str = "https://api.telegram.org", timeout: float = 10.0) -> None:
        super().__init__(timeout)
        self._url = f"{api_url.rstrip('/')}/bot{bot_token}/sendMessage"

    def wants(self, user: "User") -> bool:
        return user.notify_telegram and bool(user.telegram_chat_id)

    async def send(self, user: "User", title: str, message: str) -> None:
        await self._post(
            self._url,
            {
                "chat_id": user.telegram_chat_id,
                "text": f"<b>{title}</b>\n\n{message}",
                "parse_mode": "HTML",
            },
        )


class LineChannel(_HttpChannel):
    """LINE Messaging API push message."""

    kind = NotificationChannel.LINE

    def __init__(self, access_token: str, api_url: str = "https://api.line.me", timeout: float = 10.0) -> None:
        super().__init__(timeout)
        self._url = f"{api_url.rstrip('/')}/v2/bot/message/push"
        self._headers = {"Authorization": f"Bearer {access_token}"}

    def wants(self, user: "User") -> bool:
        return user.notify_line and bool(user.line_user_id)

    async def send(self, user: "User", title: str, message: str) -> None:
        await self._post(
            self._url,
            {"to": user.line_user_id, "messages": [{"type": "text", "text": f"{title}\n\n{message}"}]},
            headers=self._headers,
        )


class EmailChannel(Channel):
    """Plain-text e-mail over SMTP (STARTTLS), sent from a worker thread."""

    kind = NotificationChannel.EMAIL

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        sender: str = "noreply@dcabot.local",
        timeout: float = 10.0,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._sender = sender
        self._timeout = timeout

    def wants(self, user: "User") -> bool:
        return user.notify_email and bool(user.email)

    async def send(self, user: "User", title: str, message: str) -> None:
        msg = EmailMessage()
        msg["From"] = self._sender
        msg["To"] = user.email
        msg["Subject"] = title
        msg.set_content(message)
        await asyncio.to_thread(self._deliver, msg)

    def _deliver(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as smtp:
            smtp.starttls()
            if self._username:
                smtp.login(self._username, self._password)
            smtp.send_message(msg)


def build_channels(settings: "NotificationSettings") -> list[Channel]:
    """Construct only the channels whose credentials are configured."""
    channels: list[Channel] = []
    if settings.telegram_bot_token:
        channels.append(
            TelegramChannel(settings.telegram_bot_token, settings.telegram_api_url, settings.request_timeout)
        )
    if settings.line_access_token:
        channels.append(
            LineChannel(settings.line_access_token, settings.line_api_url, settings.request_timeout)
        )
    if settings.smtp_host:
        channels.append(
            EmailChannel(
                settings.smtp_host,
                settings.smtp_port,
                settings.smtp_user,
                settings.smtp_password,
                settings.smtp_sender,
                settings.request_timeout,
            )
        )
    logger.info("Notification channels: %s", [c.kind.value for c in channels] or "none")
    return channels
