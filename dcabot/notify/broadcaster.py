"""Per-user realtime event fan-out over websockets."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Protocol

from dcabot.config.constants import EventType

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """What the broadcaster needs from a websocket (FastAPI's ``WebSocket`` fits)."""

    async def send_text(self, data: str) -> None: ...


def envelope(event_type: EventType | str, data: Any) -> str:
    """Serialize ``{type, data, timestamp}``."""
    return json.dumps(
        {
            "type": str(getattr(event_type, "value", event_type)),
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
        default=str,
    )


class RealtimeBroadcaster:
    """Tracks live connections per user and pushes envelopes to them."""

    def __init__(self) -> None:
        self._clients: dict[int, set[Connection]] = {}

    def register(self, user_id: int, connection: Connection) -> None:
        self._clients.setdefault(user_id, set()).add(connection)
        logger.info("Realtime client connected for user %s (%d open)", user_id, self.connection_count(user_id))

    def unregister(self, user_id: int, connection: Connection) -> None:
        connections = self._clients.get(user_id)
        if not connections:
            return
        connections.discard(connection)
        if not connections:
            del self._clients[user_id]
        logger.info("Realtime client disconnected for user %s", user_id)

    def connection_count(self, user_id: int | None = None) -> int:
        if user_id is not None:
            return len(self._clients.get(user_id, ()))
        return sum(len(c) for c in self._clients.values())

    async def broadcast(self, user_id: int, event_type: EventType | str, data: Any) -> int:
        """Send an event to every connection of *user_id*.

        Connections whose send fails are dropped. Returns the number of
        successful deliveries.
        """
        connections = list(self._clients.get(user_id, ()))
        if not connections:
            return 0
        message = envelope(event_type, data)
        delivered = 0
        for connection in connections:
            try:
                await connection.send_text(message)
                delivered += 1
            except Exception:
                logger.warning("Dropping realtime connection for user %s", user_id, exc_info=True)
                self.unregister(user_id, connection)
        return delivered
