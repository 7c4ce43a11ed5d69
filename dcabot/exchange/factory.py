"""Builds exchange clients from stored (encrypted) bindings and caches them."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from typing import TYPE_CHECKING, Callable

from dcabot.config.constants import ExchangeType
from dcabot.core.errors import UnsupportedExchange
from dcabot.exchange.binance import BinanceClient
from dcabot.exchange.ccxt_client import CcxtClient
from dcabot.exchange.coinbase import CoinbaseClient

if TYPE_CHECKING:
    from dcabot.config.settings import ExchangeSettings
    from dcabot.core.vault import CredentialVault
    from dcabot.data.models import Exchange
    from dcabot.exchange.base import ExchangeClient

logger = logging.getLogger(__name__)


class ExchangeClientFactory:
    """Maps an ``ExchangeType`` to its adapter.

    Credentials are decrypted through the vault on every construction;
    plaintext never leaves the adapter instance.
    """

    def __init__(self, vault: "CredentialVault", settings: "ExchangeSettings") -> None:
        self._vault = vault
        self._settings = settings

    def create(self, exchange: "Exchange") -> "ExchangeClient":
        try:
            exchange_type = ExchangeType(exchange.type)
        except ValueError as e:
            raise UnsupportedExchange(f"Unsupported exchange type: {exchange.type}") from e

        api_key = self._vault.decrypt(exchange.api_key)
        api_secret = self._vault.decrypt(exchange.api_secret)
        testnet = exchange_type.is_testnet
        s = self._settings

        if exchange_type.venue == "binance":
            return BinanceClient(
                api_key,
                api_secret,
                testnet=testnet,
                base_url=s.binance_testnet_url if testnet else s.binance_url,
                recv_window=s.recv_window,
                timeout=s.request_timeout,
            )
        if exchange_type.venue == "coinbase":
            passphrase = self._vault.decrypt(exchange.passphrase) if exchange.passphrase else ""
            return CoinbaseClient(
                api_key,
                api_secret,
                testnet=testnet,
                passphrase=passphrase,
                base_url=s.coinbase_testnet_url if testnet else s.coinbase_url,
                timeout=s.request_timeout,
            )
        if exchange_type.venue == "bybit":
            return CcxtClient(
                "bybit", api_key, api_secret, testnet=testnet, rate_limit=s.rate_limit
            )
        raise UnsupportedExchange(f"Unsupported exchange type: {exchange.type}")


class ClientCache:
    """Bounded LRU cache of live clients with a time-to-live.

    Keyed by ``(exchange_id, exchange_type)``. Evicted and expired clients
    are closed.

    Parameters
    ----------
    factory:
        Builds a client for a cache miss.
    max_size:
        Maximum number of live clients.
    ttl:
        Seconds a client may be reused after creation.
    """

    def __init__(
        self,
        factory: ExchangeClientFactory,
        max_size: int = 64,
        ttl: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._factory = factory
        self._max_size = max_size
        self._ttl = ttl
        self._clock = clock
        self._entries: OrderedDict[tuple[int, str], tuple["ExchangeClient", float]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: tuple[int, str]) -> bool:
        return key in self._entries

    async def get(self, exchange: "Exchange") -> "ExchangeClient":
        """Return a cached client for *exchange*, building one on a miss."""
        key = (exchange.id, str(getattr(exchange.type, "value", exchange.type)))
        now = self._clock()
        entry = self._entries.get(key)
        if entry is not None:
            client, created = entry
            if now - created < self._ttl:
                self._entries.move_to_end(key)
                return client
            del self._entries[key]
            await self._close(client, key)

        client = self._factory.create(exchange)
        self._entries[key] = (client, now)
        while len(self._entries) > self._max_size:
            old_key, (old_client, _) = self._entries.popitem(last=False)
            logger.debug("Evicting client %s", old_key)
            await self._close(old_client, old_key)
        return client

    async def invalidate(self, exchange_id: int) -> None:
        """Drop every client for an exchange (credentials changed or deleted)."""
        for key in [k for k in self._entries if k[0] == exchange_id]:
            client, _ = self._entries.pop(key)
            await self._close(client, key)

    async def close_all(self) -> None:
        while self._entries:
            key, (client, _) = self._entries.popitem(last=False)
            await self._close(client, key)

    @staticmethod
    async def _close(client: "ExchangeClient", key: tuple[int, str]) -> None:
        try:
            await client.close()
        except Exception:
            logger.warning("Failed to close client %s", key, exc_info=True)
