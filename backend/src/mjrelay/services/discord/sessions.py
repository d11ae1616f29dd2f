"""Per-credential Discord session registry.

One DiscordClient is cached per API key. Creation is serialized per key, so
concurrent first requests under the same credential share a single session.
A client that hit a transport error is replaced on the next lookup.
"""

import asyncio
from typing import Callable, Optional

import structlog

from mjrelay.core.config import Settings
from mjrelay.models.account import Account
from mjrelay.services.discord.client import DiscordClient

logger = structlog.get_logger(__name__)

ClientFactory = Callable[[Account, Settings], DiscordClient]


def default_client_factory(account: Account, settings: Settings) -> DiscordClient:
    return DiscordClient(
        server_id=account.server_id,
        channel_id=account.channel_id,
        token=account.salai_token,
        settings=settings,
    )


class SessionRegistry:
    """Create-on-demand, evict-on-transport-error cache of Discord sessions."""

    def __init__(self, settings: Settings, client_factory: Optional[ClientFactory] = None):
        self.settings = settings
        self._factory = client_factory or default_client_factory
        self._clients: dict[str, DiscordClient] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        # Replaced clients may still be serving in-flight polls; closed on shutdown
        self._retired: list[DiscordClient] = []

    def __len__(self) -> int:
        return len(self._clients)

    async def get(self, account: Account) -> DiscordClient:
        """Return the cached session for account, creating it if needed.

        Raises:
            AuthError: Discord rejected the account token
            BackendTransientError: Discord unreachable while creating the session
        """
        lock = self._locks.setdefault(account.api_key, asyncio.Lock())
        async with lock:
            client = self._clients.get(account.api_key)
            if client is not None and client.healthy:
                return client

            if client is not None:
                logger.warning("discord.session.evicted", account=account.email)
                self._retire(account.api_key)

            client = self._factory(account, self.settings)
            try:
                await client.connect()
            except Exception:
                await client.close()
                raise
            self._clients[account.api_key] = client
            logger.info("discord.session.created", account=account.email)
            return client

    def evict(self, api_key: str) -> None:
        """Drop the cached session for api_key (next get() creates a new one)."""
        if api_key in self._clients:
            self._retire(api_key)

    def _retire(self, api_key: str) -> None:
        self._retired.append(self._clients.pop(api_key))

    async def close_all(self) -> None:
        """Close every live and retired session."""
        clients = list(self._clients.values()) + self._retired
        self._clients.clear()
        self._retired.clear()
        for client in clients:
            await client.close()
        logger.info("discord.sessions.closed", count=len(clients))
