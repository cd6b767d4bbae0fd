"""Composition root: wires repositories, OAuth, clients, adapters and managers."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

import httpx

from timeflow.config import ConfigError, TimeflowConfig
from timeflow.db import Database
from timeflow.models import ProviderKind, utcnow
from timeflow.oauth import GoogleOAuthClient, MicrosoftOAuthClient, OAuthClient, TokenProvider
from timeflow.providers import GoogleCalendarClient, MicrosoftCalendarClient, RemoteCalendarClient
from timeflow.store import (
    EventRepository,
    PostgresEventRepository,
    PostgresProviderRepository,
    ProviderRepository,
    ensure_schema,
)
from timeflow.sync.adapter import ProviderSyncAdapter
from timeflow.sync.manager import SyncManager

logger = logging.getLogger(__name__)


class SyncRuntime:
    """Owns the long-lived collaborators and hands out one manager per user."""

    def __init__(
        self,
        config: TimeflowConfig,
        *,
        providers: ProviderRepository,
        events: EventRepository,
        http_client: httpx.AsyncClient,
        database: Database | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config
        self.providers = providers
        self.events = events
        self._http_client = http_client
        self._database = database
        self._clock = clock
        self._managers: dict[str, SyncManager] = {}

        oauth_clients: dict[ProviderKind, OAuthClient] = {}
        clients: dict[ProviderKind, RemoteCalendarClient] = {}
        timeout_s = config.sync.request_timeout_seconds
        if config.google is not None:
            oauth_clients[ProviderKind.GOOGLE] = GoogleOAuthClient(
                client_id=config.google.client_id,
                client_secret=config.google.client_secret,
                http_client=http_client,
                timeout_s=timeout_s,
            )
            clients[ProviderKind.GOOGLE] = GoogleCalendarClient(
                http_client,
                calendar_id=config.google.calendar_id,
                request_timeout_s=timeout_s,
            )
        if config.microsoft is not None:
            oauth_clients[ProviderKind.MICROSOFT] = MicrosoftOAuthClient(
                client_id=config.microsoft.client_id,
                client_secret=config.microsoft.client_secret,
                tenant=config.microsoft.tenant,
                http_client=http_client,
                timeout_s=timeout_s,
            )
            clients[ProviderKind.MICROSOFT] = MicrosoftCalendarClient(
                http_client, request_timeout_s=timeout_s
            )

        self.tokens = TokenProvider(providers, oauth_clients, clock=clock)
        self.adapters: dict[ProviderKind, ProviderSyncAdapter] = {
            kind: ProviderSyncAdapter(
                kind,
                tokens=self.tokens,
                client=client,
                events=events,
                providers=providers,
                mode=config.sync.mode,
                window_months=config.sync.window_months,
                calendar_id=config.google.calendar_id
                if kind is ProviderKind.GOOGLE and config.google is not None
                else None,
                clock=clock,
            )
            for kind, client in clients.items()
        }

    @classmethod
    async def create(cls, config: TimeflowConfig) -> SyncRuntime:
        """Connect to Postgres, ensure the schema, and build a runtime."""
        if config.database.url is None:
            raise ConfigError("database.url is required to start the sync runtime")
        database = Database.from_url(config.database.url)
        database.min_pool_size = config.database.min_pool_size
        database.max_pool_size = config.database.max_pool_size
        pool = await database.connect()
        await ensure_schema(pool)
        http_client = httpx.AsyncClient(timeout=config.sync.request_timeout_seconds)
        return cls(
            config,
            providers=PostgresProviderRepository(pool),
            events=PostgresEventRepository(pool),
            http_client=http_client,
            database=database,
        )

    def manager_for(self, user_id: str) -> SyncManager:
        """Return the (cached) sync manager for *user_id*."""
        manager = self._managers.get(user_id)
        if manager is None:
            manager = SyncManager(
                user_id,
                self.adapters,
                self.providers,
                self.events,
                debounce_seconds=self.config.sync.debounce_seconds,
                default_interval_minutes=self.config.sync.auto_sync_interval_minutes,
                clock=self._clock,
            )
            self._managers[user_id] = manager
        return manager

    async def release(self, user_id: str) -> None:
        """Close and forget *user_id*'s manager, if one was created."""
        manager = self._managers.pop(user_id, None)
        if manager is not None:
            await manager.aclose()

    async def aclose(self) -> None:
        for manager in list(self._managers.values()):
            await manager.aclose()
        self._managers.clear()
        await self._http_client.aclose()
        if self._database is not None:
            await self._database.close()
        logger.info("Sync runtime closed")
