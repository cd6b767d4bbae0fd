"""Local calendar store: repository contracts and asyncpg implementations.

The sync engine only depends on the :class:`ProviderRepository` and
:class:`EventRepository` protocols.  The Postgres implementations below back
them with two tables:

``calendar_providers``
    One row per (user, provider) connection.  Disconnecting is a soft delete
    (``is_active = false``); a partial unique index keeps at most one active
    row per pair.

``events``
    The user's local calendar.  Each row may be linked to a Google and/or a
    Microsoft event through ``google_event_id`` / ``microsoft_event_id`` and
    carries a per-provider ``synced_to_*`` flag.

Every write is a single statement; no transaction spans more than one event.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

from timeflow.models import (
    CalendarProviderRecord,
    EventChanges,
    LocalEvent,
    NewLocalEvent,
    ProviderKind,
    TokenGrant,
)

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_PROVIDERS_TABLE = "calendar_providers"
_EVENTS_TABLE = "events"

_PROVIDERS_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_PROVIDERS_TABLE} (
    id               UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id          TEXT NOT NULL,
    provider         TEXT NOT NULL CHECK (provider IN ('google', 'microsoft')),
    provider_email   TEXT,
    access_token     TEXT,
    refresh_token    TEXT,
    token_expires_at TIMESTAMPTZ,
    is_active        BOOLEAN NOT NULL DEFAULT true,
    created_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at       TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

_PROVIDERS_ACTIVE_INDEX_DDL = f"""
CREATE UNIQUE INDEX IF NOT EXISTS uq_calendar_providers_active
ON {_PROVIDERS_TABLE} (user_id, provider)
WHERE is_active
"""

_EVENTS_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_EVENTS_TABLE} (
    id                  UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id             TEXT NOT NULL,
    title               TEXT NOT NULL,
    description         TEXT,
    start_time          TIMESTAMPTZ NOT NULL,
    end_time            TIMESTAMPTZ NOT NULL,
    all_day             BOOLEAN NOT NULL DEFAULT false,
    location            TEXT,
    category            TEXT NOT NULL DEFAULT 'other',
    importance          INTEGER NOT NULL DEFAULT 3,
    google_event_id     TEXT,
    microsoft_event_id  TEXT,
    google_calendar_id  TEXT,
    synced_to_google    BOOLEAN NOT NULL DEFAULT false,
    synced_to_microsoft BOOLEAN NOT NULL DEFAULT false,
    created_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at          TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

_EVENTS_GOOGLE_INDEX_DDL = f"""
CREATE INDEX IF NOT EXISTS ix_events_user_google
ON {_EVENTS_TABLE} (user_id, google_event_id)
WHERE google_event_id IS NOT NULL
"""

_EVENTS_MICROSOFT_INDEX_DDL = f"""
CREATE INDEX IF NOT EXISTS ix_events_user_microsoft
ON {_EVENTS_TABLE} (user_id, microsoft_event_id)
WHERE microsoft_event_id IS NOT NULL
"""

_EVENTS_START_INDEX_DDL = f"""
CREATE INDEX IF NOT EXISTS ix_events_user_start
ON {_EVENTS_TABLE} (user_id, start_time)
"""

_PROVIDER_COLUMNS = (
    "id, user_id, provider, provider_email, access_token, refresh_token, "
    "token_expires_at, is_active, created_at, updated_at"
)
_EVENT_COLUMNS = (
    "id, user_id, title, description, start_time, end_time, all_day, location, "
    "category, importance, google_event_id, microsoft_event_id, google_calendar_id, "
    "synced_to_google, synced_to_microsoft, created_at, updated_at"
)


async def ensure_schema(pool: asyncpg.Pool) -> None:
    """Create the provider and event tables (and their indexes) if missing."""
    async with pool.acquire() as conn:
        for statement in (
            _PROVIDERS_TABLE_DDL,
            _PROVIDERS_ACTIVE_INDEX_DDL,
            _EVENTS_TABLE_DDL,
            _EVENTS_GOOGLE_INDEX_DDL,
            _EVENTS_MICROSOFT_INDEX_DDL,
            _EVENTS_START_INDEX_DDL,
        ):
            await conn.execute(statement)


# ---------------------------------------------------------------------------
# Repository contracts
# ---------------------------------------------------------------------------


class ProviderRepository(Protocol):
    """Persistence contract for provider connections."""

    async def get_active(self, user_id: str, kind: ProviderKind) -> CalendarProviderRecord | None:
        """Return the active connection for (user, provider), if any."""
        ...

    async def list_active(self, user_id: str) -> list[CalendarProviderRecord]:
        """Return every active connection for the user."""
        ...

    async def upsert_connection(
        self,
        user_id: str,
        kind: ProviderKind,
        *,
        provider_email: str | None,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime,
    ) -> CalendarProviderRecord:
        """Create or replace the active connection for (user, provider)."""
        ...

    async def update_tokens(
        self,
        provider_id: str,
        *,
        access_token: str,
        expires_at: datetime,
        refresh_token: str | None = None,
    ) -> None:
        """Persist refreshed tokens.  ``refresh_token=None`` keeps the stored one."""
        ...

    async def deactivate(self, provider_id: str) -> None:
        """Soft-delete a connection."""
        ...

    async def touch(self, provider_id: str) -> None:
        """Stamp ``updated_at`` on a connection after a sync."""
        ...


class EventRepository(Protocol):
    """Persistence contract for local events."""

    async def get(self, event_id: str) -> LocalEvent | None: ...

    async def list_linked(self, user_id: str, kind: ProviderKind) -> list[LocalEvent]:
        """Events that carry a remote id for *kind*."""
        ...

    async def insert(self, event: NewLocalEvent) -> LocalEvent: ...

    async def apply_remote_changes(
        self,
        event_id: str,
        kind: ProviderKind,
        changes: EventChanges,
    ) -> None:
        """Overwrite fields from the remote copy and flag the event as synced."""
        ...

    async def mark_unsynced(self, event_id: str, kind: ProviderKind) -> None: ...

    async def mark_needs_sync(self, event_id: str) -> bool:
        """Clear both synced flags.  Returns False when the event does not exist."""
        ...

    async def list_pending_export(
        self,
        user_id: str,
        kind: ProviderKind,
        start: datetime,
        end: datetime,
    ) -> list[LocalEvent]:
        """Events in the window not yet in sync with *kind*."""
        ...

    async def link_remote(self, event_id: str, kind: ProviderKind, remote_id: str) -> None:
        """Record the remote id for *kind* and flag the event as synced."""
        ...

    async def delete(self, event_id: str) -> bool: ...


# ---------------------------------------------------------------------------
# Postgres implementations
# ---------------------------------------------------------------------------


def _provider_from_row(row: Any) -> CalendarProviderRecord:
    return CalendarProviderRecord.model_validate(dict(row))


def _event_from_row(row: Any) -> LocalEvent:
    return LocalEvent.model_validate(dict(row))


class PostgresProviderRepository:
    """``calendar_providers`` repository backed by an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def get_active(self, user_id: str, kind: ProviderKind) -> CalendarProviderRecord | None:
        row = await self.pool.fetchrow(
            f"""
            SELECT {_PROVIDER_COLUMNS}
            FROM {_PROVIDERS_TABLE}
            WHERE user_id = $1 AND provider = $2 AND is_active
            LIMIT 1
            """,
            user_id,
            kind.value,
        )
        return _provider_from_row(row) if row is not None else None

    async def list_active(self, user_id: str) -> list[CalendarProviderRecord]:
        rows = await self.pool.fetch(
            f"""
            SELECT {_PROVIDER_COLUMNS}
            FROM {_PROVIDERS_TABLE}
            WHERE user_id = $1 AND is_active
            ORDER BY provider
            """,
            user_id,
        )
        return [_provider_from_row(row) for row in rows]

    async def upsert_connection(
        self,
        user_id: str,
        kind: ProviderKind,
        *,
        provider_email: str | None,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime,
    ) -> CalendarProviderRecord:
        row = await self.pool.fetchrow(
            f"""
            INSERT INTO {_PROVIDERS_TABLE}
                (user_id, provider, provider_email, access_token,
                 refresh_token, token_expires_at, is_active)
            VALUES ($1, $2, $3, $4, $5, $6, true)
            ON CONFLICT (user_id, provider) WHERE is_active DO UPDATE SET
                provider_email   = COALESCE(EXCLUDED.provider_email,
                                            {_PROVIDERS_TABLE}.provider_email),
                access_token     = EXCLUDED.access_token,
                refresh_token    = COALESCE(EXCLUDED.refresh_token,
                                            {_PROVIDERS_TABLE}.refresh_token),
                token_expires_at = EXCLUDED.token_expires_at,
                updated_at       = now()
            RETURNING {_PROVIDER_COLUMNS}
            """,
            user_id,
            kind.value,
            provider_email,
            access_token,
            refresh_token,
            expires_at,
        )
        logger.info("Stored %s calendar connection for user %s", kind.value, user_id)
        return _provider_from_row(row)

    async def update_tokens(
        self,
        provider_id: str,
        *,
        access_token: str,
        expires_at: datetime,
        refresh_token: str | None = None,
    ) -> None:
        await self.pool.execute(
            f"""
            UPDATE {_PROVIDERS_TABLE}
            SET access_token     = $2,
                token_expires_at = $3,
                refresh_token    = COALESCE($4, refresh_token),
                updated_at       = now()
            WHERE id = $1
            """,
            provider_id,
            access_token,
            expires_at,
            refresh_token,
        )

    async def deactivate(self, provider_id: str) -> None:
        await self.pool.execute(
            f"UPDATE {_PROVIDERS_TABLE} SET is_active = false, updated_at = now() WHERE id = $1",
            provider_id,
        )
        logger.info("Deactivated calendar connection %s", provider_id)

    async def touch(self, provider_id: str) -> None:
        await self.pool.execute(
            f"UPDATE {_PROVIDERS_TABLE} SET updated_at = now() WHERE id = $1",
            provider_id,
        )


class PostgresEventRepository:
    """``events`` repository backed by an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def get(self, event_id: str) -> LocalEvent | None:
        row = await self.pool.fetchrow(
            f"SELECT {_EVENT_COLUMNS} FROM {_EVENTS_TABLE} WHERE id = $1",
            event_id,
        )
        return _event_from_row(row) if row is not None else None

    async def list_linked(self, user_id: str, kind: ProviderKind) -> list[LocalEvent]:
        rows = await self.pool.fetch(
            f"""
            SELECT {_EVENT_COLUMNS}
            FROM {_EVENTS_TABLE}
            WHERE user_id = $1 AND {kind.remote_id_field} IS NOT NULL
            """,
            user_id,
        )
        return [_event_from_row(row) for row in rows]

    async def insert(self, event: NewLocalEvent) -> LocalEvent:
        row = await self.pool.fetchrow(
            f"""
            INSERT INTO {_EVENTS_TABLE}
                (user_id, title, description, start_time, end_time, all_day,
                 location, category, importance, google_event_id,
                 microsoft_event_id, google_calendar_id, synced_to_google,
                 synced_to_microsoft)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
            RETURNING {_EVENT_COLUMNS}
            """,
            event.user_id,
            event.title,
            event.description,
            event.start_time,
            event.end_time,
            event.all_day,
            event.location,
            event.category,
            event.importance,
            event.google_event_id,
            event.microsoft_event_id,
            event.google_calendar_id,
            event.synced_to_google,
            event.synced_to_microsoft,
        )
        return _event_from_row(row)

    async def apply_remote_changes(
        self,
        event_id: str,
        kind: ProviderKind,
        changes: EventChanges,
    ) -> None:
        await self.pool.execute(
            f"""
            UPDATE {_EVENTS_TABLE}
            SET title       = $2,
                description = $3,
                start_time  = $4,
                end_time    = $5,
                all_day     = $6,
                location    = $7,
                {kind.synced_field} = true,
                updated_at  = now()
            WHERE id = $1
            """,
            event_id,
            changes.title,
            changes.description,
            changes.start_time,
            changes.end_time,
            changes.all_day,
            changes.location,
        )

    async def mark_unsynced(self, event_id: str, kind: ProviderKind) -> None:
        await self.pool.execute(
            f"UPDATE {_EVENTS_TABLE} SET {kind.synced_field} = false WHERE id = $1",
            event_id,
        )

    async def mark_needs_sync(self, event_id: str) -> bool:
        status = await self.pool.execute(
            f"""
            UPDATE {_EVENTS_TABLE}
            SET synced_to_google = false, synced_to_microsoft = false, updated_at = now()
            WHERE id = $1
            """,
            event_id,
        )
        return _affected_rows(status) > 0

    async def list_pending_export(
        self,
        user_id: str,
        kind: ProviderKind,
        start: datetime,
        end: datetime,
    ) -> list[LocalEvent]:
        rows = await self.pool.fetch(
            f"""
            SELECT {_EVENT_COLUMNS}
            FROM {_EVENTS_TABLE}
            WHERE user_id = $1
              AND start_time >= $2
              AND start_time <= $3
              AND ({kind.synced_field} = false OR {kind.remote_id_field} IS NULL)
            ORDER BY start_time
            """,
            user_id,
            start,
            end,
        )
        return [_event_from_row(row) for row in rows]

    async def link_remote(self, event_id: str, kind: ProviderKind, remote_id: str) -> None:
        await self.pool.execute(
            f"""
            UPDATE {_EVENTS_TABLE}
            SET {kind.remote_id_field} = $2, {kind.synced_field} = true
            WHERE id = $1
            """,
            event_id,
            remote_id,
        )

    async def delete(self, event_id: str) -> bool:
        status = await self.pool.execute(
            f"DELETE FROM {_EVENTS_TABLE} WHERE id = $1",
            event_id,
        )
        return _affected_rows(status) > 0


def _affected_rows(status: Any) -> int:
    """Parse the row count from an asyncpg command tag such as ``UPDATE 1``."""
    if not isinstance(status, str):
        return 0
    try:
        return int(status.rsplit(" ", 1)[-1])
    except ValueError:
        return 0
