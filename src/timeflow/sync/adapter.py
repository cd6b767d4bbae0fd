"""Per-provider reconciliation between a remote calendar and the local store.

Import (``to_local``) is the authoritative direction:

1. obtain a token from :class:`~timeflow.oauth.TokenProvider`;
2. fetch remote events in a rolling window of +/- ``window_months`` around now;
3. build a lookup of local events already linked to this provider;
4. create unknown remote events locally, overwrite linked ones when the remote
   copy is strictly newer (last write wins), otherwise leave them alone;
5. clear the synced flag on linked events that did not come back from the
   fetch (absence never deletes anything);
6. record per-event failures and keep going.

Export (``to_remote``) only runs in :attr:`SyncMode.BIDIRECTIONAL`; in the
default :attr:`SyncMode.IMPORT_ONLY` it returns an empty result without
touching the network.
"""

from __future__ import annotations

import calendar
import logging
from collections.abc import Callable
from datetime import datetime

from opentelemetry import trace

from timeflow.core.http import sanitize_error
from timeflow.errors import CalendarAuthError, CalendarSyncError, RemoteFetchError
from timeflow.models import (
    EventChanges,
    LocalEvent,
    NewLocalEvent,
    OutgoingEvent,
    ProviderKind,
    ProviderSyncReport,
    SyncDirection,
    SyncMode,
    SyncResult,
    SyncResultBuilder,
    utcnow,
)
from timeflow.oauth import TokenProvider
from timeflow.providers.base import RemoteCalendarClient
from timeflow.store import EventRepository, ProviderRepository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("timeflow")

DEFAULT_WINDOW_MONTHS = 3


def add_months(value: datetime, months: int) -> datetime:
    """Shift *value* by whole calendar months, clamping the day to the month's end."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def sync_window(now: datetime, months: int = DEFAULT_WINDOW_MONTHS) -> tuple[datetime, datetime]:
    return add_months(now, -months), add_months(now, months)


class ProviderSyncAdapter:
    """Runs import/export for one provider kind on behalf of any user."""

    def __init__(
        self,
        kind: ProviderKind,
        *,
        tokens: TokenProvider,
        client: RemoteCalendarClient,
        events: EventRepository,
        providers: ProviderRepository,
        mode: SyncMode = SyncMode.IMPORT_ONLY,
        window_months: int = DEFAULT_WINDOW_MONTHS,
        calendar_id: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if client.kind is not kind:
            raise ValueError(f"Client for {client.kind.value} cannot serve {kind.value}")
        self.kind = kind
        self.mode = mode
        self._tokens = tokens
        self._client = client
        self._events = events
        self._providers = providers
        self._window_months = window_months
        self._calendar_id = calendar_id
        self._clock = clock

    async def _token_or_error(self, user_id: str, tally: SyncResultBuilder) -> str | None:
        try:
            token = await self._tokens.get_valid_token(user_id, self.kind)
        except CalendarAuthError as exc:
            tally.errors.append(f"TokenUnavailable: {exc.kind}: {sanitize_error(exc)}")
            return None
        if token is None:
            tally.errors.append(
                f"NotConnected: no active {self.kind.display_name} calendar connection"
            )
        return token

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    async def sync_to_local(self, user_id: str) -> SyncResult:
        """Import remote changes into the local store."""
        tally = SyncResultBuilder(self.kind, SyncDirection.TO_LOCAL)
        with tracer.start_as_current_span("timeflow.sync.to_local") as span:
            span.set_attribute("provider", self.kind.value)

            token = await self._token_or_error(user_id, tally)
            if token is None:
                return tally.build(self._clock())

            start, end = sync_window(self._clock(), self._window_months)
            try:
                fetched = await self._client.fetch_events(token, start, end)
            except RemoteFetchError as exc:
                logger.warning("%s fetch failed for user %s: %s", self.kind.value, user_id, exc)
                tally.errors.append(f"RemoteFetchFailed: {sanitize_error(exc)}")
                return tally.build(self._clock())

            linked = await self._events.list_linked(user_id, self.kind)
            known: dict[str, LocalEvent] = {}
            for event in linked:
                remote_id = event.remote_id(self.kind)
                if remote_id:
                    known[remote_id] = event

            for bad in fetched.malformed:
                if bad.remote_id is not None:
                    # It is still present remotely; only its payload is unusable.
                    known.pop(bad.remote_id, None)
                tally.errors.append(
                    f"MalformedRemoteEvent: remote event {bad.remote_id or '<unknown>'}: "
                    f"{bad.reason}"
                )

            for remote in fetched.events:
                local = known.pop(remote.remote_id, None)
                try:
                    if local is None:
                        await self._events.insert(
                            NewLocalEvent.from_remote(
                                user_id=user_id,
                                kind=self.kind,
                                remote=remote,
                                calendar_id=self._calendar_id,
                            )
                        )
                        tally.created += 1
                    elif remote.updated_at > local.updated_at:
                        await self._events.apply_remote_changes(
                            local.id, self.kind, EventChanges.from_remote(remote)
                        )
                        tally.updated += 1
                except Exception as exc:
                    logger.warning(
                        "Failed to import %s event %s: %s", self.kind.value, remote.remote_id, exc
                    )
                    tally.errors.append(
                        f"PerEventWriteFailed: remote event {remote.remote_id}: "
                        f"{sanitize_error(exc)}"
                    )

            for remote_id, local in known.items():
                try:
                    await self._events.mark_unsynced(local.id, self.kind)
                    tally.deleted += 1
                except Exception as exc:
                    logger.warning("Failed to mark event %s unsynced: %s", local.id, exc)
                    tally.errors.append(
                        f"PerEventWriteFailed: remote event {remote_id}: {sanitize_error(exc)}"
                    )

            await self._touch_connection(user_id)

            result = tally.build(self._clock())
            span.set_attribute("created", result.created)
            span.set_attribute("updated", result.updated)
            span.set_attribute("unsynced", result.deleted)
            span.set_attribute("errors", len(result.errors))
            logger.info(
                "%s import for user %s: created=%d updated=%d unsynced=%d errors=%d",
                self.kind.value,
                user_id,
                result.created,
                result.updated,
                result.deleted,
                len(result.errors),
            )
            return result

    async def _touch_connection(self, user_id: str) -> None:
        try:
            record = await self._providers.get_active(user_id, self.kind)
            if record is not None:
                await self._providers.touch(record.id)
        except Exception:
            logger.warning(
                "Failed to stamp %s connection for user %s", self.kind.value, user_id, exc_info=True
            )

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    async def sync_to_remote(self, user_id: str) -> SyncResult:
        """Push local events that are not yet in sync to the remote calendar."""
        tally = SyncResultBuilder(self.kind, SyncDirection.TO_REMOTE)
        if self.mode is SyncMode.IMPORT_ONLY:
            return tally.build(self._clock())

        with tracer.start_as_current_span("timeflow.sync.to_remote") as span:
            span.set_attribute("provider", self.kind.value)

            token = await self._token_or_error(user_id, tally)
            if token is None:
                return tally.build(self._clock())

            start, end = sync_window(self._clock(), self._window_months)
            pending = await self._events.list_pending_export(user_id, self.kind, start, end)
            for event in pending:
                outgoing = OutgoingEvent.from_local(event)
                remote_id = event.remote_id(self.kind)
                try:
                    if remote_id:
                        await self._client.update_event(token, remote_id, outgoing)
                        tally.updated += 1
                    else:
                        remote_id = await self._client.create_event(token, outgoing)
                        tally.created += 1
                    await self._events.link_remote(event.id, self.kind, remote_id)
                except Exception as exc:
                    logger.warning(
                        "Failed to export event %s to %s: %s", event.id, self.kind.value, exc
                    )
                    tally.errors.append(
                        f"RemoteWriteFailed: event {event.id}: {sanitize_error(exc)}"
                    )

            result = tally.build(self._clock())
            span.set_attribute("created", result.created)
            span.set_attribute("updated", result.updated)
            span.set_attribute("errors", len(result.errors))
            return result

    # ------------------------------------------------------------------

    async def run(self, user_id: str) -> ProviderSyncReport:
        """Import then export for *user_id*."""
        to_local = await self.sync_to_local(user_id)
        to_remote = await self.sync_to_remote(user_id)
        return ProviderSyncReport.from_results(to_local, to_remote)

    async def delete_remote_copy(self, user_id: str, event: LocalEvent) -> bool:
        """Best-effort deletion of *event*'s remote counterpart.

        Returns True when there is nothing left remotely (including when the
        event was never linked).  Never raises for remote or token failures.
        """
        remote_id = event.remote_id(self.kind)
        if not remote_id:
            return True
        try:
            token = await self._tokens.get_valid_token(user_id, self.kind)
            if token is None:
                return False
            await self._client.delete_event(token, remote_id)
        except CalendarSyncError as exc:
            logger.warning(
                "Could not delete %s event %s for local event %s: %s",
                self.kind.value,
                remote_id,
                event.id,
                exc,
            )
            return False
        return True
