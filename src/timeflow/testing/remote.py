"""Scriptable remote calendar client for sync engine tests."""

from __future__ import annotations

import itertools
from datetime import datetime
from typing import Any

from timeflow.errors import RemoteFetchError
from timeflow.models import (
    FetchedEvents,
    MalformedRemoteEvent,
    OutgoingEvent,
    ProviderKind,
    RemoteEvent,
)
from timeflow.providers.base import RemoteCalendarClient


class FakeCalendarClient(RemoteCalendarClient):
    """In-memory stand-in for a provider API.

    ``events`` is what the next fetch returns.  Set ``fetch_error`` to make the
    fetch fail, or put an exception in ``write_errors`` (keyed by remote id, or
    by title for creates) to make a single write fail.
    """

    def __init__(self, kind: ProviderKind) -> None:
        # No HTTP client: nothing here touches the network.
        self._kind = kind
        self.events: list[RemoteEvent] = []
        self.malformed: list[MalformedRemoteEvent] = []
        self.fetch_error: Exception | None = None
        self.write_errors: dict[str, Exception] = {}
        self.fetch_calls: list[tuple[str, datetime, datetime]] = []
        self.created: list[OutgoingEvent] = []
        self.updated: list[tuple[str, OutgoingEvent]] = []
        self.deleted: list[str] = []
        self._ids = itertools.count(1)

    @property
    def kind(self) -> ProviderKind:
        return self._kind

    async def fetch_events(self, token: str, start: datetime, end: datetime) -> FetchedEvents:
        self.fetch_calls.append((token, start, end))
        if self.fetch_error is not None:
            raise self.fetch_error
        return FetchedEvents(events=list(self.events), malformed=list(self.malformed))

    async def create_event(self, token: str, event: OutgoingEvent) -> str:
        if event.title in self.write_errors:
            raise self.write_errors[event.title]
        self.created.append(event)
        return f"{self._kind.value}-new-{next(self._ids)}"

    async def update_event(self, token: str, remote_id: str, event: OutgoingEvent) -> None:
        if remote_id in self.write_errors:
            raise self.write_errors[remote_id]
        self.updated.append((remote_id, event))

    async def delete_event(self, token: str, remote_id: str) -> None:
        if remote_id in self.write_errors:
            raise self.write_errors[remote_id]
        self.deleted.append(remote_id)

    async def aclose(self) -> None:
        return None

    def fail_fetch(self, message: str = "upstream unavailable") -> None:
        self.fetch_error = RemoteFetchError(message, provider=self._kind.value, status_code=503)

    def _parse_event(self, item: Any) -> RemoteEvent | None:
        return RemoteEvent.model_validate(item)
