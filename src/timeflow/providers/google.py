"""Google Calendar v3 client."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from timeflow.errors import RemoteWriteError
from timeflow.models import FetchedEvents, OutgoingEvent, ProviderKind, RemoteEvent
from timeflow.providers.base import (
    DEFAULT_REQUEST_TIMEOUT_S,
    RemoteCalendarClient,
    event_boundaries,
    parse_date,
    parse_datetime,
    rfc3339,
)

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
DEFAULT_GOOGLE_CALENDAR_ID = "primary"
GOOGLE_PAGE_SIZE = 250


class GoogleCalendarClient(RemoteCalendarClient):
    """Reads and writes events on one Google calendar (``primary`` by default).

    Recurring events are expanded server-side (``singleEvents=true``) so every
    occurrence in the window arrives as its own item.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        calendar_id: str = DEFAULT_GOOGLE_CALENDAR_ID,
        base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
        request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
    ) -> None:
        super().__init__(http_client, request_timeout_s=request_timeout_s)
        self.calendar_id = calendar_id
        self._base_url = base_url.rstrip("/")

    @property
    def kind(self) -> ProviderKind:
        return ProviderKind.GOOGLE

    def _events_url(self, event_id: str | None = None) -> str:
        url = f"{self._base_url}/calendars/{quote(self.calendar_id, safe='')}/events"
        if event_id is not None:
            url = f"{url}/{quote(event_id, safe='')}"
        return url

    async def fetch_events(self, token: str, start: datetime, end: datetime) -> FetchedEvents:
        result = FetchedEvents()
        params: dict[str, Any] = {
            "timeMin": rfc3339(start),
            "timeMax": rfc3339(end),
            "singleEvents": "true",
            "orderBy": "startTime",
            "showDeleted": "false",
            "maxResults": GOOGLE_PAGE_SIZE,
        }
        page = 0
        while True:
            page += 1
            payload = await self._request_json(
                "GET", self._events_url(), token=token, write=False, params=params
            )
            self._parse_items(payload.get("items"), result)
            next_page_token = payload.get("nextPageToken")
            if not isinstance(next_page_token, str) or not next_page_token:
                break
            params = {**params, "pageToken": next_page_token}

        logger.debug(
            "Fetched %d Google events (%d malformed) across %d page(s)",
            len(result.events),
            len(result.malformed),
            page,
        )
        return result

    async def create_event(self, token: str, event: OutgoingEvent) -> str:
        payload = await self._request_json(
            "POST",
            self._events_url(),
            token=token,
            write=True,
            json_body=_build_google_event_body(event),
        )
        remote_id = payload.get("id")
        if not isinstance(remote_id, str) or not remote_id:
            raise RemoteWriteError(
                "Google Calendar create response is missing an event id",
                provider=self.kind.value,
            )
        return remote_id

    async def update_event(self, token: str, remote_id: str, event: OutgoingEvent) -> None:
        await self._request_json(
            "PUT",
            self._events_url(remote_id),
            token=token,
            write=True,
            json_body=_build_google_event_body(event),
        )

    async def delete_event(self, token: str, remote_id: str) -> None:
        await self._request_json(
            "DELETE",
            self._events_url(remote_id),
            token=token,
            write=True,
            tolerated_statuses=(404, 410),
        )

    def _parse_event(self, item: Any) -> RemoteEvent | None:
        if not isinstance(item, dict):
            raise TypeError("event item is not an object")
        if item.get("status") == "cancelled":
            return None

        start, end = event_boundaries(item)
        all_day = not start.get("dateTime")
        if all_day:
            start_at = parse_date(start["date"])
            end_at = parse_date(end["date"])
        else:
            start_at = parse_datetime(start["dateTime"])
            end_at = parse_datetime(end["dateTime"])

        return RemoteEvent(
            remote_id=item["id"],
            title=item.get("summary"),
            description=item.get("description"),
            start=start_at,
            end=end_at,
            all_day=all_day,
            location=item.get("location"),
            updated_at=parse_datetime(item["updated"]),
        )


def _build_google_event_body(event: OutgoingEvent) -> dict[str, Any]:
    if event.all_day:
        start = {"date": event.start.date().isoformat()}
        end = {"date": event.end.date().isoformat()}
    else:
        start = {"dateTime": rfc3339(event.start), "timeZone": "UTC"}
        end = {"dateTime": rfc3339(event.end), "timeZone": "UTC"}
    body: dict[str, Any] = {"summary": event.title, "start": start, "end": end}
    if event.description is not None:
        body["description"] = event.description
    if event.location is not None:
        body["location"] = event.location
    return body
