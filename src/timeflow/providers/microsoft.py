"""Microsoft Graph (Outlook calendar) client."""

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
    coerce_zoneinfo,
    event_boundaries,
    parse_datetime,
    rfc3339,
)

logger = logging.getLogger(__name__)

MICROSOFT_GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
MICROSOFT_PAGE_SIZE = 100
_PREFER_UTC = 'outlook.timezone="UTC"'
_CALENDAR_VIEW_FIELDS = (
    "id,subject,body,bodyPreview,start,end,isAllDay,location,lastModifiedDateTime,isCancelled"
)


class MicrosoftCalendarClient(RemoteCalendarClient):
    """Reads and writes events on the signed-in user's default Outlook calendar.

    Listing uses ``/me/calendarView`` so recurring series are expanded into
    individual occurrences by Graph.  Times are requested in UTC via the
    ``Prefer: outlook.timezone`` header.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        base_url: str = MICROSOFT_GRAPH_BASE_URL,
        request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
    ) -> None:
        super().__init__(http_client, request_timeout_s=request_timeout_s)
        self._base_url = base_url.rstrip("/")

    @property
    def kind(self) -> ProviderKind:
        return ProviderKind.MICROSOFT

    def _event_url(self, event_id: str | None = None) -> str:
        url = f"{self._base_url}/me/events"
        if event_id is not None:
            url = f"{url}/{quote(event_id, safe='')}"
        return url

    async def fetch_events(self, token: str, start: datetime, end: datetime) -> FetchedEvents:
        result = FetchedEvents()
        url: str | None = f"{self._base_url}/me/calendarView"
        params: dict[str, Any] | None = {
            "startDateTime": rfc3339(start),
            "endDateTime": rfc3339(end),
            "$orderby": "start/dateTime",
            "$top": MICROSOFT_PAGE_SIZE,
            "$select": _CALENDAR_VIEW_FIELDS,
        }
        page = 0
        while url is not None:
            page += 1
            payload = await self._request_json(
                "GET",
                url,
                token=token,
                write=False,
                params=params,
                extra_headers={"Prefer": _PREFER_UTC},
            )
            self._parse_items(payload.get("value"), result)
            next_link = payload.get("@odata.nextLink")
            # nextLink already carries every query parameter.
            url = next_link if isinstance(next_link, str) and next_link else None
            params = None

        logger.debug(
            "Fetched %d Microsoft events (%d malformed) across %d page(s)",
            len(result.events),
            len(result.malformed),
            page,
        )
        return result

    async def create_event(self, token: str, event: OutgoingEvent) -> str:
        payload = await self._request_json(
            "POST",
            self._event_url(),
            token=token,
            write=True,
            json_body=_build_graph_event_body(event),
        )
        remote_id = payload.get("id")
        if not isinstance(remote_id, str) or not remote_id:
            raise RemoteWriteError(
                "Microsoft Graph create response is missing an event id",
                provider=self.kind.value,
            )
        return remote_id

    async def update_event(self, token: str, remote_id: str, event: OutgoingEvent) -> None:
        await self._request_json(
            "PATCH",
            self._event_url(remote_id),
            token=token,
            write=True,
            json_body=_build_graph_event_body(event),
        )

    async def delete_event(self, token: str, remote_id: str) -> None:
        await self._request_json(
            "DELETE",
            self._event_url(remote_id),
            token=token,
            write=True,
            tolerated_statuses=(404, 410),
        )

    def _parse_event(self, item: Any) -> RemoteEvent | None:
        if not isinstance(item, dict):
            raise TypeError("event item is not an object")
        if item.get("isCancelled"):
            return None

        start, end = event_boundaries(item)
        start_at = parse_datetime(
            start["dateTime"], default_tz=coerce_zoneinfo(start.get("timeZone"))
        )
        end_at = parse_datetime(end["dateTime"], default_tz=coerce_zoneinfo(end.get("timeZone")))

        location = item.get("location")
        location_name = location.get("displayName") if isinstance(location, dict) else None

        return RemoteEvent(
            remote_id=item["id"],
            title=item.get("subject"),
            description=_graph_description(item),
            start=start_at,
            end=end_at,
            all_day=bool(item.get("isAllDay", False)),
            location=location_name or None,
            updated_at=parse_datetime(item["lastModifiedDateTime"]),
        )


def _graph_description(item: dict[str, Any]) -> str | None:
    body = item.get("body")
    if isinstance(body, dict):
        content = body.get("content")
        if str(body.get("contentType", "")).lower() == "text" and isinstance(content, str):
            return content or None
    preview = item.get("bodyPreview")
    if isinstance(preview, str) and preview:
        return preview
    return None


def _graph_datetime(value: datetime, *, all_day: bool) -> dict[str, str]:
    if all_day:
        text = f"{value.date().isoformat()}T00:00:00"
    else:
        text = rfc3339(value).removesuffix("Z")
    return {"dateTime": text, "timeZone": "UTC"}


def _build_graph_event_body(event: OutgoingEvent) -> dict[str, Any]:
    body: dict[str, Any] = {
        "subject": event.title,
        "start": _graph_datetime(event.start, all_day=event.all_day),
        "end": _graph_datetime(event.end, all_day=event.all_day),
        "isAllDay": event.all_day,
    }
    if event.description is not None:
        body["body"] = {"contentType": "text", "content": event.description}
    if event.location is not None:
        body["location"] = {"displayName": event.location}
    return body
