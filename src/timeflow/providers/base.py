"""Remote calendar client abstraction and shared HTTP plumbing."""

from __future__ import annotations

import abc
import asyncio
import logging
import re
from collections.abc import Iterable
from datetime import UTC, date, datetime, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from timeflow.core.http import safe_error_message
from timeflow.errors import (
    RemoteAuthError,
    RemoteCalendarError,
    RemoteFetchError,
    RemoteWriteAuthError,
    RemoteWriteError,
)
from timeflow.models import (
    FetchedEvents,
    MalformedRemoteEvent,
    OutgoingEvent,
    ProviderKind,
    RemoteEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_S = 30.0
_FRACTION_PATTERN = re.compile(r"\.(\d+)")


class RemoteCalendarClient(abc.ABC):
    """Thin client over one provider's calendar API.

    Clients never retry and never inspect the local store; every method makes
    one logical call (possibly several pages) bounded by ``request_timeout_s``
    per HTTP request.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
    ) -> None:
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=request_timeout_s)
        self._request_timeout_s = request_timeout_s

    @property
    @abc.abstractmethod
    def kind(self) -> ProviderKind:
        """Provider this client talks to."""
        ...

    @abc.abstractmethod
    async def fetch_events(self, token: str, start: datetime, end: datetime) -> FetchedEvents:
        """Return every non-cancelled event instance overlapping [start, end]."""
        ...

    @abc.abstractmethod
    async def create_event(self, token: str, event: OutgoingEvent) -> str:
        """Create *event* remotely and return the provider-assigned id."""
        ...

    @abc.abstractmethod
    async def update_event(self, token: str, remote_id: str, event: OutgoingEvent) -> None:
        """Overwrite the remote event *remote_id* with *event*."""
        ...

    @abc.abstractmethod
    async def delete_event(self, token: str, remote_id: str) -> None:
        """Delete the remote event.  Already-deleted events are not an error."""
        ...

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        url: str,
        *,
        token: str,
        write: bool,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        error_cls: type[RemoteCalendarError] = RemoteWriteError if write else RemoteFetchError
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        if extra_headers:
            headers.update(extra_headers)

        label = self.kind.display_name
        try:
            return await asyncio.wait_for(
                self._http_client.request(
                    method,
                    url,
                    params=params,
                    json=json_body,
                    headers=headers,
                ),
                timeout=self._request_timeout_s,
            )
        except TimeoutError as exc:
            raise error_cls(
                f"{label} calendar request timed out after {self._request_timeout_s:g}s",
                provider=self.kind.value,
            ) from exc
        except httpx.HTTPError as exc:
            raise error_cls(
                f"{label} calendar request failed: {exc}",
                provider=self.kind.value,
            ) from exc

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        token: str,
        write: bool,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
        tolerated_statuses: Iterable[int] = (),
    ) -> dict[str, Any]:
        """Send a request and return its JSON object body.

        Statuses listed in *tolerated_statuses* are treated as success with an
        empty body.  ``204 No Content`` always yields an empty body.
        """
        response = await self._send(
            method,
            url,
            token=token,
            write=write,
            params=params,
            json_body=json_body,
            extra_headers=extra_headers,
        )
        if response.status_code in set(tolerated_statuses) or response.status_code == 204:
            return {}
        self._raise_for_status(response, write=write)

        if not response.content:
            return {}
        error_cls = RemoteWriteError if write else RemoteFetchError
        try:
            payload = response.json()
        except ValueError as exc:
            raise error_cls(
                f"{self.kind.display_name} calendar API returned invalid JSON",
                provider=self.kind.value,
                status_code=response.status_code,
            ) from exc
        if not isinstance(payload, dict):
            raise error_cls(
                f"{self.kind.display_name} calendar API returned a non-object JSON payload",
                provider=self.kind.value,
                status_code=response.status_code,
            )
        return payload

    def _raise_for_status(self, response: httpx.Response, *, write: bool) -> None:
        if 200 <= response.status_code < 300:
            return
        label = self.kind.display_name
        message = (
            f"{label} calendar API request failed "
            f"({response.status_code}): {safe_error_message(response)}"
        )
        if response.status_code == 401:
            auth_cls = RemoteWriteAuthError if write else RemoteAuthError
            raise auth_cls(message, provider=self.kind.value, status_code=401)
        error_cls = RemoteWriteError if write else RemoteFetchError
        raise error_cls(message, provider=self.kind.value, status_code=response.status_code)

    def _parse_items(
        self,
        items: Any,
        result: FetchedEvents,
    ) -> None:
        """Normalise a page of raw items into *result*.

        Items the subclass marks as skippable (``None``) are dropped; items that
        fail to parse are recorded as malformed instead of failing the fetch.
        """
        if items is None:
            return
        if not isinstance(items, list):
            raise RemoteFetchError(
                f"{self.kind.display_name} calendar API returned a non-list items payload",
                provider=self.kind.value,
            )
        for item in items:
            remote_id = item.get("id") if isinstance(item, dict) else None
            try:
                parsed = self._parse_event(item)
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.debug(
                    "Skipping malformed %s event %s: %s", self.kind.value, remote_id, exc
                )
                result.malformed.append(
                    MalformedRemoteEvent(
                        remote_id=remote_id if isinstance(remote_id, str) else None,
                        reason=" ".join(str(exc).split())[:200] or type(exc).__name__,
                    )
                )
                continue
            if parsed is not None:
                result.events.append(parsed)

    @abc.abstractmethod
    def _parse_event(self, item: Any) -> RemoteEvent | None:
        """Convert one raw provider item; ``None`` means "skip silently"."""
        ...


# ---------------------------------------------------------------------------
# Date/time helpers
# ---------------------------------------------------------------------------


def event_boundaries(item: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Return the ``start`` and ``end`` objects of a raw event item."""
    start = item["start"]
    end = item["end"]
    if not isinstance(start, dict) or not isinstance(end, dict):
        raise TypeError("event start/end must be objects")
    return start, end


def rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def coerce_zoneinfo(timezone: str | None) -> tzinfo:
    if not timezone or timezone.upper() == "UTC":
        return UTC
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def parse_datetime(value: str, *, default_tz: tzinfo = UTC) -> datetime:
    """Parse an ISO 8601 timestamp into an aware UTC datetime.

    Accepts a trailing ``Z`` and more than six fractional-second digits (as
    emitted by Microsoft Graph).  Naive values are interpreted in *default_tz*.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Invalid timestamp: {value!r}")
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    normalized = _FRACTION_PATTERN.sub(
        lambda m: "." + m.group(1)[:6].ljust(6, "0"), normalized, count=1
    )
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Invalid timestamp: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=default_tz)
    return parsed.astimezone(UTC)


def parse_date(value: str) -> datetime:
    """Parse a date-only value into UTC midnight of that day."""
    if not isinstance(value, str):
        raise ValueError(f"Invalid date: {value!r}")
    try:
        parsed = date.fromisoformat(value.strip())
    except ValueError as exc:
        raise ValueError(f"Invalid date: {value!r}") from exc
    return datetime(parsed.year, parsed.month, parsed.day, tzinfo=UTC)
