"""Exception hierarchy for calendar synchronisation.

Every failure that can cross a layer boundary (token store, remote client,
adapter) is expressed as a subclass of :class:`CalendarSyncError`.  Transport
exceptions from ``httpx`` and deadline expiry never escape the layer that
produced them; they are wrapped with context instead.
"""

from __future__ import annotations


class CalendarSyncError(Exception):
    """Base class for all calendar sync failures."""


# ---------------------------------------------------------------------------
# Token / auth errors
# ---------------------------------------------------------------------------


class CalendarAuthError(CalendarSyncError):
    """A usable access token could not be produced for a provider."""

    kind = "AuthFailed"

    def __init__(self, message: str, *, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class NoRefreshTokenError(CalendarAuthError):
    """The stored connection is expired and carries no refresh token."""

    kind = "NoRefreshToken"


class InvalidGrantError(CalendarAuthError):
    """The provider rejected the refresh token (``invalid_grant``).

    Permanent: the user must re-authorise the connection.
    """

    kind = "InvalidGrant"


class TokenRefreshError(CalendarAuthError):
    """Transient refresh failure (network, 5xx, malformed response)."""

    kind = "TokenRefreshFailed"


# ---------------------------------------------------------------------------
# Remote calendar errors
# ---------------------------------------------------------------------------


class RemoteCalendarError(CalendarSyncError):
    """A call to a remote calendar API failed."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class RemoteFetchError(RemoteCalendarError):
    """Listing remote events failed; nothing may be inferred from the fetch."""


class RemoteWriteError(RemoteCalendarError):
    """Creating, updating or deleting a remote event failed."""


class RemoteAuthError(RemoteFetchError):
    """The remote API rejected the access token (HTTP 401)."""


class RemoteWriteAuthError(RemoteWriteError):
    """The remote API rejected the access token on a write (HTTP 401)."""
