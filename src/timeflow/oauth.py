"""OAuth token endpoints and the per-user token provider.

:class:`TokenProvider` is the only component that reads or writes stored
provider credentials.  It hands out an access token that is valid for at least
:data:`REFRESH_BUFFER` and refreshes it through the provider's token endpoint
when it is not, persisting the new tokens before returning them.

Refresh failures are classified:

- ``invalid_grant`` from the provider is permanent.  The connection is
  deactivated and :class:`~timeflow.errors.InvalidGrantError` is raised.
- Anything else (network, timeout, 5xx, malformed body) is transient.
  :class:`~timeflow.errors.TokenRefreshError` is raised and the stored row is
  left untouched.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta

import httpx
from pydantic import ValidationError

from timeflow.core.http import oauth_error_code, safe_error_message
from timeflow.errors import InvalidGrantError, NoRefreshTokenError, TokenRefreshError
from timeflow.models import CalendarProviderRecord, ProviderKind, TokenGrant, utcnow
from timeflow.store import ProviderRepository

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
MICROSOFT_OAUTH_TOKEN_URL_TEMPLATE = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
MICROSOFT_DEFAULT_TENANT = "common"
MICROSOFT_CALENDAR_SCOPES = "Calendars.ReadWrite offline_access User.Read"

REFRESH_BUFFER = timedelta(minutes=5)
DEFAULT_TOKEN_TIMEOUT_S = 30.0


# ---------------------------------------------------------------------------
# Token endpoint clients
# ---------------------------------------------------------------------------


class OAuthClient(abc.ABC):
    """Talks to one provider's OAuth 2.0 token endpoint."""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str | None,
        http_client: httpx.AsyncClient,
        timeout_s: float = DEFAULT_TOKEN_TIMEOUT_S,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._http_client = http_client
        self._timeout_s = timeout_s

    @property
    @abc.abstractmethod
    def kind(self) -> ProviderKind: ...

    @property
    @abc.abstractmethod
    def token_url(self) -> str: ...

    @abc.abstractmethod
    def _refresh_form(self, refresh_token: str) -> dict[str, str]: ...

    @abc.abstractmethod
    def _authorization_code_form(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: str | None,
    ) -> dict[str, str]: ...

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a new access token."""
        return await self._request_token(self._refresh_form(refresh_token), action="refresh")

    async def exchange_authorization_code(
        self,
        code: str,
        *,
        redirect_uri: str,
        code_verifier: str | None = None,
    ) -> TokenGrant:
        """Exchange an authorization code from the consent redirect for tokens."""
        form = self._authorization_code_form(code, redirect_uri, code_verifier)
        return await self._request_token(form, action="code exchange")

    async def _request_token(self, form: dict[str, str], *, action: str) -> TokenGrant:
        label = self.kind.display_name
        try:
            response = await asyncio.wait_for(
                self._http_client.post(
                    self.token_url,
                    data=form,
                    headers={"Accept": "application/json"},
                ),
                timeout=self._timeout_s,
            )
        except TimeoutError as exc:
            raise TokenRefreshError(
                f"{label} OAuth token {action} timed out after {self._timeout_s:g}s",
                provider=self.kind.value,
            ) from exc
        except httpx.HTTPError as exc:
            raise TokenRefreshError(
                f"{label} OAuth token {action} request failed: {exc}",
                provider=self.kind.value,
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            message = (
                f"{label} OAuth token {action} failed "
                f"({response.status_code}): {safe_error_message(response)}"
            )
            if oauth_error_code(response) == "invalid_grant":
                raise InvalidGrantError(message, provider=self.kind.value)
            raise TokenRefreshError(message, provider=self.kind.value)

        try:
            payload = response.json()
        except ValueError as exc:
            raise TokenRefreshError(
                f"{label} OAuth token endpoint returned invalid JSON",
                provider=self.kind.value,
            ) from exc

        if not isinstance(payload, dict):
            raise TokenRefreshError(
                f"{label} OAuth token response is not a JSON object",
                provider=self.kind.value,
            )

        try:
            return TokenGrant.model_validate(payload)
        except ValidationError as exc:
            raise TokenRefreshError(
                f"{label} OAuth token response is missing a non-empty access_token",
                provider=self.kind.value,
            ) from exc


class GoogleOAuthClient(OAuthClient):
    """Google OAuth 2.0 token endpoint."""

    @property
    def kind(self) -> ProviderKind:
        return ProviderKind.GOOGLE

    @property
    def token_url(self) -> str:
        return GOOGLE_OAUTH_TOKEN_URL

    def _refresh_form(self, refresh_token: str) -> dict[str, str]:
        return {
            "client_id": self._client_id,
            "client_secret": self._client_secret or "",
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }

    def _authorization_code_form(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: str | None,
    ) -> dict[str, str]:
        form = {
            "client_id": self._client_id,
            "client_secret": self._client_secret or "",
            "code": code,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        }
        if code_verifier:
            form["code_verifier"] = code_verifier
        return form


class MicrosoftOAuthClient(OAuthClient):
    """Microsoft identity platform (v2.0) token endpoint.

    ``client_secret`` is optional: public clients using PKCE omit it.
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str | None,
        http_client: httpx.AsyncClient,
        tenant: str = MICROSOFT_DEFAULT_TENANT,
        timeout_s: float = DEFAULT_TOKEN_TIMEOUT_S,
    ) -> None:
        super().__init__(
            client_id=client_id,
            client_secret=client_secret,
            http_client=http_client,
            timeout_s=timeout_s,
        )
        self._tenant = tenant

    @property
    def kind(self) -> ProviderKind:
        return ProviderKind.MICROSOFT

    @property
    def token_url(self) -> str:
        return MICROSOFT_OAUTH_TOKEN_URL_TEMPLATE.format(tenant=self._tenant)

    def _with_secret(self, form: dict[str, str]) -> dict[str, str]:
        if self._client_secret:
            form["client_secret"] = self._client_secret
        return form

    def _refresh_form(self, refresh_token: str) -> dict[str, str]:
        return self._with_secret(
            {
                "client_id": self._client_id,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
                "scope": MICROSOFT_CALENDAR_SCOPES,
            }
        )

    def _authorization_code_form(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: str | None,
    ) -> dict[str, str]:
        form = {
            "client_id": self._client_id,
            "code": code,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
            "scope": MICROSOFT_CALENDAR_SCOPES,
        }
        if code_verifier:
            form["code_verifier"] = code_verifier
        return self._with_secret(form)


# ---------------------------------------------------------------------------
# TokenProvider
# ---------------------------------------------------------------------------


class TokenProvider:
    """Hands out valid access tokens for (user, provider) pairs.

    Parameters
    ----------
    providers:
        Repository holding the stored connections.
    oauth_clients:
        Token endpoint client per provider kind.  A kind without a client can
        still serve unexpired stored tokens but cannot refresh them.
    refresh_buffer:
        A stored token is reused only while it stays valid for longer than
        this.
    clock:
        Returns the current aware UTC time; injectable for tests.
    """

    def __init__(
        self,
        providers: ProviderRepository,
        oauth_clients: Mapping[ProviderKind, OAuthClient],
        *,
        refresh_buffer: timedelta = REFRESH_BUFFER,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._providers = providers
        self._oauth_clients = dict(oauth_clients)
        self._refresh_buffer = refresh_buffer
        self._clock = clock
        self._refresh_locks: dict[tuple[str, ProviderKind], asyncio.Lock] = {}

    def _is_fresh(self, record: CalendarProviderRecord) -> bool:
        if not record.access_token or record.token_expires_at is None:
            return False
        return record.token_expires_at > self._clock() + self._refresh_buffer

    def _lock_for(self, user_id: str, kind: ProviderKind) -> asyncio.Lock:
        key = (user_id, kind)
        lock = self._refresh_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._refresh_locks[key] = lock
        return lock

    async def get_valid_token(self, user_id: str, kind: ProviderKind) -> str | None:
        """Return an access token usable for at least the refresh buffer.

        Returns ``None`` when the user has no active connection for *kind*
        (or the connection has no access token at all).

        Raises
        ------
        NoRefreshTokenError
            The stored token is stale and no refresh token is available.  No
            network call is made.
        InvalidGrantError
            The provider rejected the refresh token; the connection has been
            deactivated.
        TokenRefreshError
            Transient refresh failure; the stored connection is unchanged.
        """
        record = await self._providers.get_active(user_id, kind)
        if record is None or not record.access_token:
            return None
        if self._is_fresh(record):
            return record.access_token

        async with self._lock_for(user_id, kind):
            # Another caller may have refreshed while we waited.
            record = await self._providers.get_active(user_id, kind)
            if record is None or not record.access_token:
                return None
            if self._is_fresh(record):
                return record.access_token
            return await self._refresh(record)

    async def _refresh(self, record: CalendarProviderRecord) -> str:
        kind = record.provider
        if not record.refresh_token:
            logger.warning(
                "No refresh token stored for %s connection %s; re-authorisation required",
                kind.value,
                record.id,
            )
            raise NoRefreshTokenError(
                f"{kind.display_name} connection has no refresh token; reconnect required",
                provider=kind.value,
            )

        oauth_client = self._oauth_clients.get(kind)
        if oauth_client is None:
            raise TokenRefreshError(
                f"No OAuth client configured for {kind.value}",
                provider=kind.value,
            )

        try:
            grant = await oauth_client.refresh(record.refresh_token)
        except InvalidGrantError:
            logger.warning(
                "%s rejected refresh token for connection %s; deactivating",
                kind.display_name,
                record.id,
            )
            await self._providers.deactivate(record.id)
            raise

        expires_at = self._clock() + timedelta(seconds=grant.expires_in)
        await self._providers.update_tokens(
            record.id,
            access_token=grant.access_token,
            expires_at=expires_at,
            refresh_token=grant.refresh_token,
        )
        logger.info(
            "Refreshed %s access token for user %s (expires_at=%s, rotated=%s)",
            kind.value,
            record.user_id,
            expires_at.isoformat(),
            grant.refresh_token is not None,
        )
        return grant.access_token

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(
        self,
        user_id: str,
        kind: ProviderKind,
        grant: TokenGrant,
        *,
        account_email: str | None = None,
    ) -> CalendarProviderRecord:
        """Store a freshly granted connection as the active one for (user, kind)."""
        return await self._providers.upsert_connection(
            user_id,
            kind,
            provider_email=account_email,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=self._clock() + timedelta(seconds=grant.expires_in),
        )

    async def complete_authorization(
        self,
        user_id: str,
        kind: ProviderKind,
        *,
        code: str,
        redirect_uri: str,
        code_verifier: str | None = None,
        account_email: str | None = None,
    ) -> CalendarProviderRecord:
        """Exchange an authorization code and store the resulting connection."""
        oauth_client = self._oauth_clients.get(kind)
        if oauth_client is None:
            raise TokenRefreshError(
                f"No OAuth client configured for {kind.value}",
                provider=kind.value,
            )
        grant = await oauth_client.exchange_authorization_code(
            code,
            redirect_uri=redirect_uri,
            code_verifier=code_verifier,
        )
        return await self.connect(user_id, kind, grant, account_email=account_email)

    async def disconnect(self, user_id: str, kind: ProviderKind) -> bool:
        """Soft-delete the active connection.  Returns False if none existed."""
        record = await self._providers.get_active(user_id, kind)
        if record is None:
            return False
        await self._providers.deactivate(record.id)
        return True

    async def is_connected(self, user_id: str, kind: ProviderKind) -> bool:
        return await self._providers.get_active(user_id, kind) is not None

