"""Data model shared by the token provider, remote clients and sync engine."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

UNTITLED_EVENT = "Untitled Event"
DEFAULT_IMPORT_CATEGORY = "other"
DEFAULT_IMPORT_IMPORTANCE = 3
DEFAULT_TOKEN_TTL_SECONDS = 3600


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_TOKEN_TTL_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_TOKEN_TTL_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else DEFAULT_TOKEN_TTL_SECONDS
    return DEFAULT_TOKEN_TTL_SECONDS


class ProviderKind(enum.StrEnum):
    """Supported remote calendar providers."""

    GOOGLE = "google"
    MICROSOFT = "microsoft"

    @property
    def remote_id_field(self) -> str:
        """Column on the local event that stores this provider's event id."""
        return f"{self.value}_event_id"

    @property
    def synced_field(self) -> str:
        """Column on the local event that flags it as in sync with this provider."""
        return f"synced_to_{self.value}"

    @property
    def display_name(self) -> str:
        return "Google" if self is ProviderKind.GOOGLE else "Microsoft"


class SyncDirection(enum.StrEnum):
    TO_LOCAL = "to_local"
    TO_REMOTE = "to_remote"


class SyncMode(enum.StrEnum):
    """Which directions a provider adapter performs."""

    IMPORT_ONLY = "import_only"
    BIDIRECTIONAL = "bidirectional"


# ---------------------------------------------------------------------------
# Stored connection
# ---------------------------------------------------------------------------


class CalendarProviderRecord(BaseModel):
    """A user's connection to one remote calendar provider."""

    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str
    provider: ProviderKind
    provider_email: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("id", "user_id", mode="before")
    @classmethod
    def _stringify_ids(cls, value: Any) -> Any:
        return str(value) if value is not None else value

    def __repr__(self) -> str:
        return (
            f"CalendarProviderRecord("
            f"id={self.id!r}, "
            f"user_id={self.user_id!r}, "
            f"provider={self.provider.value!r}, "
            f"provider_email={self.provider_email!r}, "
            f"access_token={'***' if self.access_token else None!r}, "
            f"refresh_token={'***' if self.refresh_token else None!r}, "
            f"token_expires_at={self.token_expires_at!r}, "
            f"is_active={self.is_active!r})"
        )

    __str__ = __repr__


class TokenGrant(BaseModel):
    """Tokens returned by a provider's token endpoint."""

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_in: int = DEFAULT_TOKEN_TTL_SECONDS
    scope: str | None = None
    token_type: str | None = None

    @field_validator("access_token")
    @classmethod
    def _normalize_access_token(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("access_token must be a non-empty string")
        return normalized

    @field_validator("refresh_token", mode="before")
    @classmethod
    def _normalize_refresh_token(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip() or None
        return value

    @field_validator("expires_in", mode="before")
    @classmethod
    def _coerce_expires_in(cls, value: Any) -> int:
        return coerce_expires_in_seconds(value)

    def __repr__(self) -> str:
        return (
            f"TokenGrant(access_token='***', "
            f"refresh_token={'***' if self.refresh_token else None!r}, "
            f"expires_in={self.expires_in!r}, scope={self.scope!r})"
        )

    __str__ = __repr__


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class LocalEvent(BaseModel):
    """An event row in the local calendar store."""

    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str
    title: str
    description: str | None = None
    start_time: datetime
    end_time: datetime
    all_day: bool = False
    location: str | None = None
    category: str = DEFAULT_IMPORT_CATEGORY
    importance: int = DEFAULT_IMPORT_IMPORTANCE
    google_event_id: str | None = None
    microsoft_event_id: str | None = None
    google_calendar_id: str | None = None
    synced_to_google: bool = False
    synced_to_microsoft: bool = False
    created_at: datetime | None = None
    updated_at: datetime

    @field_validator("id", "user_id", mode="before")
    @classmethod
    def _stringify_ids(cls, value: Any) -> Any:
        return str(value) if value is not None else value

    def remote_id(self, kind: ProviderKind) -> str | None:
        return getattr(self, kind.remote_id_field)

    def is_synced(self, kind: ProviderKind) -> bool:
        return bool(getattr(self, kind.synced_field))


class RemoteEvent(BaseModel):
    """Normalised view of one event as reported by a remote provider."""

    model_config = ConfigDict(extra="forbid")

    remote_id: str = Field(min_length=1)
    title: str = UNTITLED_EVENT
    description: str | None = None
    start: datetime
    end: datetime
    all_day: bool = False
    location: str | None = None
    updated_at: datetime

    @field_validator("title", mode="before")
    @classmethod
    def _default_title(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return UNTITLED_EVENT
        return value

    @field_validator("start", "end", "updated_at")
    @classmethod
    def _normalize_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class MalformedRemoteEvent(BaseModel):
    """A remote item that could not be normalised into a :class:`RemoteEvent`."""

    model_config = ConfigDict(frozen=True)

    remote_id: str | None = None
    reason: str


class FetchedEvents(BaseModel):
    """Result of one remote listing: usable events plus unparseable items."""

    events: list[RemoteEvent] = Field(default_factory=list)
    malformed: list[MalformedRemoteEvent] = Field(default_factory=list)


class NewLocalEvent(BaseModel):
    """Insert payload for a local event imported from a provider."""

    model_config = ConfigDict(extra="forbid")

    user_id: str
    title: str
    description: str | None = None
    start_time: datetime
    end_time: datetime
    all_day: bool = False
    location: str | None = None
    category: str = DEFAULT_IMPORT_CATEGORY
    importance: int = DEFAULT_IMPORT_IMPORTANCE
    google_event_id: str | None = None
    microsoft_event_id: str | None = None
    google_calendar_id: str | None = None
    synced_to_google: bool = False
    synced_to_microsoft: bool = False

    @classmethod
    def from_remote(
        cls,
        *,
        user_id: str,
        kind: ProviderKind,
        remote: RemoteEvent,
        calendar_id: str | None = None,
    ) -> NewLocalEvent:
        """Build an insert payload linked to *remote* and flagged as synced."""
        linkage: dict[str, Any] = {
            kind.remote_id_field: remote.remote_id,
            kind.synced_field: True,
        }
        if kind is ProviderKind.GOOGLE:
            linkage["google_calendar_id"] = calendar_id
        return cls(
            user_id=user_id,
            title=remote.title,
            description=remote.description,
            start_time=remote.start,
            end_time=remote.end,
            all_day=remote.all_day,
            location=remote.location,
            **linkage,
        )


class EventChanges(BaseModel):
    """Fields copied from a remote event onto an existing local event."""

    model_config = ConfigDict(extra="forbid")

    title: str
    description: str | None = None
    start_time: datetime
    end_time: datetime
    all_day: bool = False
    location: str | None = None

    @classmethod
    def from_remote(cls, remote: RemoteEvent) -> EventChanges:
        return cls(
            title=remote.title,
            description=remote.description,
            start_time=remote.start,
            end_time=remote.end,
            all_day=remote.all_day,
            location=remote.location,
        )


class OutgoingEvent(BaseModel):
    """Payload pushed to a remote provider when exporting a local event."""

    model_config = ConfigDict(extra="forbid")

    title: str
    description: str | None = None
    start: datetime
    end: datetime
    all_day: bool = False
    location: str | None = None

    @classmethod
    def from_local(cls, event: LocalEvent) -> OutgoingEvent:
        return cls(
            title=event.title,
            description=event.description,
            start=ensure_utc(event.start_time),
            end=ensure_utc(event.end_time),
            all_day=event.all_day,
            location=event.location,
        )


# ---------------------------------------------------------------------------
# Sync results
# ---------------------------------------------------------------------------


class SyncResult(BaseModel):
    """Outcome of one direction of one provider sync."""

    model_config = ConfigDict(frozen=True)

    provider: ProviderKind
    direction: SyncDirection
    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: tuple[str, ...] = ()
    completed_at: datetime = Field(default_factory=utcnow)

    @property
    def success(self) -> bool:
        return not self.errors

    @classmethod
    def empty(cls, provider: ProviderKind, direction: SyncDirection) -> SyncResult:
        return cls(provider=provider, direction=direction)

    @classmethod
    def failed(cls, provider: ProviderKind, direction: SyncDirection, error: str) -> SyncResult:
        return cls(provider=provider, direction=direction, errors=(error,))


@dataclass
class SyncResultBuilder:
    """Mutable tally used while an adapter run is in progress."""

    provider: ProviderKind
    direction: SyncDirection
    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: list[str] = field(default_factory=list)

    def build(self, completed_at: datetime | None = None) -> SyncResult:
        return SyncResult(
            provider=self.provider,
            direction=self.direction,
            created=self.created,
            updated=self.updated,
            deleted=self.deleted,
            errors=tuple(self.errors),
            completed_at=completed_at or utcnow(),
        )


class ProviderSyncReport(BaseModel):
    """Both directions of one provider's sync."""

    model_config = ConfigDict(frozen=True)

    provider: ProviderKind
    to_local: SyncResult
    to_remote: SyncResult
    success: bool

    @classmethod
    def from_results(cls, to_local: SyncResult, to_remote: SyncResult) -> ProviderSyncReport:
        return cls(
            provider=to_local.provider,
            to_local=to_local,
            to_remote=to_remote,
            success=to_local.success and to_remote.success,
        )

    @classmethod
    def crashed(cls, provider: ProviderKind, message: str) -> ProviderSyncReport:
        """Report for a provider whose run raised instead of returning."""
        return cls(
            provider=provider,
            to_local=SyncResult.failed(provider, SyncDirection.TO_LOCAL, message),
            to_remote=SyncResult.empty(provider, SyncDirection.TO_REMOTE),
            success=False,
        )


class SyncConfig(BaseModel):
    """Options for one coordinated sync run.

    ``None`` for a provider flag means "sync it if the user has an active
    connection".
    """

    model_config = ConfigDict(extra="forbid")

    sync_google: bool | None = None
    sync_microsoft: bool | None = None
    parallel: bool = False

    def requested(self, kind: ProviderKind) -> bool | None:
        return self.sync_google if kind is ProviderKind.GOOGLE else self.sync_microsoft


class SyncManagerResult(BaseModel):
    """Outcome of a coordinated run across providers."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    providers: dict[ProviderKind, ProviderSyncReport] = Field(default_factory=dict)
    overall_success: bool = True
    skipped: bool = False
    errors: tuple[str, ...] = ()
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def google(self) -> ProviderSyncReport | None:
        return self.providers.get(ProviderKind.GOOGLE)

    @property
    def microsoft(self) -> ProviderSyncReport | None:
        return self.providers.get(ProviderKind.MICROSOFT)
