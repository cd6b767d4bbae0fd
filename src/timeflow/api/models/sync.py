"""Request/response models for the sync endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class SyncStatus(BaseModel):
    """Live state of a user's sync manager."""

    user_id: str
    is_syncing: bool
    auto_sync_running: bool
    last_sync_at: datetime | None = None


class AutoSyncRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    interval_minutes: float | None = Field(default=None, gt=0)


class ConnectRequest(BaseModel):
    """Authorization code returned to the OAuth redirect."""

    model_config = ConfigDict(extra="forbid")

    code: str = Field(min_length=1)
    redirect_uri: str = Field(min_length=1)
    code_verifier: str | None = None
    account_email: str | None = None


class ConnectionInfo(BaseModel):
    provider: str
    provider_email: str | None = None
    token_expires_at: datetime | None = None
    is_active: bool
