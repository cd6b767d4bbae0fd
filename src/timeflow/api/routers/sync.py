"""Sync endpoints for runs, status and provider connections.

Provides a single router mounted at ``/api/sync/{user_id}``.  Every handler
goes through the :class:`~timeflow.runtime.SyncRuntime` dependency, which is a
stub until the app's lifespan (or a test) overrides it.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from timeflow.api.models import ApiResponse
from timeflow.api.models.sync import AutoSyncRequest, ConnectionInfo, ConnectRequest, SyncStatus
from timeflow.models import ProviderKind, SyncConfig, SyncManagerResult
from timeflow.runtime import SyncRuntime
from timeflow.sync.manager import SyncManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


def _get_runtime() -> SyncRuntime:
    """Dependency stub -- overridden at app startup or in tests."""
    raise RuntimeError("SyncRuntime not initialized")


def _status(manager: SyncManager) -> SyncStatus:
    return SyncStatus(
        user_id=manager.user_id,
        is_syncing=manager.is_syncing,
        auto_sync_running=manager.auto_sync_running,
        last_sync_at=manager.last_sync_at,
    )


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


@router.post("/{user_id}", response_model=ApiResponse[SyncManagerResult])
async def sync_now(
    user_id: str,
    config: SyncConfig | None = None,
    runtime: SyncRuntime = Depends(_get_runtime),
) -> ApiResponse[SyncManagerResult]:
    """Run a coordinated sync for the user and return its result.

    Without a body, providers follow their connections and ``[sync] parallel``
    picks the execution order.  A run that overlaps one already in progress
    returns ``skipped: true``.
    """
    if config is None:
        config = SyncConfig(parallel=runtime.config.sync.parallel)
    result = await runtime.manager_for(user_id).sync_all(config)
    return ApiResponse[SyncManagerResult](data=result)


@router.get("/{user_id}/status", response_model=ApiResponse[SyncStatus])
async def get_status(
    user_id: str,
    runtime: SyncRuntime = Depends(_get_runtime),
) -> ApiResponse[SyncStatus]:
    return ApiResponse[SyncStatus](data=_status(runtime.manager_for(user_id)))


@router.post("/{user_id}/auto-sync", response_model=ApiResponse[SyncStatus])
async def start_auto_sync(
    user_id: str,
    request: AutoSyncRequest | None = None,
    runtime: SyncRuntime = Depends(_get_runtime),
) -> ApiResponse[SyncStatus]:
    """Start (or restart) periodic syncing for the user."""
    manager = runtime.manager_for(user_id)
    manager.start_auto_sync(request.interval_minutes if request else None)
    return ApiResponse[SyncStatus](data=_status(manager))


@router.delete("/{user_id}/auto-sync", response_model=ApiResponse[SyncStatus])
async def stop_auto_sync(
    user_id: str,
    runtime: SyncRuntime = Depends(_get_runtime),
) -> ApiResponse[SyncStatus]:
    manager = runtime.manager_for(user_id)
    await manager.stop_auto_sync()
    return ApiResponse[SyncStatus](data=_status(manager))


# ---------------------------------------------------------------------------
# Event hooks
# ---------------------------------------------------------------------------


@router.post(
    "/{user_id}/events/{event_id}/changed",
    status_code=202,
    response_model=ApiResponse[dict[str, str]],
)
async def event_changed(
    user_id: str,
    event_id: str,
    runtime: SyncRuntime = Depends(_get_runtime),
) -> ApiResponse[dict[str, str]]:
    """Record a local edit; a debounced sync follows."""
    await runtime.manager_for(user_id).sync_after_event_change(event_id)
    return ApiResponse[dict[str, str]](data={"event_id": event_id, "status": "accepted"})


@router.delete("/{user_id}/events/{event_id}", response_model=ApiResponse[dict[str, str]])
async def delete_event(
    user_id: str,
    event_id: str,
    runtime: SyncRuntime = Depends(_get_runtime),
) -> ApiResponse[dict[str, str]]:
    """Delete a local event, removing its remote copies first where possible."""
    deleted = await runtime.manager_for(user_id).delete_event(event_id)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Event not found: {event_id}")
    return ApiResponse[dict[str, str]](data={"event_id": event_id, "status": "deleted"})


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------


@router.post("/{user_id}/connections/{provider}", response_model=ApiResponse[ConnectionInfo])
async def connect_provider(
    user_id: str,
    provider: ProviderKind,
    request: ConnectRequest,
    runtime: SyncRuntime = Depends(_get_runtime),
) -> ApiResponse[ConnectionInfo]:
    """Complete the OAuth redirect by exchanging the authorization code."""
    if provider not in runtime.adapters:
        raise HTTPException(status_code=404, detail=f"Provider not configured: {provider.value}")
    record = await runtime.tokens.complete_authorization(
        user_id,
        provider,
        code=request.code,
        redirect_uri=request.redirect_uri,
        code_verifier=request.code_verifier,
        account_email=request.account_email,
    )
    info = ConnectionInfo(
        provider=record.provider.value,
        provider_email=record.provider_email,
        token_expires_at=record.token_expires_at,
        is_active=record.is_active,
    )
    return ApiResponse[ConnectionInfo](data=info)


@router.delete("/{user_id}/connections/{provider}", response_model=ApiResponse[dict[str, str]])
async def disconnect_provider(
    user_id: str,
    provider: ProviderKind,
    runtime: SyncRuntime = Depends(_get_runtime),
) -> ApiResponse[dict[str, str]]:
    if not await runtime.tokens.disconnect(user_id, provider):
        raise HTTPException(status_code=404, detail=f"No active {provider.value} connection")
    if not await runtime.providers.list_active(user_id):
        await runtime.release(user_id)
    return ApiResponse[dict[str, str]](data={"provider": provider.value, "status": "disconnected"})
