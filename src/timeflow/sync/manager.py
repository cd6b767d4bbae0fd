"""Coordinates sync runs across a user's connected providers.

A :class:`SyncManager` is bound to one user and owned by the composition root
(see :mod:`timeflow.runtime`).  It guarantees at most one coordinated run at a
time: a call to :meth:`SyncManager.sync_all` that arrives while another run is
in flight returns immediately with ``skipped=True``.

Background behaviour:

- :meth:`start_auto_sync` runs a sync immediately and then every interval until
  :meth:`stop_auto_sync` (starting it again replaces the previous timer).
- :meth:`sync_after_event_change` flags an edited event for re-sync and
  schedules a parallel run after a short debounce; further edits inside the
  debounce window restart the timer so a burst collapses into one run.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import datetime

from opentelemetry import trace

from timeflow.core.http import sanitize_error
from timeflow.core.logging import provider_context, set_user_context
from timeflow.models import (
    ProviderKind,
    ProviderSyncReport,
    SyncConfig,
    SyncManagerResult,
    utcnow,
)
from timeflow.store import EventRepository, ProviderRepository
from timeflow.sync.adapter import ProviderSyncAdapter

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("timeflow")

DEFAULT_AUTO_SYNC_INTERVAL_MINUTES = 5
DEFAULT_DEBOUNCE_SECONDS = 1.0

SyncListener = Callable[[SyncManagerResult], None]


class SyncManager:
    """Single-flight sync coordinator for one user.

    Parameters
    ----------
    user_id:
        The user whose calendars this manager synchronises.
    adapters:
        Adapter per provider kind.  Kinds without an adapter are never synced.
    providers:
        Connection repository, used to discover which providers are active.
    events:
        Event repository, used to flag edited events for re-sync.
    debounce_seconds:
        Delay between the last :meth:`sync_after_event_change` call and the
        sync it triggers.
    default_interval_minutes:
        Interval used by :meth:`start_auto_sync` when none is given.
    """

    def __init__(
        self,
        user_id: str,
        adapters: Mapping[ProviderKind, ProviderSyncAdapter],
        providers: ProviderRepository,
        events: EventRepository,
        *,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        default_interval_minutes: float = DEFAULT_AUTO_SYNC_INTERVAL_MINUTES,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.user_id = user_id
        self._adapters = dict(adapters)
        self._providers = providers
        self._events = events
        self._debounce_seconds = debounce_seconds
        self._default_interval_minutes = default_interval_minutes
        self._clock = clock

        self._is_syncing = False
        self._last_sync_at: datetime | None = None
        self._auto_sync_task: asyncio.Task | None = None
        self._auto_sync_stop: asyncio.Event | None = None
        self._debounce_handle: asyncio.TimerHandle | None = None
        self._background: set[asyncio.Task] = set()
        self._listeners: list[SyncListener] = []

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing

    @property
    def last_sync_at(self) -> datetime | None:
        return self._last_sync_at

    @property
    def auto_sync_running(self) -> bool:
        return self._auto_sync_task is not None and not self._auto_sync_task.done()

    @property
    def debounce_pending(self) -> bool:
        return self._debounce_handle is not None

    # ------------------------------------------------------------------
    # Coordinated run
    # ------------------------------------------------------------------

    async def sync_all(self, config: SyncConfig | None = None) -> SyncManagerResult:
        """Sync every selected provider and return the aggregate result.

        Never raises for provider or store failures; they are reported in the
        result instead.
        """
        if self._is_syncing:
            logger.info("Sync already in progress for user %s; skipping", self.user_id)
            return SyncManagerResult(user_id=self.user_id, skipped=True, timestamp=self._clock())

        config = config or SyncConfig()
        self._is_syncing = True
        set_user_context(self.user_id)
        try:
            with tracer.start_as_current_span("timeflow.sync.all") as span:
                span.set_attribute("user_id", self.user_id)
                span.set_attribute("parallel", config.parallel)
                result = await self._run(config)
                span.set_attribute("overall_success", result.overall_success)
            self._last_sync_at = result.timestamp
            self._notify(result)
            return result
        finally:
            self._is_syncing = False

    async def _run(self, config: SyncConfig) -> SyncManagerResult:
        try:
            kinds = await self._select_providers(config)
        except Exception as exc:
            logger.error(
                "Could not load calendar connections for user %s", self.user_id, exc_info=True
            )
            return SyncManagerResult(
                user_id=self.user_id,
                overall_success=False,
                errors=(f"Sync failed: {sanitize_error(exc)}",),
                timestamp=self._clock(),
            )

        if config.parallel:
            reports = await asyncio.gather(*(self._run_provider(kind) for kind in kinds))
        else:
            reports = [await self._run_provider(kind) for kind in kinds]

        by_kind = {report.provider: report for report in reports}
        result = SyncManagerResult(
            user_id=self.user_id,
            providers=by_kind,
            overall_success=all(report.success for report in reports),
            timestamp=self._clock(),
        )
        logger.info(
            "Sync finished for user %s: providers=%s overall_success=%s",
            self.user_id,
            ",".join(kind.value for kind in by_kind) or "-",
            result.overall_success,
        )
        return result

    async def _select_providers(self, config: SyncConfig) -> list[ProviderKind]:
        needs_lookup = any(
            config.requested(kind) is None for kind in ProviderKind if kind in self._adapters
        )
        active: set[ProviderKind] = set()
        if needs_lookup:
            active = {record.provider for record in await self._providers.list_active(self.user_id)}

        selected: list[ProviderKind] = []
        for kind in ProviderKind:
            if kind not in self._adapters:
                continue
            requested = config.requested(kind)
            if requested is True or (requested is None and kind in active):
                selected.append(kind)
        return selected

    async def _run_provider(self, kind: ProviderKind) -> ProviderSyncReport:
        adapter = self._adapters[kind]
        with (
            provider_context(kind.value),
            tracer.start_as_current_span("timeflow.sync.provider") as span,
        ):
            span.set_attribute("provider", kind.value)
            try:
                report = await adapter.run(self.user_id)
            except Exception as exc:
                logger.error(
                    "%s sync crashed for user %s", kind.value, self.user_id, exc_info=True
                )
                report = ProviderSyncReport.crashed(kind, f"Sync failed: {sanitize_error(exc)}")
            span.set_attribute("success", report.success)
            return report

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on_sync_complete(self, listener: SyncListener) -> Callable[[], None]:
        """Register *listener* for completed runs; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, result: SyncManagerResult) -> None:
        for listener in list(self._listeners):
            try:
                listener(result)
            except Exception:
                logger.exception("Sync completion listener %r failed", listener)

    # ------------------------------------------------------------------
    # Auto sync
    # ------------------------------------------------------------------

    def start_auto_sync(self, interval_minutes: float | None = None) -> None:
        """Start (or restart) periodic sequential syncs, beginning immediately."""
        minutes = self._default_interval_minutes if interval_minutes is None else interval_minutes
        if minutes <= 0:
            raise ValueError("interval_minutes must be positive")
        if self._auto_sync_task is not None and self._auto_sync_stop is not None:
            # The replaced loop finishes any run in progress, then exits.
            self._auto_sync_stop.set()
            self._track(self._auto_sync_task)
        self._auto_sync_stop = asyncio.Event()
        self._auto_sync_task = asyncio.create_task(
            self._auto_sync_loop(minutes * 60, self._auto_sync_stop)
        )
        logger.info("Auto sync started for user %s (every %g min)", self.user_id, minutes)

    async def stop_auto_sync(self) -> None:
        """Stop the periodic timer.

        A run already in progress completes first, so its listeners are still
        notified and ``last_sync_at`` is still updated.
        """
        task, self._auto_sync_task = self._auto_sync_task, None
        if task is None or self._auto_sync_stop is None:
            return
        self._auto_sync_stop.set()
        await task
        logger.info("Auto sync stopped for user %s", self.user_id)

    async def _auto_sync_loop(self, interval_seconds: float, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await self.sync_all(SyncConfig(parallel=False))
            except Exception as exc:
                logger.error("Auto sync error for user %s: %s", self.user_id, exc, exc_info=True)
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
            except TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Post-edit sync
    # ------------------------------------------------------------------

    async def sync_after_event_change(self, event_id: str) -> None:
        """Flag *event_id* for re-sync and schedule a debounced parallel run.

        Does nothing while a run is in progress.  Failures are logged, never
        raised, so callers on the edit path are not affected.
        """
        if self._is_syncing:
            logger.debug("Sync in progress; ignoring change to event %s", event_id)
            return
        try:
            found = await self._events.mark_needs_sync(event_id)
        except Exception:
            logger.warning("Failed to flag event %s for re-sync", event_id, exc_info=True)
            return
        if not found:
            logger.debug("Changed event %s no longer exists; nothing to sync", event_id)
            return
        self._schedule_debounced_sync()

    def _schedule_debounced_sync(self) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        loop = asyncio.get_running_loop()
        self._debounce_handle = loop.call_later(self._debounce_seconds, self._fire_debounced_sync)

    def _fire_debounced_sync(self) -> None:
        self._debounce_handle = None
        self._track(asyncio.create_task(self._debounced_sync()))

    def _track(self, task: asyncio.Task) -> None:
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _debounced_sync(self) -> None:
        try:
            await self.sync_all(SyncConfig(parallel=True))
        except Exception:
            logger.error("Post-edit sync failed for user %s", self.user_id, exc_info=True)

    async def wait_for_background(self) -> None:
        """Wait for started debounced runs and replaced auto-sync loops."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    async def delete_event(self, event_id: str) -> bool:
        """Delete a local event after best-effort deletion of its remote copies.

        Returns False when the event does not exist.
        """
        event = await self._events.get(event_id)
        if event is None:
            return False
        for kind, adapter in self._adapters.items():
            if event.remote_id(kind):
                await adapter.delete_remote_copy(self.user_id, event)
        return await self._events.delete(event_id)

    # ------------------------------------------------------------------

    async def aclose(self) -> None:
        """Stop background work owned by this manager."""
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        await self.stop_auto_sync()
        for task in list(self._background):
            task.cancel()
        await self.wait_for_background()
