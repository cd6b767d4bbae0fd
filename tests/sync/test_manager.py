"""Tests for SyncManager: single flight, provider selection, background runs."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from timeflow.models import (
    LocalEvent,
    ProviderKind,
    ProviderSyncReport,
    SyncConfig,
    SyncDirection,
    SyncManagerResult,
    SyncResult,
)
from timeflow.sync import SyncManager
from timeflow.testing import FakeClock, InMemoryEventRepository, InMemoryProviderRepository

pytestmark = pytest.mark.unit

USER = "user-1"
GOOGLE = ProviderKind.GOOGLE
MICROSOFT = ProviderKind.MICROSOFT


class StubAdapter:
    """Adapter double whose run can be gated, failed or made to report errors."""

    def __init__(self, kind: ProviderKind) -> None:
        self.kind = kind
        self.runs = 0
        self.started = asyncio.Event()
        self.gate: asyncio.Event | None = None
        self.error: Exception | None = None
        self.result_errors: tuple[str, ...] = ()
        self.deleted: list[str] = []
        self.delete_result = True

    async def run(self, user_id: str) -> ProviderSyncReport:
        self.runs += 1
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        to_local = SyncResult(
            provider=self.kind,
            direction=SyncDirection.TO_LOCAL,
            created=1,
            errors=self.result_errors,
        )
        return ProviderSyncReport.from_results(
            to_local, SyncResult.empty(self.kind, SyncDirection.TO_REMOTE)
        )

    async def delete_remote_copy(self, user_id: str, event: LocalEvent) -> bool:
        self.deleted.append(event.id)
        return self.delete_result


async def _until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout=timeout)


class Env:
    def __init__(self) -> None:
        self.clock = FakeClock()
        self.providers = InMemoryProviderRepository(self.clock)
        self.events = InMemoryEventRepository(self.clock)
        self.google = StubAdapter(GOOGLE)
        self.microsoft = StubAdapter(MICROSOFT)
        self.manager = SyncManager(
            USER,
            {GOOGLE: self.google, MICROSOFT: self.microsoft},
            self.providers,
            self.events,
            debounce_seconds=0.02,
            clock=self.clock,
        )

    def connect(self, *kinds: ProviderKind) -> None:
        for kind in kinds:
            self.providers.add(USER, kind)


@pytest.fixture
async def env():
    environment = Env()
    yield environment
    await environment.manager.aclose()


# ---------------------------------------------------------------------------
# Provider selection
# ---------------------------------------------------------------------------


class TestProviderSelection:
    async def test_no_connections_is_an_empty_success(self, env: Env):
        result = await env.manager.sync_all()

        assert result.providers == {}
        assert result.overall_success is True
        assert result.skipped is False
        assert (env.google.runs, env.microsoft.runs) == (0, 0)

    async def test_only_active_providers_are_synced(self, env: Env):
        env.connect(GOOGLE)
        env.providers.add(USER, MICROSOFT, is_active=False)

        result = await env.manager.sync_all()

        assert list(result.providers) == [GOOGLE]
        assert (env.google.runs, env.microsoft.runs) == (1, 0)

    async def test_explicit_flags_override_connection_state(self, env: Env):
        env.connect(GOOGLE)

        result = await env.manager.sync_all(SyncConfig(sync_google=False, sync_microsoft=True))

        assert list(result.providers) == [MICROSOFT]
        assert (env.google.runs, env.microsoft.runs) == (0, 1)

    async def test_explicit_flags_skip_connection_lookup(self, env: Env):
        env.providers.list_active_error = RuntimeError("store unavailable")

        result = await env.manager.sync_all(SyncConfig(sync_google=True, sync_microsoft=False))

        assert result.overall_success is True
        assert env.google.runs == 1

    async def test_kind_without_adapter_is_never_synced(self):
        clock = FakeClock()
        providers = InMemoryProviderRepository(clock)
        providers.add(USER, GOOGLE)
        providers.add(USER, MICROSOFT)
        google = StubAdapter(GOOGLE)
        manager = SyncManager(USER, {GOOGLE: google}, providers, InMemoryEventRepository(clock))

        result = await manager.sync_all(SyncConfig(sync_microsoft=True))

        assert list(result.providers) == [GOOGLE]


# ---------------------------------------------------------------------------
# Coordinated runs
# ---------------------------------------------------------------------------


class TestSyncAll:
    async def test_aggregates_provider_reports(self, env: Env):
        env.connect(GOOGLE, MICROSOFT)

        result = await env.manager.sync_all()

        assert result.user_id == USER
        assert result.google.to_local.created == 1
        assert result.microsoft.to_local.created == 1
        assert result.overall_success is True
        assert result.timestamp == env.clock()
        assert env.manager.last_sync_at == env.clock()
        assert env.manager.is_syncing is False

    async def test_provider_errors_fail_overall(self, env: Env):
        env.connect(GOOGLE, MICROSOFT)
        env.microsoft.result_errors = ("RemoteFetchFailed: 503",)

        result = await env.manager.sync_all()

        assert result.google.success is True
        assert result.microsoft.success is False
        assert result.overall_success is False

    async def test_provider_crash_is_isolated(self, env: Env):
        env.connect(GOOGLE, MICROSOFT)
        env.google.error = RuntimeError("kaboom")

        result = await env.manager.sync_all(SyncConfig(parallel=True))

        assert result.google.success is False
        assert result.google.to_local.errors == ("Sync failed: kaboom",)
        assert result.microsoft.success is True
        assert result.overall_success is False

    async def test_store_failure_is_reported_and_flag_cleared(self, env: Env):
        env.providers.list_active_error = RuntimeError("connection reset")

        first = await env.manager.sync_all()

        assert first.overall_success is False
        assert first.errors == ("Sync failed: connection reset",)
        assert env.manager.is_syncing is False

        env.providers.list_active_error = None
        second = await env.manager.sync_all()
        assert second.skipped is False
        assert second.overall_success is True

    async def test_overlapping_call_is_skipped(self, env: Env):
        env.connect(GOOGLE)
        env.google.gate = asyncio.Event()

        first = asyncio.create_task(env.manager.sync_all())
        await asyncio.wait_for(env.google.started.wait(), timeout=1)
        assert env.manager.is_syncing is True

        skipped = await env.manager.sync_all()

        assert skipped.skipped is True
        assert skipped.overall_success is True
        assert skipped.providers == {}

        env.google.gate.set()
        result = await first
        assert result.skipped is False
        assert env.google.runs == 1

    async def test_parallel_runs_providers_concurrently(self, env: Env):
        env.connect(GOOGLE, MICROSOFT)
        gate = asyncio.Event()
        env.google.gate = gate
        env.microsoft.gate = gate

        task = asyncio.create_task(env.manager.sync_all(SyncConfig(parallel=True)))
        await asyncio.wait_for(env.google.started.wait(), timeout=1)
        await asyncio.wait_for(env.microsoft.started.wait(), timeout=1)
        gate.set()

        result = await task
        assert result.overall_success is True

    async def test_sequential_runs_providers_in_order(self, env: Env):
        env.connect(GOOGLE, MICROSOFT)
        env.google.gate = asyncio.Event()

        task = asyncio.create_task(env.manager.sync_all(SyncConfig(parallel=False)))
        await asyncio.wait_for(env.google.started.wait(), timeout=1)
        await asyncio.sleep(0.01)
        assert not env.microsoft.started.is_set()

        env.google.gate.set()
        result = await task
        assert list(result.providers) == [GOOGLE, MICROSOFT]
        assert env.microsoft.runs == 1


# ---------------------------------------------------------------------------
# Listeners
# ---------------------------------------------------------------------------


class TestListeners:
    async def test_listener_receives_results_until_unsubscribed(self, env: Env):
        received: list[SyncManagerResult] = []
        unsubscribe = env.manager.on_sync_complete(received.append)

        await env.manager.sync_all()
        unsubscribe()
        await env.manager.sync_all()

        assert len(received) == 1
        assert received[0].user_id == USER
        unsubscribe()

    async def test_failing_listener_does_not_block_others(self, env: Env):
        received: list[SyncManagerResult] = []

        def broken(result: SyncManagerResult) -> None:
            raise RuntimeError("listener bug")

        env.manager.on_sync_complete(broken)
        env.manager.on_sync_complete(received.append)

        result = await env.manager.sync_all()

        assert received == [result]

    async def test_skipped_runs_do_not_notify(self, env: Env):
        env.connect(GOOGLE)
        env.google.gate = asyncio.Event()
        received: list[SyncManagerResult] = []
        env.manager.on_sync_complete(received.append)

        first = asyncio.create_task(env.manager.sync_all())
        await asyncio.wait_for(env.google.started.wait(), timeout=1)
        await env.manager.sync_all()
        env.google.gate.set()
        await first

        assert len(received) == 1
        assert received[0].skipped is False


# ---------------------------------------------------------------------------
# Auto sync
# ---------------------------------------------------------------------------


class TestAutoSync:
    async def test_runs_immediately_then_waits(self, env: Env):
        env.connect(GOOGLE)

        env.manager.start_auto_sync(interval_minutes=60)
        await _until(lambda: env.google.runs == 1)
        await asyncio.sleep(0.02)

        assert env.google.runs == 1
        assert env.manager.auto_sync_running is True

    async def test_restart_replaces_previous_timer(self, env: Env):
        env.connect(GOOGLE)

        env.manager.start_auto_sync(interval_minutes=60)
        await _until(lambda: env.google.runs == 1)
        first_task = env.manager._auto_sync_task
        env.manager.start_auto_sync(interval_minutes=30)
        await _until(lambda: env.google.runs == 2)

        assert env.manager.auto_sync_running is True
        await _until(first_task.done)

    async def test_stop_lets_a_run_in_progress_finish(self, env: Env):
        env.connect(GOOGLE)
        env.google.gate = asyncio.Event()
        results = []
        env.manager.on_sync_complete(results.append)

        env.manager.start_auto_sync(interval_minutes=60)
        await asyncio.wait_for(env.google.started.wait(), timeout=1)
        stopping = asyncio.create_task(env.manager.stop_auto_sync())
        await asyncio.sleep(0.01)
        assert not stopping.done()

        env.google.gate.set()
        await asyncio.wait_for(stopping, timeout=1)

        assert env.manager.auto_sync_running is False
        assert len(results) == 1
        assert results[0].overall_success is True
        assert env.manager.last_sync_at == env.clock()
        assert env.google.runs == 1

    async def test_stop(self, env: Env):
        env.manager.start_auto_sync(interval_minutes=60)
        await asyncio.sleep(0)

        await env.manager.stop_auto_sync()

        assert env.manager.auto_sync_running is False
        await env.manager.stop_auto_sync()

    async def test_repeats_after_interval(self, env: Env):
        env.connect(GOOGLE)

        env.manager.start_auto_sync(interval_minutes=0.0005)
        await _until(lambda: env.google.runs >= 2)

    @pytest.mark.parametrize("interval", [0, -1])
    async def test_rejects_non_positive_interval(self, env: Env, interval):
        with pytest.raises(ValueError, match="positive"):
            env.manager.start_auto_sync(interval_minutes=interval)
        assert env.manager.auto_sync_running is False


# ---------------------------------------------------------------------------
# Post-edit sync
# ---------------------------------------------------------------------------


class TestSyncAfterEventChange:
    async def test_flags_event_and_runs_one_debounced_parallel_sync(self, env: Env):
        env.connect(GOOGLE)
        event = env.events.add(
            USER, google_event_id="r1", synced_to_google=True, synced_to_microsoft=True
        )
        configs: list[SyncConfig | None] = []
        original = env.manager.sync_all

        async def spy(config: SyncConfig | None = None) -> SyncManagerResult:
            configs.append(config)
            return await original(config)

        env.manager.sync_all = spy

        for _ in range(3):
            await env.manager.sync_after_event_change(event.id)
            await asyncio.sleep(0.005)

        flagged = env.events.rows[event.id]
        assert flagged.synced_to_google is False
        assert flagged.synced_to_microsoft is False
        assert env.manager.debounce_pending is True

        await _until(lambda: configs != [])
        await env.manager.wait_for_background()
        await asyncio.sleep(0.05)

        assert len(configs) == 1
        assert configs[0].parallel is True
        assert env.google.runs == 1
        assert env.manager.debounce_pending is False

    async def test_missing_event_schedules_nothing(self, env: Env):
        await env.manager.sync_after_event_change("no-such-event")
        assert env.manager.debounce_pending is False

    async def test_ignored_while_syncing(self, env: Env):
        env.connect(GOOGLE)
        env.google.gate = asyncio.Event()
        event = env.events.add(USER, synced_to_google=True)

        running = asyncio.create_task(env.manager.sync_all())
        await asyncio.wait_for(env.google.started.wait(), timeout=1)
        await env.manager.sync_after_event_change(event.id)

        assert env.events.rows[event.id].synced_to_google is True
        assert env.manager.debounce_pending is False
        env.google.gate.set()
        await running

    async def test_aclose_cancels_pending_debounce(self, env: Env):
        env.connect(GOOGLE)
        event = env.events.add(USER)

        await env.manager.sync_after_event_change(event.id)
        await env.manager.aclose()
        await asyncio.sleep(0.05)

        assert env.manager.debounce_pending is False
        assert env.google.runs == 0


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------


class TestDeleteEvent:
    async def test_deletes_remote_copies_then_local(self, env: Env):
        event = env.events.add(USER, google_event_id="r1")

        assert await env.manager.delete_event(event.id) is True

        assert env.google.deleted == [event.id]
        assert env.microsoft.deleted == []
        assert event.id not in env.events.rows

    async def test_remote_failure_still_deletes_locally(self, env: Env):
        event = env.events.add(USER, google_event_id="r1", microsoft_event_id="AAMk1")
        env.microsoft.delete_result = False

        assert await env.manager.delete_event(event.id) is True

        assert env.google.deleted == [event.id]
        assert env.microsoft.deleted == [event.id]
        assert event.id not in env.events.rows

    async def test_missing_event(self, env: Env):
        assert await env.manager.delete_event("nope") is False
