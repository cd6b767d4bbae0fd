"""Shared fixtures for the sync API tests.

``runtime`` is a real :class:`SyncRuntime` wired to in-memory repositories and
an ``httpx.MockTransport`` that plays both the OAuth token endpoint and the
Google Calendar API.  Tests steer it through :class:`FakeUpstream`.
"""

from __future__ import annotations

from datetime import timedelta

import httpx
import pytest
from fastapi import FastAPI

from timeflow.api.app import create_app
from timeflow.config import parse_config
from timeflow.models import ProviderKind
from timeflow.oauth import GOOGLE_OAUTH_TOKEN_URL
from timeflow.runtime import SyncRuntime
from timeflow.testing import FakeClock, InMemoryEventRepository, InMemoryProviderRepository

GOOGLE_EVENTS_PREFIX = "https://www.googleapis.com/calendar/v3/calendars/primary/events"


class FakeUpstream:
    """Scripted responses for the token endpoint and the Google events API."""

    def __init__(self) -> None:
        self.token_response = httpx.Response(
            200, json={"access_token": "fresh", "refresh_token": "r1", "expires_in": 3600}
        )
        self.items: list[dict] = []
        self.events_status = 200
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url == GOOGLE_OAUTH_TOKEN_URL:
            return self.token_response
        if url.startswith(GOOGLE_EVENTS_PREFIX):
            if self.events_status != 200:
                return httpx.Response(self.events_status, json={"error": {"message": "backend"}})
            return httpx.Response(200, json={"items": self.items})
        return httpx.Response(404, json={"error": {"message": f"unexpected {url}"}})


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def runtime(upstream: FakeUpstream, clock: FakeClock):
    config = parse_config(
        {
            "sync": {"debounce_seconds": 0.01},
            "providers": {"google": {"client_id": "gid", "client_secret": "gsecret"}},
        }
    )
    sync_runtime = SyncRuntime(
        config,
        providers=InMemoryProviderRepository(clock),
        events=InMemoryEventRepository(clock),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)),
        clock=clock,
    )
    yield sync_runtime
    await sync_runtime.aclose()


@pytest.fixture
def connect_google(runtime: SyncRuntime, clock: FakeClock):
    def _connect(user_id: str = "user-1"):
        return runtime.providers.add(
            user_id,
            ProviderKind.GOOGLE,
            access_token="stored",
            expires_at=clock() + timedelta(hours=1),
        )

    return _connect


@pytest.fixture
def app(runtime: SyncRuntime) -> FastAPI:
    return create_app(runtime=runtime)


@pytest.fixture
async def client(app: FastAPI):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as http_client:
        yield http_client
