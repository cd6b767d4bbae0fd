"""Sync API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- Lifespan handler that builds (and closes) the :class:`SyncRuntime` when the
  app was not handed one
- Health endpoint at GET /api/health
- The sync router
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from timeflow.api.middleware import register_error_handlers
from timeflow.api.routers.sync import _get_runtime
from timeflow.api.routers.sync import router as sync_router
from timeflow.config import TimeflowConfig
from timeflow.runtime import SyncRuntime

logger = logging.getLogger(__name__)


def create_app(
    runtime: SyncRuntime | None = None,
    config: TimeflowConfig | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    runtime:
        An already-built runtime.  The caller keeps ownership of it.
    config:
        Used to build a runtime during startup when *runtime* is not given.
        The app then owns the runtime and closes it on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned: SyncRuntime | None = None
        if runtime is None and config is not None:
            owned = await SyncRuntime.create(config)
            app.dependency_overrides[_get_runtime] = lambda: owned
            logger.info("Sync runtime started for %d provider(s)", len(owned.adapters))
        yield
        if owned is not None:
            await owned.aclose()

    app = FastAPI(title="TimeFlow Sync API", version="0.1.0", lifespan=lifespan)
    app.router.redirect_slashes = False

    register_error_handlers(app)

    if runtime is not None:
        app.dependency_overrides[_get_runtime] = lambda: runtime

    app.include_router(sync_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
