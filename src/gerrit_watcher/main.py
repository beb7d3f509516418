"""FastAPI application wiring for the gerrit-watcher service.

Beginner terms used in this file:
- FastAPI app: the main web application object.
- Lifespan: code that runs once when the server starts (load the ledger,
  start the event dispatcher and scheduler) and once when it stops.
- Mount: a sub-application attached under a path prefix; here the static
  file server that exposes run logs under /logs.
- app.state: a place to store shared runtime objects (settings, runtime).
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse
from fastapi.staticfiles import StaticFiles

from .app.config import Settings, get_settings
from .app.models import RunRecord
from .app.runtime import WatcherRuntime, build_runtime
from .app.ui import render_log_index, render_status_page

logger = logging.getLogger(__name__)


def create_app(
    *,
    settings_override: Settings | None = None,
    runtime: WatcherRuntime | None = None,
) -> FastAPI:
    """Application factory.

    Tests pass a prepared runtime (fake sandbox, channel and feed); the
    default builds the Docker/ssh-backed one from settings.
    """
    settings = settings_override or (runtime.settings if runtime else get_settings())
    watcher = runtime or build_runtime(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        watcher.start()
        try:
            yield
        finally:
            watcher.stop()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    # Shared objects live in app.state so route handlers can reuse them.
    app.state.settings = settings
    app.state.runtime = watcher

    @app.get("/health")
    @app.get("/healthz")
    @app.get("/live")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.get("/", response_class=HTMLResponse)
    def home(request: Request) -> str:
        records = request.app.state.runtime.ledger.snapshot(newest_first=True)
        return render_status_page(records, app_name=settings.app_name)

    @app.get("/runs", response_model=list[RunRecord])
    def list_runs(request: Request) -> list[RunRecord]:
        return list(request.app.state.runtime.ledger.snapshot(newest_first=True))

    @app.get("/logs", response_class=HTMLResponse)
    def log_index() -> str:
        logs_dir = settings.logs_dir
        names: list[str] = []
        if logs_dir.is_dir():
            files = [path for path in logs_dir.iterdir() if path.is_file()]
            files.sort(key=lambda path: path.stat().st_mtime, reverse=True)
            names = [path.name for path in files]
        return render_log_index(names, app_name=settings.app_name)

    # Registered after the routes above so that /logs itself is the index page.
    app.mount(
        "/logs",
        StaticFiles(directory=settings.logs_dir, check_dir=False),
        name="logs",
    )
    return app


def run() -> None:
    """Console entry point: `gerrit-watcher`."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    logger.info("Starting gerrit-watcher project=%s host=%s", settings.project, settings.gerrit_host)
    uvicorn.run(create_app(settings_override=settings), host=settings.host, port=settings.port)


# Module-level app for `uvicorn gerrit_watcher.main:app`.
app = create_app()
