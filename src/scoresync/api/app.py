"""FastAPI application with lifespan and router mounting."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from scoresync.api.routes import health, updates
from scoresync.core.config import AppSettings
from scoresync.core.logging import configure_logging
from scoresync.core.protocols import IGradebookClient
from scoresync.gradebook.canvas_client import CanvasGradebookClient
from scoresync.persistence import create_persistence
from scoresync.reads.grade_snapshots import GradeSnapshotService


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Initialize and tear down application resources."""
    settings: AppSettings = getattr(app.state, "settings", None) or AppSettings()
    app.state.settings = settings
    configure_logging(settings.log_level)

    cache, run_lock, artifact_store = create_persistence(settings)
    app.state.cache = cache
    app.state.run_lock = run_lock
    app.state.artifact_store = artifact_store

    client = getattr(app.state, "client", None)
    owned = None
    if client is None:
        owned = CanvasGradebookClient(settings.canvas, assignment_name=settings.workflow.assignment_name)
        client = owned
    app.state.client = client
    app.state.snapshots = GradeSnapshotService(client=client, cache=cache, config=settings.reads)
    try:
        yield
    finally:
        if owned is not None:
            await owned.aclose()


def create_app(settings: AppSettings | None = None, client: IGradebookClient | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    ``client`` replaces the Canvas client, e.g. with an InMemoryGradebook.
    """
    app = FastAPI(
        title="scoresync",
        version="0.1.0",
        lifespan=lifespan,
    )
    if settings is not None:
        app.state.settings = settings
    if client is not None:
        app.state.client = client
    app.include_router(health.router)
    app.include_router(updates.router)
    return app
