"""Application factory for the Catalog Mirror API."""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .routers import catalog, health, jobs, snapshot
from .services.downloader import SnapshotSource
from .services.sales_overlay import SalesSource
from .settings import CatalogSettings
from .state import AppState


def create_app(
    settings: CatalogSettings | None = None,
    *,
    snapshot_source: SnapshotSource | None = None,
    sales_source: SalesSource | None = None,
) -> FastAPI:
    """Build and configure the FastAPI application."""

    resolved_settings = settings or CatalogSettings()
    app_state = AppState(
        settings=resolved_settings,
        snapshot_source=snapshot_source,
        sales_source=sales_source,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        app_state.startup()
        try:
            yield
        finally:
            app_state.shutdown()

    app = FastAPI(title="Catalog Mirror API", version="0.1.0", lifespan=lifespan)
    app.state.app_state = app_state
    app.state.settings = app_state.settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    for router in (
        health.router,
        snapshot.router,
        catalog.router,
        jobs.router,
    ):
        app.include_router(router)

    return app
