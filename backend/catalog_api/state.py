"""Shared state container for the Catalog Mirror API."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.engine import Engine

from .db import create_engine_from_settings, init_database
from .services.downloader import HttpSnapshotSource, SnapshotDownloader, SnapshotSource
from .services.lifecycle import LifecycleController
from .services.query import QueryFacade
from .services.sales_overlay import (
    HttpSalesSource,
    SalesOverlay,
    SalesOverlayRefresher,
    SalesSource,
)
from .settings import CatalogSettings
from .stores.job_log_store import JobLogStore
from .stores.job_store import JobStore
from .stores.record_store import RecordStore
from .stores.snapshot_file import SUPPORTED_SCHEMA_VERSIONS


@dataclass(slots=True)
class AppState:
    """Encapsulates the long-lived services shared across routers."""

    settings: CatalogSettings
    engine: Engine
    job_store: JobStore
    job_log_store: JobLogStore
    record_store: RecordStore
    downloader: SnapshotDownloader
    lifecycle: LifecycleController
    sales_overlay: SalesOverlay
    sales_refresher: SalesOverlayRefresher
    query: QueryFacade

    def __init__(
        self,
        settings: CatalogSettings,
        *,
        snapshot_source: SnapshotSource | None = None,
        sales_source: SalesSource | None = None,
    ) -> None:
        self.settings = settings
        self.engine = create_engine_from_settings(settings)
        init_database(self.engine)
        self.job_store = JobStore(self.engine)
        self.job_log_store = JobLogStore(self.engine)

        self.record_store = RecordStore()
        self.downloader = SnapshotDownloader(
            snapshot_source
            or HttpSnapshotSource(
                settings.snapshot_manifest_url,
                timeout=settings.http_timeout_seconds,
                chunk_size=settings.download_chunk_size,
            ),
            settings.snapshot_path,
            temp_dir=settings.snapshot_temp_dir,
            timeout=settings.download_timeout_seconds,
            supported_schema_versions=SUPPORTED_SCHEMA_VERSIONS,
        )
        self.lifecycle = LifecycleController(
            self.record_store,
            self.downloader,
            job_store=self.job_store,
            log_store=self.job_log_store,
        )

        self.sales_overlay = SalesOverlay(
            sales_source
            or HttpSalesSource(settings.sales_api_url, timeout=settings.http_timeout_seconds),
            ttl=timedelta(seconds=settings.sales_ttl_seconds),
            max_entries=settings.sales_overlay_max_entries,
            max_batch_size=settings.sales_batch_max_size,
        )
        self.sales_refresher = SalesOverlayRefresher(
            self.sales_overlay, interval=settings.sales_refresh_interval_seconds
        )
        self.query = QueryFacade(
            self.record_store,
            self.sales_overlay,
            self.lifecycle,
            default_limit=settings.search_default_limit,
            max_limit=settings.search_max_limit,
            on_demand_refresh=settings.sales_on_demand_refresh,
        )

    def startup(self) -> None:
        """Adopt an installed snapshot and start background sales refresh."""

        if self.settings.load_snapshot_on_startup:
            self.lifecycle.initialize()
        if self.settings.sales_refresh_enabled:
            self.sales_refresher.start()

    def shutdown(self) -> None:
        self.sales_refresher.stop()
        self.lifecycle.shutdown()
