"""Service layer for snapshot refresh, live sales and queries."""

from .downloader import HttpSnapshotSource, SnapshotDownloader
from .lifecycle import LifecycleController, LifecycleState
from .query import QueryFacade
from .sales_overlay import HttpSalesSource, SalesOverlay, SalesOverlayRefresher

__all__ = [
    "HttpSalesSource",
    "HttpSnapshotSource",
    "LifecycleController",
    "LifecycleState",
    "QueryFacade",
    "SalesOverlay",
    "SalesOverlayRefresher",
    "SnapshotDownloader",
]
