"""Read-side facade combining the record store, live sales and lifecycle."""
from __future__ import annotations

import logging
from typing import Iterable

from ..schemas import (
    BatchSalesResponse,
    CatalogItemModel,
    CatalogRecord,
    CountResponse,
    ItemsPageResponse,
    LookupResponse,
    SalesResponse,
    SearchResponse,
    SnapshotStatusModel,
)
from ..stores.record_store import DEFAULT_SEARCH_LIMIT, RecordStore
from .lifecycle import LifecycleController
from .sales_overlay import SalesFetchError, SalesOverlay

logger = logging.getLogger(__name__)


class QueryFacade:
    """The only query surface offered to collaborators.

    Every read takes one snapshot handle for its whole duration, so a response
    is always computed against a single generation. When no snapshot has ever
    been loaded the result carries ``status="not_ready"``; nothing here raises.
    """

    def __init__(
        self,
        store: RecordStore,
        overlay: SalesOverlay,
        lifecycle: LifecycleController,
        *,
        default_limit: int = DEFAULT_SEARCH_LIMIT,
        max_limit: int = 500,
        on_demand_refresh: bool = True,
    ) -> None:
        self._store = store
        self._overlay = overlay
        self._lifecycle = lifecycle
        self._default_limit = default_limit
        self._max_limit = max(max_limit, 1)
        self._on_demand_refresh = on_demand_refresh

    # ------------------------------------------------------------------
    # Sales merge

    def effective_sales(self, record: CatalogRecord) -> tuple[int, str]:
        """Live sales when a fresh overlay value exists, else the snapshot count."""

        live = self._overlay.get(record.asset_id)
        if live is None:
            return record.sales_snapshot, "snapshot"
        return live, "overlay"

    def _to_item(self, record: CatalogRecord) -> CatalogItemModel:
        sales, source = self.effective_sales(record)
        return CatalogItemModel(**record.model_dump(), sales=sales, sales_source=source)

    def _clamp_limit(self, limit: int | None) -> int:
        if limit is None:
            return min(self._default_limit, self._max_limit)
        return min(max(limit, 1), self._max_limit)

    # ------------------------------------------------------------------
    # Queries

    def lookup(self, asset_id: int) -> LookupResponse:
        handle = self._store.acquire()
        if handle is None:
            return LookupResponse(status="not_ready")
        with handle:
            record = handle.snapshot.get(asset_id)
            return LookupResponse(
                status="ok",
                generation=handle.generation,
                item=self._to_item(record) if record is not None else None,
            )

    def search(self, keyword: str, limit: int | None = None) -> SearchResponse:
        effective_limit = self._clamp_limit(limit)
        handle = self._store.acquire()
        if handle is None:
            return SearchResponse(status="not_ready", query=keyword, limit=effective_limit)
        with handle:
            records = handle.snapshot.search(keyword, effective_limit)
            return SearchResponse(
                status="ok",
                generation=handle.generation,
                query=keyword,
                limit=effective_limit,
                items=[self._to_item(record) for record in records],
            )

    def count(self) -> CountResponse:
        handle = self._store.acquire()
        if handle is None:
            return CountResponse(status="not_ready")
        with handle:
            return CountResponse(status="ok", generation=handle.generation, count=handle.snapshot.count())

    def list_items(self, offset: int = 0, limit: int | None = None) -> ItemsPageResponse:
        """Page through every record in asset id order."""

        effective_limit = self._clamp_limit(limit)
        offset = max(offset, 0)
        handle = self._store.acquire()
        if handle is None:
            return ItemsPageResponse(status="not_ready", offset=offset, limit=effective_limit)
        with handle:
            records = handle.snapshot.list_records(offset, effective_limit)
            return ItemsPageResponse(
                status="ok",
                generation=handle.generation,
                offset=offset,
                limit=effective_limit,
                total=handle.snapshot.count(),
                items=[self._to_item(record) for record in records],
            )

    def sales(self, asset_id: int) -> SalesResponse:
        """Effective sales for a single id, without triggering a fetch."""

        handle = self._store.acquire()
        if handle is None:
            return SalesResponse(status="not_ready", asset_id=asset_id)
        with handle:
            record = handle.snapshot.get(asset_id)
            if record is None:
                return SalesResponse(status="ok", asset_id=asset_id)
            value, source = self.effective_sales(record)
            return SalesResponse(status="ok", asset_id=asset_id, sales=value, sales_source=source)

    def batch_sales(self, asset_ids: Iterable[int]) -> BatchSalesResponse:
        """Effective sales for many ids, fetching live values that are missing.

        Only ids known to the snapshot and lacking a fresh overlay entry are
        fetched, at most ``max_batch_size`` of them per call; the rest fall
        back to snapshot values.
        """

        requested = list(dict.fromkeys(asset_ids))
        handle = self._store.acquire()
        if handle is None:
            return BatchSalesResponse(status="not_ready")

        with handle:
            snapshot = handle.snapshot
            known = {asset_id: snapshot.get(asset_id) for asset_id in requested}
            missing_ids = [asset_id for asset_id, record in known.items() if record is None]

            failed_ids: list[int] = []
            if self._on_demand_refresh:
                to_fetch = [
                    asset_id
                    for asset_id, record in known.items()
                    if record is not None and self._overlay.get(asset_id) is None
                ][: self._overlay.max_batch_size]
                if to_fetch:
                    try:
                        self._overlay.refresh_batch(to_fetch)
                    except SalesFetchError as exc:
                        failed_ids = exc.asset_ids
                        logger.info("Falling back to snapshot sales for %d id(s)", len(failed_ids))

            sales = {
                asset_id: self.effective_sales(record)[0]
                for asset_id, record in known.items()
                if record is not None
            }
            return BatchSalesResponse(
                status="ok",
                generation=handle.generation,
                sales=sales,
                missing_ids=missing_ids,
                failed_ids=failed_ids,
            )

    # ------------------------------------------------------------------
    # Lifecycle passthrough

    def status(self) -> SnapshotStatusModel:
        return self._lifecycle.status()

    def start_download(self) -> SnapshotStatusModel:
        return self._lifecycle.start()

    def cancel_download(self) -> SnapshotStatusModel:
        return self._lifecycle.cancel()
