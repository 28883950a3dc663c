"""Short-lived live sales values merged over snapshot data."""
from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Protocol, Sequence
from urllib.parse import urljoin

import httpx

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SalesFetchError(RuntimeError):
    """Raised when live sales could not be fetched for some ids."""

    kind = "fetch"

    def __init__(self, asset_ids: Iterable[int], reason: str) -> None:
        self.asset_ids = sorted(set(asset_ids))
        self.reason = reason
        super().__init__(f"Sales fetch failed for {len(self.asset_ids)} id(s): {reason}")


@dataclass(slots=True, frozen=True)
class SalesOverlayEntry:
    asset_id: int
    live_sales: int
    fetched_at: datetime


class SalesSource(Protocol):
    """Remote live sales feed."""

    def fetch_sales(self, asset_ids: Sequence[int]) -> dict[int, int]:
        ...


class HttpSalesSource:
    """Fetch live sales counts for a batch of ids over HTTP."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport

    def _build_url(self, path: str) -> str:
        normalized_base = self._base_url.rstrip("/") + "/"
        return urljoin(normalized_base, path)

    def fetch_sales(self, asset_ids: Sequence[int]) -> dict[int, int]:
        if not asset_ids:
            return {}
        url = self._build_url("v1/sales")
        params = {"ids": ",".join(str(asset_id) for asset_id in asset_ids)}
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.get(url, params=params)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise SalesFetchError(
                asset_ids, f"Sales feed responded with HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise SalesFetchError(asset_ids, f"Failed to contact sales feed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise SalesFetchError(asset_ids, "Sales feed returned invalid JSON") from exc

        entries = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(entries, list):
            raise SalesFetchError(asset_ids, "Sales feed response must contain a data list")

        sales: dict[int, int] = {}
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            try:
                asset_id = int(entry["assetId"])
                value = int(entry["sales"])
            except (KeyError, TypeError, ValueError, OverflowError):
                continue
            if value >= 0:
                sales[asset_id] = value
        return sales


class SalesOverlay:
    """Bounded, TTL-checked map of asset id to live sales.

    The map lock is held only for individual reads and writes, never while the
    source is being called. Stale entries stay tracked (and are reported by
    :meth:`stale_ids`) until evicted, but :meth:`get` treats them as absent.
    """

    def __init__(
        self,
        source: SalesSource,
        *,
        ttl: timedelta = timedelta(minutes=5),
        max_entries: int = 10_000,
        max_batch_size: int = 100,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._source = source
        self._ttl = ttl
        self._max_entries = max(1, max_entries)
        self._max_batch_size = max(1, max_batch_size)
        self._clock = clock
        self._entries: OrderedDict[int, SalesOverlayEntry] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def max_batch_size(self) -> int:
        return self._max_batch_size

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _is_fresh(self, entry: SalesOverlayEntry, now: datetime) -> bool:
        return now - entry.fetched_at <= self._ttl

    def get_entry(self, asset_id: int) -> SalesOverlayEntry | None:
        """Return the fresh entry for ``asset_id``, if any."""

        now = self._clock()
        with self._lock:
            entry = self._entries.get(asset_id)
        if entry is None or not self._is_fresh(entry, now):
            return None
        return entry

    def get(self, asset_id: int) -> int | None:
        entry = self.get_entry(asset_id)
        return entry.live_sales if entry is not None else None

    def set(self, asset_id: int, live_sales: int) -> SalesOverlayEntry:
        entry = SalesOverlayEntry(asset_id=asset_id, live_sales=live_sales, fetched_at=self._clock())
        with self._lock:
            self._entries[asset_id] = entry
            self._entries.move_to_end(asset_id)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)
        return entry

    def stale_ids(self, *, horizon: timedelta | None = None) -> list[int]:
        """Tracked ids that are stale, or will be within ``horizon``."""

        cutoff = self._clock() - self._ttl + (horizon or timedelta(0))
        with self._lock:
            return [asset_id for asset_id, entry in self._entries.items() if entry.fetched_at <= cutoff]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def refresh_batch(self, asset_ids: Iterable[int]) -> list[int]:
        """Fetch live sales for ``asset_ids`` and return the ids refreshed.

        Ids are fetched in chunks of ``max_batch_size``. A failing chunk does not
        stop the others; once every chunk has been tried a
        :class:`SalesFetchError` lists every id that was not refreshed, whose
        previous entries are left untouched.
        """

        unique = list(dict.fromkeys(asset_ids))
        refreshed: list[int] = []
        failed: list[int] = []
        reasons: list[str] = []

        for start in range(0, len(unique), self._max_batch_size):
            chunk = unique[start : start + self._max_batch_size]
            try:
                fetched = self._source.fetch_sales(chunk)
            except SalesFetchError as exc:
                failed.extend(chunk)
                reasons.append(exc.reason)
                logger.warning("Live sales fetch failed for %d id(s): %s", len(chunk), exc.reason)
                continue
            except Exception as exc:
                failed.extend(chunk)
                reasons.append(f"unexpected sales feed error: {exc}")
                logger.exception("Unexpected error fetching live sales for %d id(s)", len(chunk))
                continue

            for asset_id in chunk:
                value = fetched.get(asset_id)
                if value is None:
                    failed.append(asset_id)
                    if "ids missing from sales feed response" not in reasons:
                        reasons.append("ids missing from sales feed response")
                    continue
                self.set(asset_id, value)
                refreshed.append(asset_id)

        if failed:
            raise SalesFetchError(failed, "; ".join(dict.fromkeys(reasons)))
        return refreshed


class SalesOverlayRefresher:
    """Periodically re-fetch tracked ids on an independent daemon thread."""

    def __init__(self, overlay: SalesOverlay, *, interval: float = 60.0) -> None:
        self._overlay = overlay
        self._interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop = threading.Event()
            self._thread = threading.Thread(
                target=self._loop,
                args=(self._stop,),
                name="sales-overlay-refresh",
                daemon=True,
            )
            self._thread.start()
        logger.info("Sales overlay refresher started (interval %.0fs)", self._interval)

    def stop(self, timeout: float | None = 5.0) -> None:
        with self._lock:
            thread = self._thread
            self._stop.set()
            self._thread = None
        if thread is not None:
            thread.join(timeout)

    def run_once(self) -> int:
        """Refresh ids that are stale or will be before the next cycle."""

        due = self._overlay.stale_ids(horizon=timedelta(seconds=self._interval))
        if not due:
            return 0
        try:
            return len(self._overlay.refresh_batch(due))
        except SalesFetchError as exc:
            logger.warning("Background sales refresh incomplete: %s", exc)
            return len(due) - len(exc.asset_ids)

    def _loop(self, stop: threading.Event) -> None:
        while not stop.wait(self._interval):
            try:
                self.run_once()
            except Exception:
                logger.exception("Background sales refresh cycle failed")
