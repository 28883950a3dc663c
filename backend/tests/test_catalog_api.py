"""Smoke tests for the Catalog Mirror API application factory."""
from __future__ import annotations

import hashlib
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Sequence

import pytest
from fastapi.testclient import TestClient

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from backend.catalog_api import create_app  # noqa: E402
from backend.catalog_api.schemas import (  # noqa: E402
    CatalogRecord,
    JobLogModel,
    JobModel,
    SnapshotStatusModel,
)
from backend.catalog_api.services.downloader import SnapshotManifest  # noqa: E402
from backend.catalog_api.services.sales_overlay import SalesFetchError  # noqa: E402
from backend.catalog_api.settings import CatalogSettings  # noqa: E402
from backend.catalog_api.stores.snapshot_file import write_snapshot  # noqa: E402


RECORDS = [
    CatalogRecord(asset_id=1, name="Red Hat", sales_snapshot=10, price_in_robux=25),
    CatalogRecord(asset_id=2, name="Red Cap", sales_snapshot=50),
    CatalogRecord(asset_id=3, name="Blue Scarf", sales_snapshot=7),
]


class StubSnapshotSource:
    """Serves a prepared snapshot blob without any network access."""

    def __init__(self, blob: bytes = b"", *, sha256: str | None = None) -> None:
        self.blob = blob
        self.sha256 = sha256
        self.calls = 0

    def fetch_manifest(self) -> SnapshotManifest:
        self.calls += 1
        return SnapshotManifest(
            url="memory://catalog.db",
            sha256=self.sha256 or hashlib.sha256(self.blob).hexdigest(),
            schema_version=1,
            size=len(self.blob),
        )

    @contextmanager
    def open_stream(self, manifest: SnapshotManifest) -> Iterator[Iterator[bytes]]:
        yield iter([self.blob])


class StubSalesSource:
    def __init__(self, values: dict[int, int] | None = None) -> None:
        self.values = dict(values or {})
        self.calls: list[list[int]] = []

    def fetch_sales(self, asset_ids: Sequence[int]) -> dict[int, int]:
        self.calls.append(list(asset_ids))
        if not self.values:
            raise SalesFetchError(asset_ids, "feed down")
        return {asset_id: self.values[asset_id] for asset_id in asset_ids if asset_id in self.values}


def build_blob(tmp_path: Path) -> bytes:
    path = tmp_path / "published" / "catalog.db"
    write_snapshot(path, RECORDS)
    return path.read_bytes()


def make_settings(tmp_path: Path) -> CatalogSettings:
    return CatalogSettings(
        database_url=f"sqlite:///{tmp_path / 'jobs.db'}",
        snapshot_path=str(tmp_path / "data" / "catalog.db"),
        sales_refresh_enabled=False,
        search_default_limit=10,
    )


@pytest.fixture()
def client(tmp_path: Path) -> Iterator[TestClient]:
    """Provide a test client with no snapshot installed yet."""

    app = create_app(
        settings=make_settings(tmp_path),
        snapshot_source=StubSnapshotSource(build_blob(tmp_path)),
        sales_source=StubSalesSource({2: 500}),
    )
    with TestClient(app) as test_client:
        yield test_client


def download_snapshot(client: TestClient) -> SnapshotStatusModel:
    response = client.post("/snapshot/download")
    assert response.status_code == 202
    assert client.app.state.app_state.lifecycle.join(5)
    return SnapshotStatusModel.model_validate(client.get("/snapshot/status").json())


def test_health_endpoint_reports_snapshot_state(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {
        "status": "ok",
        "version": "0.1.0",
        "snapshot_state": "not_present",
    }


def test_queries_before_download_are_not_ready(client: TestClient) -> None:
    lookup = client.get("/catalog/items/1")
    search = client.get("/catalog/search", params={"q": "red"})
    count = client.get("/catalog/count")

    assert lookup.status_code == 200
    assert lookup.json()["status"] == "not_ready"
    assert search.json()["status"] == "not_ready"
    assert search.json()["items"] == []
    assert count.json() == {"status": "not_ready", "generation": None, "count": 0}


def test_download_then_query(client: TestClient) -> None:
    status = download_snapshot(client)

    assert status.state == "ready"
    assert status.generation == 1
    assert status.record_count == 3

    search = client.get("/catalog/search", params={"q": "red"}).json()
    assert search["status"] == "ok"
    assert [item["asset_id"] for item in search["items"]] == [2, 1]

    item = client.get("/catalog/items/1").json()["item"]
    assert item["name"] == "Red Hat"
    assert item["price_in_robux"] == 25
    assert item["sales"] == 10
    assert item["sales_source"] == "snapshot"

    page = client.get("/catalog/items", params={"offset": 0, "limit": 2}).json()
    assert page["total"] == 3
    assert [entry["asset_id"] for entry in page["items"]] == [1, 2]

    assert client.get("/health").json()["snapshot_state"] == "ready"


def test_unknown_item_is_not_found_once_ready(client: TestClient) -> None:
    download_snapshot(client)

    assert client.get("/catalog/items/999").status_code == 404
    assert client.get("/catalog/items/999/sales").status_code == 404


def test_batch_sales_merges_live_values(client: TestClient) -> None:
    download_snapshot(client)

    response = client.post("/catalog/sales", json={"asset_ids": [1, 2, 999]})

    assert response.status_code == 200
    payload = response.json()
    assert payload["sales"] == {"1": 10, "2": 500}
    assert payload["missing_ids"] == [999]
    assert payload["failed_ids"] == [1]

    single = client.get("/catalog/items/2/sales").json()
    assert single == {"status": "ok", "asset_id": 2, "sales": 500, "sales_source": "overlay"}


def test_failed_download_is_reported_and_recorded(tmp_path: Path) -> None:
    app = create_app(
        settings=make_settings(tmp_path),
        snapshot_source=StubSnapshotSource(build_blob(tmp_path), sha256="0" * 64),
        sales_source=StubSalesSource(),
    )
    with TestClient(app) as client:
        status = download_snapshot(client)

        assert status.state == "failed"
        assert status.error_kind == "checksum_mismatch"
        assert client.get("/catalog/items/1").json()["status"] == "not_ready"

        jobs = [JobModel.model_validate(entry) for entry in client.get("/jobs").json()]
        assert len(jobs) == 1
        assert jobs[0].id == status.job_id
        assert jobs[0].status == "failed"

        logs = client.get(f"/jobs/{status.job_id}/logs")
        assert logs.status_code == 200
        entries = [JobLogModel.model_validate(entry) for entry in logs.json()]
        assert entries[-1].level == "error"
        assert entries[-1].context == {"kind": "checksum_mismatch"}


def test_installed_snapshot_is_loaded_on_startup(tmp_path: Path) -> None:
    settings = make_settings(tmp_path)
    write_snapshot(settings.snapshot_path, RECORDS)
    source = StubSnapshotSource()
    app = create_app(settings=settings, snapshot_source=source, sales_source=StubSalesSource())

    with TestClient(app) as client:
        assert client.get("/snapshot/status").json()["state"] == "ready"
        assert client.get("/catalog/count").json()["count"] == 3

    assert source.calls == 0


def test_cancel_without_download_returns_status(client: TestClient) -> None:
    response = client.post("/snapshot/cancel")

    assert response.status_code == 200
    assert response.json()["state"] == "not_present"


def test_unknown_job_returns_404(client: TestClient) -> None:
    assert client.get("/jobs/missing").status_code == 404
    assert client.get("/jobs/missing/logs").status_code == 404
