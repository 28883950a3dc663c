"""Tests for the snapshot file format and the in-memory record store."""
from __future__ import annotations

import sys
import threading
from pathlib import Path

import pytest
from sqlmodel import Session, SQLModel, create_engine

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from backend.catalog_api.models import (  # noqa: E402
    SNAPSHOT_TABLES,
    SnapshotItemRecord,
    SnapshotMetaRecord,
)
from backend.catalog_api.schemas import CatalogRecord  # noqa: E402
from backend.catalog_api.stores.record_store import (  # noqa: E402
    RecordStore,
    SchemaMismatchError,
    SnapshotCorruptError,
    SnapshotIoError,
    normalize_text,
    tokenize,
)
from backend.catalog_api.stores.snapshot_file import (  # noqa: E402
    file_sha256,
    read_snapshot,
    write_snapshot,
)


def make_record(asset_id: int, name: str, sales: int = 0, **extra: object) -> CatalogRecord:
    return CatalogRecord(asset_id=asset_id, name=name, sales_snapshot=sales, **extra)


def write_raw_snapshot(
    path: Path,
    rows: list[SnapshotItemRecord],
    *,
    schema_version: int = 1,
    record_count: int | None = None,
    content_digest: str | None = None,
) -> Path:
    """Write a snapshot file directly, bypassing record validation."""

    engine = create_engine(f"sqlite:///{path}")
    SQLModel.metadata.create_all(engine, tables=SNAPSHOT_TABLES)
    with Session(engine) as session:
        session.add(
            SnapshotMetaRecord(
                id=1,
                schema_version=schema_version,
                record_count=len(rows) if record_count is None else record_count,
                content_digest=content_digest,
            )
        )
        session.add_all(rows)
        session.commit()
    engine.dispose()
    return path


@pytest.fixture()
def snapshot_path(tmp_path: Path) -> Path:
    path = tmp_path / "catalog.db"
    write_snapshot(
        path,
        [
            make_record(1, "Red Hat", 10, price_in_robux=25, is_for_sale=True),
            make_record(2, "Red Cap", 50),
            make_record(3, "Blue Hat", 70),
            make_record(4, "Dark Red Scarf", 5),
            make_record(5, "Hat of the Red King", 30),
        ],
    )
    return path


def test_text_normalisation_folds_case_and_whitespace() -> None:
    assert normalize_text("  Red\tHAT  ") == "red hat"
    assert tokenize("dark-red_scarf v2") == ("dark", "red", "scarf", "v2")


def test_write_then_read_preserves_records(snapshot_path: Path) -> None:
    contents = read_snapshot(snapshot_path)

    assert contents.schema_version == 1
    assert contents.rejected == 0
    assert [record.asset_id for record in contents.records] == [1, 2, 3, 4, 5]
    first = contents.records[0]
    assert first.name == "Red Hat"
    assert first.price_in_robux == 25
    assert first.is_for_sale is True
    assert first.sales_snapshot == 10


def test_write_snapshot_rejects_duplicate_ids(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        write_snapshot(tmp_path / "dup.db", [make_record(1, "A"), make_record(1, "B")])

    assert not (tmp_path / "dup.db").exists()


def test_write_snapshot_reports_file_digest(tmp_path: Path) -> None:
    info = write_snapshot(tmp_path / "catalog.db", [make_record(1, "A")])

    assert info.sha256 == file_sha256(tmp_path / "catalog.db")
    assert info.size == (tmp_path / "catalog.db").stat().st_size
    manifest = info.manifest("https://cdn.example/catalog.db")
    assert manifest["url"] == "https://cdn.example/catalog.db"
    assert manifest["record_count"] == 1


def test_search_ranks_by_snapshot_sales(tmp_path: Path) -> None:
    path = tmp_path / "catalog.db"
    write_snapshot(path, [make_record(1, "Red Hat", 10), make_record(2, "Red Cap", 50)])
    store = RecordStore()
    store.load(path)

    results = store.search("red", 10)

    assert [record.asset_id for record in results] == [2, 1]


def test_search_puts_prefix_matches_before_other_matches(snapshot_path: Path) -> None:
    store = RecordStore()
    store.load(snapshot_path)

    results = store.search("RED", 10)

    # prefix matches by sales, then substring and token matches by sales
    assert [record.asset_id for record in results] == [2, 1, 5, 4]


def test_search_matches_word_prefixes_in_any_order(snapshot_path: Path) -> None:
    store = RecordStore()
    store.load(snapshot_path)

    assert [record.asset_id for record in store.search("king hat")] == [5]
    assert [record.asset_id for record in store.search("sca")] == [4]


def test_search_respects_limit_and_is_deterministic(snapshot_path: Path) -> None:
    store = RecordStore()
    store.load(snapshot_path)

    first = store.search("hat", 2)
    second = store.search("hat", 2)

    assert len(first) == 2
    assert [record.asset_id for record in first] == [record.asset_id for record in second]
    assert store.search("   ", 10) == []
    assert store.search("nothing like this", 10) == []


def test_list_records_pages_in_id_order(snapshot_path: Path) -> None:
    store = RecordStore()
    store.load(snapshot_path)

    assert [record.asset_id for record in store.list_records(1, 2)] == [2, 3]
    assert store.list_records(10, 5) == []
    assert store.count() == 5


def test_empty_store_serves_nothing() -> None:
    store = RecordStore()

    assert store.ready is False
    assert store.acquire() is None
    assert store.get(1) is None
    assert store.active_info() is None


def test_missing_file_raises_io_error(tmp_path: Path) -> None:
    store = RecordStore()

    with pytest.raises(SnapshotIoError) as excinfo:
        store.load(tmp_path / "absent.db")

    assert excinfo.value.kind == "io"
    assert store.ready is False


def test_garbage_file_is_corrupt(tmp_path: Path) -> None:
    path = tmp_path / "catalog.db"
    path.write_bytes(b"definitely not a sqlite database" * 64)

    with pytest.raises(SnapshotCorruptError):
        read_snapshot(path)


def test_truncated_file_is_corrupt(snapshot_path: Path) -> None:
    data = snapshot_path.read_bytes()
    snapshot_path.write_bytes(data[: len(data) // 3])

    with pytest.raises(SnapshotCorruptError):
        read_snapshot(snapshot_path)


def test_unsupported_schema_version_is_rejected(tmp_path: Path) -> None:
    path = write_raw_snapshot(
        tmp_path / "catalog.db",
        [SnapshotItemRecord(asset_id=1, name="Red Hat", sales=1)],
        schema_version=99,
    )

    with pytest.raises(SchemaMismatchError) as excinfo:
        read_snapshot(path)

    assert excinfo.value.kind == "schema_mismatch"


def test_record_count_mismatch_is_corrupt(tmp_path: Path) -> None:
    path = write_raw_snapshot(
        tmp_path / "catalog.db",
        [SnapshotItemRecord(asset_id=1, name="Red Hat", sales=1)],
        record_count=5,
    )

    with pytest.raises(SnapshotCorruptError):
        read_snapshot(path)


def test_digest_mismatch_is_corrupt(tmp_path: Path) -> None:
    path = write_raw_snapshot(
        tmp_path / "catalog.db",
        [SnapshotItemRecord(asset_id=1, name="Red Hat", sales=1)],
        content_digest="0" * 64,
    )

    with pytest.raises(SnapshotCorruptError):
        read_snapshot(path)


def test_malformed_rows_are_rejected_and_counted(tmp_path: Path) -> None:
    path = write_raw_snapshot(
        tmp_path / "catalog.db",
        [
            SnapshotItemRecord(asset_id=1, name="Red Hat", sales=3),
            SnapshotItemRecord(asset_id=2, name=None, sales=3),
            SnapshotItemRecord(asset_id=3, name="Broken Counter", sales=-4),
            SnapshotItemRecord(asset_id=4, name="Bad Date", created="not-a-date"),
        ],
    )

    store = RecordStore()
    snapshot = store.load(path)

    assert snapshot.rejected == 3
    assert store.count() == 1
    assert store.get(1) is not None


def test_failed_load_keeps_active_generation(snapshot_path: Path, tmp_path: Path) -> None:
    store = RecordStore()
    store.load(snapshot_path)

    with pytest.raises(SnapshotIoError):
        store.load(tmp_path / "absent.db")

    info = store.active_info()
    assert info is not None
    assert info.generation == 1
    assert store.get(2) is not None


def test_generations_increase_and_old_ones_survive_while_referenced(
    snapshot_path: Path, tmp_path: Path
) -> None:
    replacement = tmp_path / "next.db"
    write_snapshot(replacement, [make_record(9, "Green Hat", 1)])

    store = RecordStore()
    first = store.load(snapshot_path)
    handle = store.acquire()
    assert handle is not None

    second = store.load(replacement)

    assert second.generation == first.generation + 1
    assert store.retained_generations() == [first.generation]
    # the pinned generation still answers with its own data
    assert handle.snapshot.get(1) is not None
    assert handle.snapshot.get(9) is None
    assert store.get(9) is not None

    handle.release()
    handle.release()

    assert store.retained_generations() == []
    assert first.discarded is True
    assert second.discarded is False


def test_unreferenced_generation_is_discarded_on_swap(snapshot_path: Path) -> None:
    store = RecordStore()
    first = store.load(snapshot_path)
    store.load(snapshot_path)

    assert first.discarded is True
    assert store.retained_generations() == []


def test_concurrent_double_release_drops_one_reference(snapshot_path: Path) -> None:
    store = RecordStore()
    first = store.load(snapshot_path)

    for _ in range(20):
        shared = store.acquire()
        other = store.acquire()
        assert shared is not None and other is not None
        store.load(snapshot_path)
        barrier = threading.Barrier(8)

        def release_shared() -> None:
            barrier.wait()
            shared.release()

        threads = [threading.Thread(target=release_shared) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)

        pinned = other.snapshot
        assert pinned.discarded is False
        assert store.retained_generations() == [pinned.generation]
        other.release()
        assert pinned.discarded is True
        assert store.retained_generations() == []

    assert first.discarded is True
