"""Tests for the refresh job history store."""
from __future__ import annotations

import sys
from pathlib import Path

import pytest
from sqlmodel import create_engine

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from backend.catalog_api.db import init_database  # noqa: E402
from backend.catalog_api.stores.job_store import SNAPSHOT_DOWNLOAD_JOB, JobStore  # noqa: E402


@pytest.fixture()
def job_store(tmp_path: Path) -> JobStore:
    engine = create_engine(f"sqlite:///{tmp_path / 'jobs.db'}")
    init_database(engine)
    return JobStore(engine)


def test_open_records_a_queued_refresh(job_store: JobStore) -> None:
    job = job_store.open("/data/catalog.db")

    assert job.type == SNAPSHOT_DOWNLOAD_JOB
    assert job.status == "queued"
    assert job.progress == 0.0
    assert job.payload == {"path": "/data/catalog.db"}
    assert job.started_at is None
    assert job_store.get(job.id).payload == job.payload


def test_running_updates_keep_start_time_and_worker(job_store: JobStore) -> None:
    job = job_store.open("/data/catalog.db")

    started = job_store.mark_running(job.id, worker_id="snapshot-refresh")
    advanced = job_store.mark_running(job.id, progress=0.8)
    clamped = job_store.mark_running(job.id, progress=3.0)

    assert started.status == "running"
    assert started.started_at is not None
    assert advanced.progress == 0.8
    assert advanced.started_at == started.started_at
    assert advanced.worker_id == "snapshot-refresh"
    assert clamped.progress == 1.0


def test_finish_sets_outcome(job_store: JobStore) -> None:
    done = job_store.open("/data/catalog.db")
    job_store.mark_running(done.id)
    failed = job_store.open("/data/catalog.db")

    completed = job_store.finish(done.id, "completed", message="ignored")
    failure = job_store.finish(failed.id, "failed", message="checksum mismatch")

    assert completed.status == "completed"
    assert completed.progress == 1.0
    assert completed.error_message is None
    assert completed.duration_seconds is not None
    assert failure.status == "failed"
    assert failure.error_message == "checksum mismatch"
    assert failure.duration_seconds is None


def test_list_filters_by_status_and_type(job_store: JobStore) -> None:
    first = job_store.open("/data/catalog.db")
    second = job_store.open("/data/catalog.db")
    job_store.finish(first.id, "cancelled", message="stopped")

    assert [job.id for job in job_store.list(statuses=["CANCELLED"])] == [first.id]
    assert [job.id for job in job_store.list(statuses=["queued"])] == [second.id]
    assert job_store.list(job_type="other") == []
    assert len(job_store.list(limit=1)) == 1


def test_unknown_job_cannot_be_updated(job_store: JobStore) -> None:
    assert job_store.get("missing") is None
    with pytest.raises(RuntimeError):
        job_store.mark_running("missing")
